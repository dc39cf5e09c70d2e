from __future__ import annotations

from typing import Optional, Protocol

from sqlalchemy.orm import Session

from stock_ledger.exceptions import ProductNotFoundError, ValidationError
from stock_ledger.models import Product
from stock_ledger.repositories.product_repository import ProductRepository


class ProductCatalog(Protocol):
    """What the ledger needs from the product catalog."""

    def get(self, product_id: int) -> Optional[Product]: ...

    def get_by_sku(self, sku: str) -> Optional[Product]: ...


class SqlProductCatalog:
    def __init__(self, db: Session):
        self._products = ProductRepository(db)

    def get(self, product_id: int) -> Optional[Product]:
        return self._products.get(product_id)

    def get_by_sku(self, sku: str) -> Optional[Product]:
        return self._products.get_by_sku(sku)


def require_product(catalog: ProductCatalog, sku: str) -> Product:
    product = catalog.get_by_sku(sku)
    if product is None:
        raise ProductNotFoundError(sku)
    if not product.is_active:
        raise ValidationError(f"Product {sku} is inactive", field="sku")
    return product
