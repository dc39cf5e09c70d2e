from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_ledger.exceptions import DuplicateProductError, ProductNotFoundError
from stock_ledger.models import Product
from stock_ledger.repositories.product_repository import ProductRepository
from stock_ledger.schemas import ProductCreate


class ProductService:
    def __init__(self, db: Session):
        self._db = db
        self._products = ProductRepository(db)

    def _generate_sku(self, prefix: str = "SKU", width: int = 6) -> str:
        max_n = 0
        for product in self._products.list(include_inactive=True):
            suffix = product.sku[len(prefix) :]
            if product.sku.startswith(prefix) and suffix.isdigit():
                max_n = max(max_n, int(suffix))
        return f"{prefix}{str(max_n + 1).zfill(width)}"

    def create(self, payload: ProductCreate) -> Product:
        sku = payload.sku.strip() if payload.sku else ""
        if not sku:
            sku = self._generate_sku()
        if self._products.get_by_sku(sku) is not None:
            raise DuplicateProductError(sku)

        product = Product(
            sku=sku,
            name=payload.name.strip(),
            category=payload.category.strip() if payload.category and payload.category.strip() else None,
            min_stock=payload.min_stock,
            cost_price=payload.cost_price,
            selling_price=payload.selling_price,
        )
        self._products.add(product)
        try:
            self._db.commit()
        except IntegrityError:
            self._db.rollback()
            raise DuplicateProductError(sku) from None
        self._db.refresh(product)
        return product

    def get_by_sku(self, sku: str) -> Product:
        product = self._products.get_by_sku(sku)
        if product is None:
            raise ProductNotFoundError(sku)
        return product

    def list(self, query: Optional[str] = None) -> list[Product]:
        return self._products.list(query=query)
