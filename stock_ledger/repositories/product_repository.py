from __future__ import annotations

from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from stock_ledger.models import Product


class ProductRepository:
    def __init__(self, db: Session):
        self._db = db

    def get(self, product_id: int) -> Optional[Product]:
        return self._db.get(Product, product_id)

    def get_by_sku(self, sku: str) -> Optional[Product]:
        sku = sku.strip()
        return self._db.scalar(select(Product).where(Product.sku == sku))

    def list(self, query: Optional[str] = None, include_inactive: bool = False) -> list[Product]:
        stmt = select(Product)
        if not include_inactive:
            stmt = stmt.where(Product.is_active.is_(True))
        q = (query or "").strip()
        if q:
            like = f"%{q}%"
            stmt = stmt.where(or_(Product.sku.ilike(like), Product.name.ilike(like)))
        return list(self._db.scalars(stmt.order_by(Product.id)))

    def by_ids(self, product_ids: set[int]) -> dict[int, Product]:
        if not product_ids:
            return {}
        rows = self._db.scalars(select(Product).where(Product.id.in_(product_ids)))
        return {p.id: p for p in rows}

    def add(self, product: Product) -> None:
        self._db.add(product)
