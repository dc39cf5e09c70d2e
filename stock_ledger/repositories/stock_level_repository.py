from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_ledger.models import ALL_LOCATIONS, Location, Product, StockLevel, location_key
from stock_ledger.utils import utcnow


class StockLevelRepository:
    """Row access for stock levels. Writes are compare-and-set on ``version``."""

    def __init__(self, db: Session):
        self._db = db

    def get(self, product_id: int, location_id: Optional[int]) -> Optional[StockLevel]:
        return self._db.scalar(
            select(StockLevel).where(
                StockLevel.product_id == product_id,
                StockLevel.location_key == location_key(location_id),
            )
        )

    def get_or_create(self, product_id: int, location_id: Optional[int]) -> StockLevel:
        level = self.get(product_id, location_id)
        if level is not None:
            return level
        now = utcnow()
        try:
            with self._db.begin_nested():
                level = StockLevel(
                    product_id=product_id,
                    location_id=location_id,
                    location_key=location_key(location_id),
                    quantity_on_hand=0,
                    quantity_reserved=0,
                    cost_per_unit=Decimal("0"),
                    version=0,
                    created_at=now,
                    updated_at=now,
                )
                self._db.add(level)
        except IntegrityError:
            # another writer created the row first
            level = self.get(product_id, location_id)
            if level is None:
                raise
        return level

    def reload(self, level: StockLevel) -> StockLevel:
        self._db.refresh(level)
        return level

    def compare_and_add(
        self,
        level_id: int,
        seen_version: int,
        delta: int,
        cost_per_unit: Decimal,
        movement_at: datetime,
    ) -> bool:
        result = self._db.execute(
            update(StockLevel)
            .where(StockLevel.id == level_id, StockLevel.version == seen_version)
            .values(
                quantity_on_hand=StockLevel.quantity_on_hand + delta,
                cost_per_unit=cost_per_unit,
                version=StockLevel.version + 1,
                last_movement_at=movement_at,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def compare_and_reserve(self, level_id: int, seen_version: int, delta: int) -> bool:
        result = self._db.execute(
            update(StockLevel)
            .where(StockLevel.id == level_id, StockLevel.version == seen_version)
            .values(
                quantity_reserved=StockLevel.quantity_reserved + delta,
                version=StockLevel.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def compare_and_reset(
        self,
        level_id: int,
        seen_version: int,
        quantity_on_hand: int,
        cost_per_unit: Decimal,
        last_movement_at: Optional[datetime],
    ) -> bool:
        result = self._db.execute(
            update(StockLevel)
            .where(StockLevel.id == level_id, StockLevel.version == seen_version)
            .values(
                quantity_on_hand=quantity_on_hand,
                cost_per_unit=cost_per_unit,
                version=StockLevel.version + 1,
                last_movement_at=last_movement_at,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def list_for_product(self, product_id: int) -> list[StockLevel]:
        return list(
            self._db.scalars(
                select(StockLevel)
                .where(StockLevel.product_id == product_id)
                .order_by(StockLevel.location_key)
                .execution_options(populate_existing=True)
            )
        )

    def snapshot(
        self, location_id: Any = ALL_LOCATIONS
    ) -> list[tuple[StockLevel, Product, Optional[Location]]]:
        stmt = (
            select(StockLevel, Product, Location)
            .join(Product, Product.id == StockLevel.product_id)
            .outerjoin(Location, Location.id == StockLevel.location_id)
        )
        if location_id is not ALL_LOCATIONS:
            stmt = stmt.where(StockLevel.location_key == location_key(location_id))
        rows = self._db.execute(
            stmt.order_by(Product.name, StockLevel.location_key).execution_options(populate_existing=True)
        ).all()
        return [(level, product, location) for level, product, location in rows]
