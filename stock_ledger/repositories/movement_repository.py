from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stock_ledger.models import ALL_LOCATIONS, StockMovement

_STREAM_BATCH = 500


class MovementRepository:
    def __init__(self, db: Session):
        self._db = db

    def add(self, movement: StockMovement) -> None:
        self._db.add(movement)

    def get(self, movement_id: int) -> Optional[StockMovement]:
        return self._db.get(StockMovement, movement_id)

    def find_by_reference(
        self,
        reference_type: str,
        reference_id: str,
        reference_line: int,
        movement_type: str,
    ) -> Optional[StockMovement]:
        return self._db.scalar(
            select(StockMovement).where(
                StockMovement.reference_type == reference_type,
                StockMovement.reference_id == reference_id,
                StockMovement.reference_line == reference_line,
                StockMovement.movement_type == movement_type,
            )
        )

    def list_by_reference(self, reference_type: str, reference_id: str) -> list[StockMovement]:
        return list(
            self._db.scalars(
                select(StockMovement)
                .where(
                    StockMovement.reference_type == reference_type,
                    StockMovement.reference_id == reference_id,
                )
                .order_by(StockMovement.created_at, StockMovement.id)
            )
        )

    def _filtered(
        self,
        stmt,
        product_id: Optional[int] = None,
        location_id: Any = ALL_LOCATIONS,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ):
        if product_id is not None:
            stmt = stmt.where(StockMovement.product_id == product_id)
        if location_id is not ALL_LOCATIONS:
            if location_id is None:
                stmt = stmt.where(StockMovement.location_id.is_(None))
            else:
                stmt = stmt.where(StockMovement.location_id == location_id)
        if start is not None:
            stmt = stmt.where(StockMovement.created_at >= start)
        if end is not None:
            stmt = stmt.where(StockMovement.created_at < end)
        return stmt

    def stream(
        self,
        product_id: Optional[int] = None,
        location_id: Any = ALL_LOCATIONS,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Iterator[StockMovement]:
        stmt = self._filtered(
            select(StockMovement),
            product_id=product_id,
            location_id=location_id,
            start=start,
            end=end,
        ).order_by(StockMovement.created_at, StockMovement.id)
        yield from self._db.scalars(stmt.execution_options(yield_per=_STREAM_BATCH))

    def history(
        self,
        product_id: Optional[int] = None,
        location_id: Any = ALL_LOCATIONS,
        movement_type: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[StockMovement], int]:
        stmt = self._filtered(
            select(StockMovement),
            product_id=product_id,
            location_id=location_id,
            start=start,
            end=end,
        )
        if movement_type:
            stmt = stmt.where(StockMovement.movement_type == movement_type)
        if reference_type:
            stmt = stmt.where(StockMovement.reference_type == reference_type)
        if reference_id:
            stmt = stmt.where(StockMovement.reference_id == reference_id)
        if actor_id:
            stmt = stmt.where(StockMovement.actor_id == actor_id)

        total = self._db.scalar(select(func.count()).select_from(stmt.subquery()))
        rows = list(
            self._db.scalars(
                stmt.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
                .limit(limit)
                .offset(offset)
            )
        )
        return rows, int(total or 0)

    def type_breakdown(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[tuple[str, int, int]]:
        rows = self._db.execute(
            self._filtered(
                select(
                    StockMovement.movement_type,
                    func.count(StockMovement.id),
                    func.coalesce(func.sum(StockMovement.quantity), 0),
                ),
                start=start,
                end=end,
            ).group_by(StockMovement.movement_type)
        ).all()
        return [(mtype, int(count or 0), int(qty or 0)) for mtype, count, qty in rows]

    def location_breakdown(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[tuple[Optional[int], str, int, int]]:
        rows = self._db.execute(
            self._filtered(
                select(
                    StockMovement.location_id,
                    StockMovement.direction,
                    func.count(StockMovement.id),
                    func.coalesce(func.sum(StockMovement.quantity), 0),
                ),
                start=start,
                end=end,
            ).group_by(StockMovement.location_id, StockMovement.direction)
        ).all()
        return [
            (location_id, direction, int(count or 0), int(qty or 0))
            for location_id, direction, count, qty in rows
        ]

    def count_since(self, since: datetime) -> int:
        total = self._db.scalar(
            select(func.count(StockMovement.id)).where(StockMovement.created_at >= since)
        )
        return int(total or 0)
