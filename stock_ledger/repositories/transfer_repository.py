from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_ledger.models import StockTransfer


class TransferRepository:
    def __init__(self, db: Session):
        self._db = db

    def get_by_reference(self, reference_id: str) -> Optional[StockTransfer]:
        return self._db.scalar(
            select(StockTransfer).where(StockTransfer.reference_id == reference_id)
        )

    def list(self, status: Optional[str] = None, limit: int = 50) -> list[StockTransfer]:
        stmt = select(StockTransfer)
        if status:
            stmt = stmt.where(StockTransfer.status == status)
        return list(
            self._db.scalars(
                stmt.order_by(StockTransfer.created_at.desc(), StockTransfer.id.desc()).limit(limit)
            )
        )

    def add(self, transfer: StockTransfer) -> None:
        self._db.add(transfer)
