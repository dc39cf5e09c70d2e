from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_ledger.models import Location


class LocationRepository:
    def __init__(self, db: Session):
        self._db = db

    def get(self, location_id: int) -> Optional[Location]:
        return self._db.get(Location, location_id)

    def get_by_code(self, code: str) -> Optional[Location]:
        code = code.strip()
        return self._db.scalar(select(Location).where(Location.code == code))

    def list(self) -> list[Location]:
        return list(self._db.scalars(select(Location).order_by(Location.id)))

    def by_ids(self, location_ids: set[int]) -> dict[int, Location]:
        if not location_ids:
            return {}
        rows = self._db.scalars(select(Location).where(Location.id.in_(location_ids)))
        return {loc.id: loc for loc in rows}

    def add(self, location: Location) -> None:
        self._db.add(location)
