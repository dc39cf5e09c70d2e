from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_ledger.exceptions import DuplicateLocationError, LocationNotFoundError, ValidationError
from stock_ledger.ledger_config import LedgerConfig
from stock_ledger.logging_config import get_logger
from stock_ledger.models import ALL_LOCATIONS, GLOBAL_POOL_CODE, Location
from stock_ledger.repositories.location_repository import LocationRepository
from stock_ledger.schemas import LocationCreate

logger = get_logger(__name__)


class LocationService:
    def __init__(self, db: Session):
        self._db = db
        self._locations = LocationRepository(db)

    def create(self, payload: LocationCreate) -> Location:
        code = payload.code.strip()
        if code.lower() == GLOBAL_POOL_CODE:
            raise ValidationError(f"'{GLOBAL_POOL_CODE}' is reserved", field="code")
        if self._locations.get_by_code(code) is not None:
            raise DuplicateLocationError(code)
        location = Location(code=code, name=payload.name.strip())
        self._locations.add(location)
        try:
            self._db.commit()
        except IntegrityError:
            self._db.rollback()
            raise DuplicateLocationError(code) from None
        self._db.refresh(location)
        return location

    def list(self) -> list[Location]:
        return self._locations.list()

    def resolve(self, code: Optional[str]) -> Optional[Location]:
        """Active location for ``code``; None/blank means the global pool."""
        code = (code or "").strip()
        if not code or code.lower() == GLOBAL_POOL_CODE:
            return None
        location = self._locations.get_by_code(code)
        if location is None:
            raise LocationNotFoundError(code)
        if not location.is_active:
            raise ValidationError(f"Location {code} is inactive", field="location")
        return location

    def resolve_id(self, code: Optional[str]) -> Optional[int]:
        location = self.resolve(code)
        return location.id if location is not None else None

    def resolve_filter(self, code: Optional[str]) -> Any:
        """Report filter: omitted means every location, ``global`` the pool only."""
        if code is None or not code.strip():
            return ALL_LOCATIONS
        return self.resolve_id(code)

    def seed(self, config: LedgerConfig) -> list[Location]:
        created = []
        for spec in config.locations.all():
            if self._locations.get_by_code(spec.code) is not None:
                continue
            location = Location(code=spec.code, name=spec.name)
            self._locations.add(location)
            created.append(location)
        if created:
            self._db.commit()
            logger.info("locations_seeded", extra={"codes": [loc.code for loc in created]})
        return created
