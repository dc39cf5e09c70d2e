"""Append-only movement ledger.

The ledger validates and stores movements. It does no quantity math and never
reads stock levels; the materializer owns that.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_ledger.enums import FIXED_DIRECTIONS, Direction, MovementType, ReasonCode, ReferenceType
from stock_ledger.exceptions import ReferenceConflictError, ValidationError
from stock_ledger.logging_config import get_logger
from stock_ledger.models import ALL_LOCATIONS, StockMovement
from stock_ledger.repositories.movement_repository import MovementRepository
from stock_ledger.utils import as_utc, to_decimal, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class Reference:
    reference_type: str
    reference_id: str
    reference_line: int = 0


@dataclass(frozen=True)
class MovementDraft:
    product_id: int
    location_id: Optional[int]
    movement_type: str
    quantity: int
    reference: Reference
    direction: Optional[str] = None
    unit_cost: Optional[Decimal] = None
    reason_code: Optional[str] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[datetime] = None
    note: Optional[str] = None
    actor_id: Optional[str] = None
    created_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def pair(self) -> tuple[int, Optional[int]]:
        return self.product_id, self.location_id


def _enum_value(enum_cls, raw: Any, field_name: str) -> str:
    try:
        return enum_cls(raw.value if isinstance(raw, enum_cls) else raw).value
    except ValueError:
        raise ValidationError(f"Unknown {field_name}: {raw}", field=field_name) from None


def validate_draft(draft: MovementDraft) -> dict[str, Any]:
    """Normalize a draft into column values or raise ValidationError."""
    movement_type = MovementType(_enum_value(MovementType, draft.movement_type, "movement_type"))

    if isinstance(draft.quantity, bool) or not isinstance(draft.quantity, int):
        raise ValidationError("quantity must be an integer", field="quantity")
    if draft.quantity <= 0:
        raise ValidationError("quantity must be greater than 0", field="quantity")

    fixed = FIXED_DIRECTIONS.get(movement_type)
    if fixed is None:
        if draft.direction is None:
            raise ValidationError("count movements need a direction", field="direction")
        direction = _enum_value(Direction, draft.direction, "direction")
    else:
        direction = fixed.value
        if draft.direction is not None and _enum_value(Direction, draft.direction, "direction") != direction:
            raise ValidationError(
                f"{movement_type.value} movements always {direction} stock", field="direction"
            )

    cost = None
    if draft.unit_cost is not None:
        cost = to_decimal(draft.unit_cost)
        if cost < 0:
            raise ValidationError("unit_cost cannot be negative", field="unit_cost")

    ref = draft.reference
    reference_type = _enum_value(ReferenceType, ref.reference_type, "reference_type")
    reference_id = (ref.reference_id or "").strip()
    if not reference_id:
        raise ValidationError("reference_id is required", field="reference_id")
    if ref.reference_line < 0:
        raise ValidationError("reference_line cannot be negative", field="reference_line")

    reason = None
    if draft.reason_code is not None:
        reason = _enum_value(ReasonCode, draft.reason_code, "reason_code")

    return {
        "product_id": draft.product_id,
        "location_id": draft.location_id,
        "movement_type": movement_type.value,
        "direction": direction,
        "quantity": draft.quantity,
        "unit_cost": cost,
        "reference_type": reference_type,
        "reference_id": reference_id,
        "reference_line": ref.reference_line,
        "reason_code": reason,
        "batch_number": (draft.batch_number or "").strip() or None,
        "expiry_date": as_utc(draft.expiry_date),
        "note": draft.note,
        "actor_id": draft.actor_id,
        "created_at": as_utc(draft.created_at) or utcnow(),
    }


class MovementSequence:
    """Ordered movements for one filter. Iterating again re-runs the query."""

    def __init__(self, repo: MovementRepository, **filters: Any):
        self._repo = repo
        self._filters = filters

    def __iter__(self) -> Iterator[StockMovement]:
        return iter(self._repo.stream(**self._filters))


class MovementLedger:
    def __init__(self, db: Session):
        self._db = db
        self._movements = MovementRepository(db)

    def append(self, draft: MovementDraft) -> StockMovement:
        """Insert a movement in the caller's transaction. Does not commit."""
        values = validate_draft(draft)
        key = (
            values["reference_type"],
            values["reference_id"],
            values["reference_line"],
            values["movement_type"],
        )
        existing = self._movements.find_by_reference(*key)
        if existing is not None:
            raise self._conflict(existing)

        movement = StockMovement(**values)
        try:
            with self._db.begin_nested():
                self._movements.add(movement)
        except IntegrityError:
            existing = self._movements.find_by_reference(*key)
            if existing is None:
                raise
            raise self._conflict(existing) from None

        logger.info(
            "movement_appended",
            extra={
                "movement_id": movement.id,
                "product_id": movement.product_id,
                "location_id": movement.location_id,
                "movement_type": movement.movement_type,
                "quantity": movement.quantity,
                "reference": f"{movement.reference_type}:{movement.reference_id}#{movement.reference_line}",
            },
        )
        return movement

    @staticmethod
    def _conflict(existing: StockMovement) -> ReferenceConflictError:
        return ReferenceConflictError(
            existing.reference_type,
            existing.reference_id,
            existing.movement_type,
            existing_movement_id=existing.id,
            reference_line=existing.reference_line,
        )

    def get(self, movement_id: int) -> Optional[StockMovement]:
        return self._movements.get(movement_id)

    def find_by_reference(
        self,
        reference_type: str,
        reference_id: str,
        movement_type: str,
        reference_line: int = 0,
    ) -> Optional[StockMovement]:
        return self._movements.find_by_reference(
            reference_type, reference_id, reference_line, movement_type
        )

    def list_by_reference(self, reference_type: str, reference_id: str) -> list[StockMovement]:
        return self._movements.list_by_reference(reference_type, reference_id)

    def list_for(
        self,
        product_id: Optional[int] = None,
        location_id: Any = ALL_LOCATIONS,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> MovementSequence:
        return MovementSequence(
            self._movements,
            product_id=product_id,
            location_id=location_id,
            start=as_utc(start),
            end=as_utc(end),
        )

    def history(self, **filters: Any) -> tuple[list[StockMovement], int]:
        for key in ("start", "end"):
            if filters.get(key) is not None:
                filters[key] = as_utc(filters[key])
        return self._movements.history(**filters)
