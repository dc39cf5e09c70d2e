from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from stock_ledger.exceptions import (
    ContentionError,
    InsufficientStockError,
    NegativeStockError,
    ValidationError,
)
from stock_ledger.ledger_config import LedgerConfig, load_ledger_config
from stock_ledger.logging_config import get_logger
from stock_ledger.models import StockLevel, StockMovement
from stock_ledger.repositories.movement_repository import MovementRepository
from stock_ledger.repositories.stock_level_repository import StockLevelRepository
from stock_ledger.schemas import DriftReport
from stock_ledger.utils import to_decimal, unit_cost, utcnow

logger = get_logger(__name__)


def weighted_cost(
    on_hand: int, cost_per_unit: Decimal, quantity: int, incoming_cost: Optional[Decimal]
) -> Decimal:
    """Average cost after receiving ``quantity`` units at ``incoming_cost``."""
    current = to_decimal(cost_per_unit)
    if incoming_cost is None or quantity <= 0:
        return unit_cost(current)
    incoming = to_decimal(incoming_cost)
    if on_hand <= 0:
        return unit_cost(incoming)
    total = Decimal(on_hand) * current + Decimal(quantity) * incoming
    return unit_cost(total / Decimal(on_hand + quantity))


def fold(movements: Iterable[StockMovement]) -> tuple[int, Decimal, Optional[datetime], int]:
    """Replay movements in ledger order: (on hand, average cost, last movement, count)."""
    quantity = 0
    cost = Decimal("0")
    last_at = None
    count = 0
    for movement in movements:
        if movement.direction == "increase":
            cost = weighted_cost(quantity, cost, movement.quantity, movement.unit_cost)
        quantity += movement.signed_quantity
        last_at = movement.created_at
        count += 1
    return quantity, unit_cost(cost), last_at, count


class StockLevelMaterializer:
    """The only writer of stock level rows.

    Every change is an increment applied with compare-and-set on the row
    version; a lost race re-reads and retries with exponential backoff.
    Nothing here commits: callers own the transaction so a movement and its
    stock change land together or not at all.
    """

    def __init__(
        self,
        db: Session,
        config: Optional[LedgerConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._db = db
        self._config = config or load_ledger_config()
        self._levels = StockLevelRepository(db)
        self._movements = MovementRepository(db)
        self._sleep = sleep

    @property
    def allow_negative_stock(self) -> bool:
        return self._config.stock.allow_negative_stock

    def _backoff(self, attempt: int) -> None:
        delay = self._config.stock.apply_backoff_seconds * (2 ** (attempt - 1))
        if delay > 0:
            self._sleep(delay)

    def level_for(self, product_id: int, location_id: Optional[int]) -> Optional[StockLevel]:
        level = self._levels.get(product_id, location_id)
        if level is not None:
            self._levels.reload(level)
        return level

    def apply(self, movement: StockMovement, enforce_available: bool = False) -> StockLevel:
        delta = movement.signed_quantity
        attempts = self._config.stock.apply_max_attempts
        level = self._levels.get_or_create(movement.product_id, movement.location_id)

        for attempt in range(1, attempts + 1):
            self._levels.reload(level)
            seen_version = level.version
            on_hand = int(level.quantity_on_hand)

            if on_hand + delta < 0 and not self.allow_negative_stock:
                raise NegativeStockError(movement.product_id, movement.location_id, on_hand, delta)
            if enforce_available and delta < 0 and level.quantity_available < -delta:
                raise InsufficientStockError(
                    movement.product_id, movement.location_id, level.quantity_available, -delta
                )

            if delta > 0:
                cost = weighted_cost(on_hand, level.cost_per_unit, movement.quantity, movement.unit_cost)
            else:
                cost = unit_cost(level.cost_per_unit)

            if self._levels.compare_and_add(
                level.id, seen_version, delta, cost, movement.created_at or utcnow()
            ):
                self._levels.reload(level)
                logger.info(
                    "stock_applied",
                    extra={
                        "movement_id": movement.id,
                        "product_id": movement.product_id,
                        "location_id": movement.location_id,
                        "delta": delta,
                        "quantity_on_hand": level.quantity_on_hand,
                        "version": level.version,
                    },
                )
                return level

            logger.warning(
                "apply_conflict_retry",
                extra={
                    "movement_id": movement.id,
                    "product_id": movement.product_id,
                    "location_id": movement.location_id,
                    "attempt": attempt,
                    "seen_version": seen_version,
                },
            )
            if attempt < attempts:
                self._backoff(attempt)

        raise ContentionError(movement.product_id, movement.location_id, attempts)

    def _change_reserved(self, product_id: int, location_id: Optional[int], quantity: int) -> StockLevel:
        if quantity == 0:
            raise ValidationError("quantity must not be 0", field="quantity")
        attempts = self._config.stock.apply_max_attempts
        level = self._levels.get_or_create(product_id, location_id)

        for attempt in range(1, attempts + 1):
            self._levels.reload(level)
            seen_version = level.version
            if quantity > 0 and level.quantity_available < quantity:
                raise InsufficientStockError(
                    product_id, location_id, level.quantity_available, quantity
                )
            if quantity < 0 and level.quantity_reserved < -quantity:
                raise ValidationError(
                    f"cannot release {-quantity}, only {level.quantity_reserved} reserved",
                    field="quantity",
                )
            if self._levels.compare_and_reserve(level.id, seen_version, quantity):
                self._levels.reload(level)
                return level
            logger.warning(
                "apply_conflict_retry",
                extra={"product_id": product_id, "location_id": location_id, "attempt": attempt},
            )
            if attempt < attempts:
                self._backoff(attempt)

        raise ContentionError(product_id, location_id, attempts)

    def reserve(self, product_id: int, location_id: Optional[int], quantity: int) -> StockLevel:
        if quantity <= 0:
            raise ValidationError("quantity must be greater than 0", field="quantity")
        return self._change_reserved(product_id, location_id, quantity)

    def release(self, product_id: int, location_id: Optional[int], quantity: int) -> StockLevel:
        if quantity <= 0:
            raise ValidationError("quantity must be greater than 0", field="quantity")
        return self._change_reserved(product_id, location_id, -quantity)

    def verify(self, product_id: int, location_id: Optional[int]) -> DriftReport:
        ledger_qty, ledger_cost, _, count = fold(
            self._movements.stream(product_id=product_id, location_id=location_id)
        )
        level = self.level_for(product_id, location_id)
        level_qty = int(level.quantity_on_hand) if level is not None else 0
        level_cost = unit_cost(level.cost_per_unit) if level is not None else unit_cost(0)
        drift = level_qty - ledger_qty
        return DriftReport(
            product_id=product_id,
            location_id=location_id,
            ledger_quantity=ledger_qty,
            level_quantity=level_qty,
            drift=drift,
            in_sync=drift == 0 and level_cost == ledger_cost,
            ledger_cost_per_unit=ledger_cost,
            level_cost_per_unit=level_cost,
            movement_count=count,
        )

    def rebuild(self, product_id: int, location_id: Optional[int]) -> StockLevel:
        """Reset the level to the ledger fold. Repairs append-without-apply crashes."""
        attempts = self._config.stock.apply_max_attempts
        level = self._levels.get_or_create(product_id, location_id)

        for attempt in range(1, attempts + 1):
            self._levels.reload(level)
            seen_version = level.version
            quantity, cost, last_at, _ = fold(
                self._movements.stream(product_id=product_id, location_id=location_id)
            )
            if self._levels.compare_and_reset(level.id, seen_version, quantity, cost, last_at):
                self._levels.reload(level)
                logger.info(
                    "stock_rebuilt",
                    extra={
                        "product_id": product_id,
                        "location_id": location_id,
                        "quantity_on_hand": quantity,
                    },
                )
                return level
            if attempt < attempts:
                self._backoff(attempt)

        raise ContentionError(product_id, location_id, attempts)
