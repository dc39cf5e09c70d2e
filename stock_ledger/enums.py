from __future__ import annotations

from enum import Enum


class MovementType(str, Enum):
    IN = "in"
    OUT = "out"
    ADJUSTMENT_IN = "adjustment_in"
    ADJUSTMENT_OUT = "adjustment_out"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    COUNT = "count"


class Direction(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


# count is the only type whose direction depends on the recorded variance
FIXED_DIRECTIONS: dict[MovementType, Direction] = {
    MovementType.IN: Direction.INCREASE,
    MovementType.ADJUSTMENT_IN: Direction.INCREASE,
    MovementType.TRANSFER_IN: Direction.INCREASE,
    MovementType.OUT: Direction.DECREASE,
    MovementType.ADJUSTMENT_OUT: Direction.DECREASE,
    MovementType.TRANSFER_OUT: Direction.DECREASE,
}


class ReferenceType(str, Enum):
    PURCHASE_ORDER = "purchase_order"
    SALE = "sale"
    RETURN = "return"
    ADJUSTMENT = "adjustment"
    TRANSFER = "transfer"
    TRANSFER_COMPENSATION = "transfer_compensation"
    COUNT = "count"
    MANUAL = "manual"


class ReasonCode(str, Enum):
    CYCLE_COUNT = "cycle_count"
    SPOILAGE = "spoilage"
    DAMAGE = "damage"
    THEFT = "theft"
    CORRECTION = "correction"
    OTHER = "other"
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class TransferStatus(str, Enum):
    REQUESTED = "requested"
    SOURCE_DEBITED = "source_debited"
    DESTINATION_CREDITED = "destination_credited"
    COMPENSATION_APPLIED = "compensation_applied"
    FAILED = "failed"


TRANSFER_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    TransferStatus.REQUESTED: frozenset({TransferStatus.SOURCE_DEBITED}),
    TransferStatus.SOURCE_DEBITED: frozenset(
        {TransferStatus.DESTINATION_CREDITED, TransferStatus.COMPENSATION_APPLIED}
    ),
    TransferStatus.COMPENSATION_APPLIED: frozenset({TransferStatus.FAILED}),
    TransferStatus.DESTINATION_CREDITED: frozenset(),
    TransferStatus.FAILED: frozenset(),
}


class AgingCategory(str, Enum):
    FRESH = "fresh"
    AGING = "aging"
    OLD = "old"
    EXPIRED = "expired"


AGING_SEVERITY = {
    AgingCategory.FRESH: 0,
    AgingCategory.AGING: 1,
    AgingCategory.OLD: 2,
    AgingCategory.EXPIRED: 3,
}


class StockStatus(str, Enum):
    ALL = "all"
    IN_STOCK = "in_stock"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"


class StockSort(str, Enum):
    NAME_ASC = "name_asc"
    NAME_DESC = "name_desc"
    STOCK_ASC = "stock_asc"
    STOCK_DESC = "stock_desc"
    PRICE_ASC = "price_asc"
    PRICE_DESC = "price_desc"
