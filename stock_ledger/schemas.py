from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


def _positive(v: int) -> int:
    if v <= 0:
        raise ValueError("quantity must be greater than 0")
    return v


class ProductCreate(BaseModel):
    sku: Optional[str] = None
    name: str
    category: Optional[str] = None
    min_stock: int = 0
    cost_price: Decimal = Decimal("0")
    selling_price: Decimal = Decimal("0")

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v

    @field_validator("cost_price", "selling_price")
    @classmethod
    def price_not_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("min_stock")
    @classmethod
    def min_stock_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("min_stock cannot be negative")
        return v


class ProductRead(BaseModel):
    id: int
    sku: str
    name: str
    category: Optional[str]
    min_stock: int
    cost_price: Decimal
    selling_price: Decimal
    is_active: bool

    model_config = {"from_attributes": True}


class LocationCreate(BaseModel):
    code: str
    name: str

    @field_validator("code", "name")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class LocationRead(BaseModel):
    id: int
    code: str
    name: str
    is_active: bool

    model_config = {"from_attributes": True}


class MovementCreate(BaseModel):
    """Receiving (``in``) or checkout (``out``) posted by a collaborator."""

    sku: str
    location: Optional[str] = None
    movement_type: Literal["in", "out"]
    quantity: int
    unit_cost: Optional[Decimal] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    reference_line: int = 0
    batch_number: Optional[str] = None
    expiry_date: Optional[datetime] = None
    note: Optional[str] = None

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: int) -> int:
        return _positive(v)


class AdjustmentCreate(BaseModel):
    sku: str
    location: Optional[str] = None
    quantity: int
    direction: str
    reason_code: str
    unit_cost: Optional[Decimal] = None
    reference_id: Optional[str] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[datetime] = None
    note: Optional[str] = None


class BulkAdjustmentLine(BaseModel):
    sku: str
    location: Optional[str] = None
    quantity: int
    direction: str
    reason_code: str
    unit_cost: Optional[Decimal] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[datetime] = None
    note: Optional[str] = None


class BulkAdjustmentCreate(BaseModel):
    reference_id: Optional[str] = None
    lines: list[BulkAdjustmentLine] = Field(min_length=1)


class TransferCreate(BaseModel):
    sku: str
    from_location: Optional[str] = None
    to_location: Optional[str] = None
    quantity: int
    reference_id: Optional[str] = None
    note: Optional[str] = None

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: int) -> int:
        return _positive(v)


class StockCountLine(BaseModel):
    sku: str
    counted_quantity: int
    note: Optional[str] = None

    @field_validator("counted_quantity")
    @classmethod
    def counted_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("counted_quantity cannot be negative")
        return v


class StockCountCreate(BaseModel):
    location: Optional[str] = None
    reference_id: Optional[str] = None
    lines: list[StockCountLine] = Field(min_length=1)


class ReserveRequest(BaseModel):
    location: Optional[str] = None
    quantity: int

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: int) -> int:
        return _positive(v)


class MovementRead(BaseModel):
    id: int
    product_id: int
    location_id: Optional[int]
    movement_type: str
    direction: str
    quantity: int
    unit_cost: Optional[Decimal]
    reference_type: str
    reference_id: str
    reference_line: int
    reason_code: Optional[str]
    batch_number: Optional[str]
    expiry_date: Optional[datetime]
    note: Optional[str]
    actor_id: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class MovementPage(BaseModel):
    items: list[MovementRead]
    total: int
    limit: int
    offset: int


class StockLevelRead(BaseModel):
    product_id: int
    location_id: Optional[int]
    quantity_on_hand: int
    quantity_reserved: int
    quantity_available: int
    cost_per_unit: Decimal
    version: int
    last_movement_at: Optional[datetime]
    updated_at: datetime

    model_config = {"from_attributes": True}


class MovementResult(BaseModel):
    movement: MovementRead
    stock_level: StockLevelRead
    duplicate: bool = False
    warning: Optional[str] = None


class BulkLineFailure(BaseModel):
    line: int
    sku: str
    error_code: str
    message: str


class BulkAdjustmentResult(BaseModel):
    reference_id: str
    applied: list[int]
    failed: list[BulkLineFailure]
    movements: list[MovementRead] = Field(default_factory=list)


class TransferRead(BaseModel):
    id: int
    reference_id: str
    product_id: int
    from_location_id: Optional[int]
    to_location_id: Optional[int]
    quantity: int
    status: str
    compensation_reference: Optional[str]
    failure_reason: Optional[str]
    note: Optional[str]
    actor_id: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class TransferResult(BaseModel):
    transfer: TransferRead
    source_level: Optional[StockLevelRead] = None
    destination_level: Optional[StockLevelRead] = None
    duplicate: bool = False


class StockCountLineResult(BaseModel):
    line: int
    sku: str
    expected_quantity: int
    counted_quantity: int
    variance: int
    movement_id: Optional[int] = None


class StockCountResult(BaseModel):
    reference_id: str
    location_id: Optional[int]
    lines: list[StockCountLineResult]


class DriftReport(BaseModel):
    product_id: int
    location_id: Optional[int]
    ledger_quantity: int
    level_quantity: int
    drift: int
    in_sync: bool
    ledger_cost_per_unit: Decimal
    level_cost_per_unit: Decimal
    movement_count: int
    repaired: bool = False


class StockRow(BaseModel):
    product_id: int
    sku: str
    name: str
    category: Optional[str]
    location_id: Optional[int]
    location_code: Optional[str]
    quantity_on_hand: int
    quantity_reserved: int
    quantity_available: int
    min_stock: int
    cost_per_unit: Decimal
    selling_price: Decimal
    status: str


class ValuationRow(BaseModel):
    product_id: int
    sku: str
    name: str
    location_id: Optional[int]
    location_code: Optional[str]
    quantity_on_hand: int
    cost_per_unit: Decimal
    selling_price: Decimal
    stock_value: Decimal
    retail_value: Decimal
    potential_profit: Decimal
    margin_percentage: Decimal


class ValuationSummary(BaseModel):
    total_items: int
    total_quantity: int
    total_stock_value: Decimal
    total_retail_value: Decimal
    total_potential_profit: Decimal
    low_stock_count: int
    out_of_stock_count: int
    locations_count: int


class ValuationReport(BaseModel):
    rows: list[ValuationRow]
    summary: ValuationSummary
    generated_at: datetime


class AgingBatch(BaseModel):
    product_id: int
    location_id: Optional[int]
    batch_number: Optional[str]
    quantity_remaining: int
    first_received_at: datetime
    age_days: int
    expiry_date: Optional[datetime]
    expiring_soon: bool
    category: str


class AgingRow(BaseModel):
    product_id: int
    sku: str
    name: str
    total_quantity: int
    oldest_age_days: int
    average_age_days: Decimal
    expiring_soon_quantity: int
    category: str
    batches: list[AgingBatch]


class AgingReport(BaseModel):
    rows: list[AgingRow]
    generated_at: datetime
    fresh_count: int = 0
    aging_count: int = 0
    old_count: int = 0
    expired_count: int = 0


class MovementTypeStats(BaseModel):
    movement_type: str
    count: int
    quantity: int


class LocationMovementStats(BaseModel):
    location_id: Optional[int]
    location_code: Optional[str]
    in_count: int = 0
    in_quantity: int = 0
    out_count: int = 0
    out_quantity: int = 0


class MovementStats(BaseModel):
    start: Optional[datetime]
    end: Optional[datetime]
    total_movements: int
    by_type: list[MovementTypeStats]
    by_location: list[LocationMovementStats]
    today_count: int
    week_count: int
    month_count: int
