from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from stock_ledger.exceptions import LocationNotFoundError, NegativeStockError, ProductNotFoundError, ValidationError
from stock_ledger.models import AuditLog, StockMovement
from stock_ledger.schemas import AdjustmentCreate, BulkAdjustmentCreate, BulkAdjustmentLine, MovementCreate
from stock_ledger.services.ledger import MovementDraft, Reference
from stock_ledger.utils import as_utc, utcnow


def _adjust(**overrides):
    values = dict(sku="WIDGET", location="MAIN", quantity=3, direction="increase", reason_code="correction")
    values.update(overrides)
    return AdjustmentCreate(**values)


def test_adjust_increase_and_decrease(orchestrator, receive):
    receive("WIDGET", 10, "2.00")

    up = orchestrator.adjust(_adjust(quantity=4, unit_cost=Decimal("2.00")))
    assert up.movement.movement_type == "adjustment_in"
    assert up.movement.reason_code == "correction"
    assert up.stock_level.quantity_on_hand == 14

    down = orchestrator.adjust(_adjust(quantity=6, direction="decrease", reason_code="damage"))
    assert down.movement.movement_type == "adjustment_out"
    assert down.stock_level.quantity_on_hand == 8


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"quantity": 0}, "quantity"),
        ({"reason_code": "misplaced"}, "reason_code"),
        ({"direction": "sideways"}, "direction"),
    ],
)
def test_adjust_rejects_invalid_requests(orchestrator, overrides, field):
    with pytest.raises(ValidationError) as exc_info:
        orchestrator.adjust(_adjust(**overrides))
    assert exc_info.value.field == field


def test_adjust_unknown_product_or_location(orchestrator):
    with pytest.raises(ProductNotFoundError):
        orchestrator.adjust(_adjust(sku="NOPE"))
    with pytest.raises(LocationNotFoundError):
        orchestrator.adjust(_adjust(location="ATTIC"))


def test_adjust_decrease_below_zero_is_rejected(db, orchestrator, receive):
    receive("WIDGET", 2, "2.00")
    with pytest.raises(NegativeStockError):
        orchestrator.adjust(_adjust(quantity=5, direction="decrease", reason_code="theft"))
    assert db.scalar(
        select(func.count()).select_from(StockMovement).where(StockMovement.movement_type == "adjustment_out")
    ) == 0


def test_adjust_same_reference_is_applied_once(orchestrator, receive):
    receive("WIDGET", 10, "2.00")
    first = orchestrator.adjust(_adjust(quantity=5, direction="decrease", reason_code="spoilage", reference_id="ADJ-1"))
    again = orchestrator.adjust(_adjust(quantity=5, direction="decrease", reason_code="spoilage", reference_id="ADJ-1"))

    assert not first.duplicate
    assert again.duplicate
    assert again.movement.id == first.movement.id
    assert again.stock_level.quantity_on_hand == 5


def test_restock_warning(orchestrator, receive):
    receive("WIDGET", 6, "2.00")
    result = orchestrator.apply_movement(
        MovementCreate(sku="WIDGET", location="MAIN", movement_type="out", quantity=2)
    )
    assert result.warning == "Needs restock"


def test_collaborator_cannot_post_owned_reference_types(orchestrator):
    with pytest.raises(ValidationError):
        orchestrator.apply_movement(
            MovementCreate(sku="WIDGET", location="MAIN", movement_type="in", quantity=1, reference_type="transfer")
        )


def test_bulk_adjust_partial_success(db, orchestrator, receive):
    receive("WIDGET", 1, "2.00")
    payload = BulkAdjustmentCreate(
        reference_id="BULK-1",
        lines=[
            BulkAdjustmentLine(sku="WIDGET", location="MAIN", quantity=5, direction="increase", reason_code="correction"),
            BulkAdjustmentLine(sku="GADGET", location="MAIN", quantity=100, direction="decrease", reason_code="damage"),
            BulkAdjustmentLine(sku="WIDGET", location="MAIN", quantity=2, direction="decrease", reason_code="damage"),
        ],
    )

    result = orchestrator.bulk_adjust(payload)

    assert result.reference_id == "BULK-1"
    assert result.applied == [1, 3]
    assert [(f.line, f.error_code) for f in result.failed] == [(2, "NEGATIVE_STOCK")]
    assert [m.reference_line for m in result.movements] == [1, 3]
    assert len({m.created_at for m in result.movements}) == 1
    assert db.scalar(select(AuditLog).where(AuditLog.action == "bulk_adjustment")) is not None


def test_bulk_adjust_simulates_lines_cumulatively(orchestrator, receive):
    receive("WIDGET", 5, "2.00")
    payload = BulkAdjustmentCreate(
        lines=[
            BulkAdjustmentLine(sku="WIDGET", location="MAIN", quantity=4, direction="decrease", reason_code="damage"),
            BulkAdjustmentLine(sku="WIDGET", location="MAIN", quantity=4, direction="decrease", reason_code="damage"),
            BulkAdjustmentLine(sku="NOPE", location="MAIN", quantity=1, direction="increase", reason_code="other"),
            BulkAdjustmentLine(sku="WIDGET", location="MAIN", quantity=1, direction="decrease", reason_code="bogus"),
        ]
    )

    result = orchestrator.bulk_adjust(payload)

    assert result.applied == [1]
    assert [(f.line, f.error_code) for f in result.failed] == [
        (2, "NEGATIVE_STOCK"),
        (3, "PRODUCT_NOT_FOUND"),
        (4, "VALIDATION_ERROR"),
    ]


def test_bulk_adjust_resubmission_is_idempotent(orchestrator, reporting, receive):
    receive("WIDGET", 5, "2.00")
    payload = BulkAdjustmentCreate(
        reference_id="BULK-2",
        lines=[BulkAdjustmentLine(sku="WIDGET", location="MAIN", quantity=3, direction="increase", reason_code="correction")],
    )
    orchestrator.bulk_adjust(payload)
    orchestrator.bulk_adjust(payload)

    levels = reporting.product_levels("WIDGET")
    assert [level.quantity_on_hand for level in levels] == [8]


def test_bulk_line_carries_batch_expiry(orchestrator):
    expiry = utcnow() + timedelta(days=20)
    payload = BulkAdjustmentCreate(
        reference_id="BULK-3",
        lines=[
            BulkAdjustmentLine(
                sku="WIDGET", location="MAIN", quantity=4, direction="increase",
                reason_code="correction", batch_number="LOT-9", expiry_date=expiry,
            )
        ],
    )

    result = orchestrator.bulk_adjust(payload)

    (movement,) = result.movements
    assert movement.batch_number == "LOT-9"
    assert as_utc(movement.expiry_date) == expiry


def test_recorded_movement_repeat_returns_stored_movement(orchestrator, products, locations):
    draft = MovementDraft(
        product_id=products["GADGET"].id,
        location_id=locations["BACK"].id,
        movement_type="in",
        quantity=3,
        reference=Reference("purchase_order", "PO-77"),
        unit_cost=Decimal("1.00"),
    )

    first = orchestrator.record_movement(draft)
    again = orchestrator.record_movement(draft)

    assert (first.duplicate, again.duplicate) == (False, True)
    assert again.movement.id == first.movement.id
    assert again.stock_level.quantity_on_hand == 3
