from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from stock_ledger.enums import TRANSFER_TRANSITIONS, TransferStatus
from stock_ledger.exceptions import (
    ContentionError,
    InsufficientStockError,
    InvalidTransferTransition,
    NegativeStockError,
    TransferFailed,
    TransferNotFoundError,
    ValidationError,
)
from stock_ledger.models import AuditLog, StockTransfer
from stock_ledger.schemas import ReserveRequest, TransferCreate
from stock_ledger.services.ledger import MovementLedger
from stock_ledger.services.materializer import StockLevelMaterializer
from stock_ledger.services.orchestrator import StockOrchestrator


class DestinationFailingMaterializer(StockLevelMaterializer):
    """Fails the destination credit and remembers on-hand quantities at that moment."""

    def __init__(self, db, config):
        super().__init__(db, config)
        self.on_hand_at_failure: dict = {}

    def apply(self, movement, enforce_available=False):
        if movement.movement_type == "transfer_in" and movement.reference_type == "transfer":
            self.on_hand_at_failure = {
                level.location_id: level.quantity_on_hand
                for level in self._levels.list_for_product(movement.product_id)
            }
            raise ContentionError(movement.product_id, movement.location_id, 4)
        return super().apply(movement, enforce_available=enforce_available)


class SourceRejectingMaterializer(StockLevelMaterializer):
    def apply(self, movement, enforce_available=False):
        if movement.movement_type == "transfer_out":
            raise NegativeStockError(movement.product_id, movement.location_id, 0, -movement.quantity)
        return super().apply(movement, enforce_available=enforce_available)


def _transfer(quantity=4, **overrides):
    values = dict(sku="WIDGET", from_location="MAIN", to_location="BACK", quantity=quantity)
    values.update(overrides)
    return TransferCreate(**values)


def test_transfer_moves_stock_and_cost(orchestrator, receive):
    receive("WIDGET", 10, "2.50")

    result = orchestrator.transfer(_transfer(reference_id="TRF-1"))

    assert result.transfer.status == "destination_credited"
    assert result.source_level.quantity_on_hand == 6
    assert result.destination_level.quantity_on_hand == 4
    assert result.destination_level.cost_per_unit == Decimal("2.5")


def test_transfer_writes_paired_movements(db, orchestrator, receive):
    receive("WIDGET", 10, "2.00")
    orchestrator.transfer(_transfer(reference_id="TRF-2"))

    movements = MovementLedger(db).list_by_reference("transfer", "TRF-2")
    assert sorted(m.movement_type for m in movements) == ["transfer_in", "transfer_out"]
    assert all(m.quantity == 4 for m in movements)


def test_transfer_checks_available_not_on_hand(db, orchestrator, receive):
    receive("WIDGET", 10, "2.00")
    orchestrator.reserve("WIDGET", ReserveRequest(location="MAIN", quantity=8))

    with pytest.raises(InsufficientStockError) as exc_info:
        orchestrator.transfer(_transfer(reference_id="TRF-3"))
    assert exc_info.value.available == 2
    assert db.scalar(select(StockTransfer).where(StockTransfer.reference_id == "TRF-3")) is None


def test_transfer_to_same_location_is_invalid(orchestrator, receive):
    receive("WIDGET", 10, "2.00")
    with pytest.raises(ValidationError):
        orchestrator.transfer(_transfer(to_location="MAIN"))


def test_transfer_from_global_pool(orchestrator, receive):
    receive("WIDGET", 10, "2.00", location=None)
    result = orchestrator.transfer(_transfer(from_location=None, to_location="POS1", quantity=3))
    assert result.source_level.location_id is None
    assert result.source_level.quantity_on_hand == 7
    assert result.destination_level.quantity_on_hand == 3


def test_failed_destination_is_compensated(db, config, products, locations, locks, receive):
    receive("WIDGET", 10, "2.00")
    materializer = DestinationFailingMaterializer(db, config)
    orchestrator = StockOrchestrator(db, config, materializer=materializer, locks=locks)

    with pytest.raises(TransferFailed) as exc_info:
        orchestrator.transfer(_transfer(quantity=10, reference_id="TRF-4"))
    assert materializer.on_hand_at_failure == {locations["MAIN"].id: 0}
    assert exc_info.value.reference_id == "TRF-4"
    assert exc_info.value.compensation_reference == "transfer_compensation:TRF-4"

    result = orchestrator.get_transfer("TRF-4")
    assert result.transfer.status == "failed"
    assert result.transfer.compensation_reference == "transfer_compensation:TRF-4"
    assert result.source_level.quantity_on_hand == 10
    assert result.destination_level is None or result.destination_level.quantity_on_hand == 0

    ledger = MovementLedger(db)
    assert [m.movement_type for m in ledger.list_by_reference("transfer", "TRF-4")] == ["transfer_out"]
    compensation = ledger.list_by_reference("transfer_compensation", "TRF-4")
    assert [(m.movement_type, m.location_id) for m in compensation] == [("transfer_in", locations["MAIN"].id)]
    assert db.scalar(select(AuditLog).where(AuditLog.action == "transfer_compensated")) is not None


def test_transfer_state_log(orchestrator, receive, log_capture):
    receive("WIDGET", 10, "2.00")
    orchestrator.transfer(_transfer(reference_id="TRF-5"))

    states = [r.to_status for r in log_capture.records if r.getMessage() == "transfer_state"]
    assert states == ["requested", "source_debited", "destination_credited"]


def test_repeated_transfer_reference_returns_existing(db, orchestrator, receive):
    receive("WIDGET", 10, "2.00")
    orchestrator.transfer(_transfer(reference_id="TRF-6"))
    again = orchestrator.transfer(_transfer(reference_id="TRF-6"))

    assert again.duplicate
    assert again.source_level.quantity_on_hand == 6
    assert len(MovementLedger(db).list_by_reference("transfer", "TRF-6")) == 2


def test_unknown_transfer(orchestrator):
    with pytest.raises(TransferNotFoundError):
        orchestrator.get_transfer("TRF-MISSING")


def test_terminal_transfer_cannot_transition(db, orchestrator, receive):
    receive("WIDGET", 10, "2.00")
    orchestrator.transfer(_transfer(reference_id="TRF-7"))
    transfer = db.scalar(select(StockTransfer).where(StockTransfer.reference_id == "TRF-7"))

    with pytest.raises(InvalidTransferTransition):
        orchestrator._transition(transfer, TransferStatus.FAILED)


def test_rejected_source_debit_leaves_no_transfer(db, config, products, locations, locks, receive):
    receive("WIDGET", 10, "2.00")
    orchestrator = StockOrchestrator(
        db, config, materializer=SourceRejectingMaterializer(db, config), locks=locks
    )

    with pytest.raises(NegativeStockError):
        orchestrator.transfer(_transfer(reference_id="TRF-8"))

    assert db.scalar(select(StockTransfer).where(StockTransfer.reference_id == "TRF-8")) is None
    assert MovementLedger(db).list_by_reference("transfer", "TRF-8") == []
    rejected = db.scalar(select(AuditLog).where(AuditLog.action == "movement_rejected"))
    assert rejected.entity_id == "transfer:TRF-8#0"
    with pytest.raises(TransferNotFoundError):
        orchestrator.get_transfer("TRF-8")


def test_requested_transfer_cannot_fail_directly(orchestrator):
    assert TRANSFER_TRANSITIONS[TransferStatus.REQUESTED] == {TransferStatus.SOURCE_DEBITED}

    transfer = StockTransfer(reference_id="TRF-9", status=TransferStatus.REQUESTED.value)
    with pytest.raises(InvalidTransferTransition):
        orchestrator._advance(transfer, TransferStatus.FAILED)
    assert transfer.status == "requested"
