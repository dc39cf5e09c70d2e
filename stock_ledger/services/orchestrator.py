from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stock_ledger.audit import log_event
from stock_ledger.enums import (
    TRANSFER_TRANSITIONS,
    Direction,
    MovementType,
    ReasonCode,
    ReferenceType,
    TransferStatus,
)
from stock_ledger.exceptions import (
    InsufficientStockError,
    InvalidTransferTransition,
    NegativeStockError,
    ReferenceConflictError,
    StockError,
    StockLedgerError,
    TransferFailed,
    TransferNotFoundError,
    ValidationError,
)
from stock_ledger.ledger_config import LedgerConfig, load_ledger_config
from stock_ledger.logging_config import LogContext, get_logger
from stock_ledger.models import Product, StockLevel, StockMovement, StockTransfer, location_key
from stock_ledger.repositories.transfer_repository import TransferRepository
from stock_ledger.schemas import (
    AdjustmentCreate,
    BulkAdjustmentCreate,
    BulkAdjustmentLine,
    BulkAdjustmentResult,
    BulkLineFailure,
    DriftReport,
    MovementCreate,
    MovementRead,
    MovementResult,
    ReserveRequest,
    StockCountCreate,
    StockCountLineResult,
    StockCountResult,
    StockLevelRead,
    TransferCreate,
    TransferRead,
    TransferResult,
)
from stock_ledger.services.catalog import ProductCatalog, SqlProductCatalog, require_product
from stock_ledger.services.ledger import MovementDraft, MovementLedger, Reference, validate_draft
from stock_ledger.services.location_service import LocationService
from stock_ledger.services.locks import PairLockRegistry, pair_key, pair_locks
from stock_ledger.services.materializer import StockLevelMaterializer
from stock_ledger.utils import utcnow

logger = get_logger(__name__)

T = TypeVar("T")

# reference types owned by a dedicated flow; collaborators cannot post them directly
_RESERVED_REFERENCE_TYPES = {
    ReferenceType.TRANSFER.value,
    ReferenceType.TRANSFER_COMPENSATION.value,
    ReferenceType.COUNT.value,
    ReferenceType.ADJUSTMENT.value,
}

_DEFAULT_REFERENCE_TYPES = {
    MovementType.IN.value: ReferenceType.PURCHASE_ORDER.value,
    MovementType.OUT.value: ReferenceType.SALE.value,
}

Written = tuple[StockMovement, StockLevel, bool]


def new_reference(prefix: str) -> str:
    return f"{prefix}-{utcnow():%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def compensation_reference_for(reference_id: str) -> str:
    return f"{ReferenceType.TRANSFER_COMPENSATION.value}:{reference_id}"


class StockOrchestrator:
    """Turns business intents into ledger movements and applies them.

    Each movement is appended and applied in one transaction while the
    (product, location) lock is held. Any open read transaction is closed
    before a pair lock is taken so a session never waits on a lock while
    holding the database.
    """

    def __init__(
        self,
        db: Session,
        config: Optional[LedgerConfig] = None,
        catalog: Optional[ProductCatalog] = None,
        materializer: Optional[StockLevelMaterializer] = None,
        locks: PairLockRegistry = pair_locks,
    ):
        self._db = db
        self._config = config or load_ledger_config()
        self._catalog = catalog or SqlProductCatalog(db)
        self._ledger = MovementLedger(db)
        self._materializer = materializer or StockLevelMaterializer(db, self._config)
        self._locations = LocationService(db)
        self._transfers = TransferRepository(db)
        self._locks = locks

    # -- write path -----------------------------------------------------

    def _locked(self, pair: tuple[int, Optional[int]], work: Callable[[], T]) -> T:
        self._db.commit()
        with self._locks.hold(pair_key(*pair)):
            try:
                result = work()
                self._db.commit()
            except Exception:
                self._db.rollback()
                raise
        return result

    def _commit_draft(self, draft: MovementDraft, enforce_available: bool) -> Written:
        """Append and apply ``draft``, then commit. The caller holds the pair lock."""
        try:
            movement = self._ledger.append(draft)
            level = self._materializer.apply(movement, enforce_available=enforce_available)
            self._db.commit()
            return movement, level, False
        except ReferenceConflictError as exc:
            self._db.rollback()
            movement = self._ledger.get(exc.existing_movement_id)
            if movement is None:
                raise
            level = self._materializer.level_for(movement.product_id, movement.location_id)
            self._db.commit()
            logger.info(
                "duplicate_movement",
                extra={
                    "movement_id": movement.id,
                    "reference": f"{exc.reference_type}:{exc.reference_id}#{exc.reference_line}",
                    "movement_type": exc.movement_type,
                },
            )
            return movement, level, True
        except Exception:
            self._db.rollback()
            raise

    def _write_built(
        self,
        pair: tuple[int, Optional[int]],
        build: Callable[[], Optional[MovementDraft]],
        enforce_available: bool = False,
    ) -> Optional[Written]:
        """Build the draft under the pair lock; a None draft writes nothing."""
        draft: Optional[MovementDraft] = None
        self._db.commit()
        try:
            with self._locks.hold(pair_key(*pair)):
                try:
                    draft = build()
                except Exception:
                    self._db.rollback()
                    raise
                if draft is None:
                    self._db.commit()
                    return None
                return self._commit_draft(draft, enforce_available)
        except StockError as exc:
            self._reject(draft, exc)
            raise

    def _write(self, draft: MovementDraft, enforce_available: bool = False) -> Written:
        self._db.commit()
        try:
            with self._locks.hold(pair_key(*draft.pair)):
                return self._commit_draft(draft, enforce_available)
        except StockError as exc:
            self._reject(draft, exc)
            raise

    def _reject(self, draft: Optional[MovementDraft], exc: StockError) -> None:
        detail: dict[str, Any] = exc.to_dict()
        entity_id = None
        if draft is not None:
            ref = draft.reference
            entity_id = f"{ref.reference_type}:{ref.reference_id}#{ref.reference_line}"
            detail["movement_type"] = str(draft.movement_type)
            detail["quantity"] = draft.quantity
        logger.warning("movement_rejected", extra={"reference": entity_id, "error_code": exc.code})
        log_event(
            self._db,
            draft.actor_id if draft is not None else None,
            action="movement_rejected",
            entity_type="movement",
            entity_id=entity_id,
            detail=detail,
        )

    def _movement_result(self, written: Written, product: Optional[Product] = None) -> MovementResult:
        movement, level, duplicate = written
        return MovementResult(
            movement=MovementRead.model_validate(movement),
            stock_level=StockLevelRead.model_validate(level),
            duplicate=duplicate,
            warning=self._restock_warning(product, level),
        )

    @staticmethod
    def _restock_warning(product: Optional[Product], level: StockLevel) -> Optional[str]:
        if product is None:
            return None
        min_stock = int(product.min_stock or 0)
        if min_stock > 0 and level.quantity_available < min_stock:
            return "Needs restock"
        return None

    def record_movement(self, draft: MovementDraft) -> MovementResult:
        """Append and apply one prepared movement; a repeated reference is a no-op."""
        with LogContext.bind(reference_id=draft.reference.reference_id, actor_id=draft.actor_id):
            validate_draft(draft)
            product = self._catalog.get(draft.product_id)
            return self._movement_result(self._write(draft), product)

    # -- receiving / checkout -------------------------------------------

    def apply_movement(self, payload: MovementCreate, actor_id: Optional[str] = None) -> MovementResult:
        product = require_product(self._catalog, payload.sku)
        location_id = self._locations.resolve_id(payload.location)

        reference_type = payload.reference_type or _DEFAULT_REFERENCE_TYPES[payload.movement_type]
        if reference_type in _RESERVED_REFERENCE_TYPES:
            raise ValidationError(
                f"reference_type {reference_type} is not accepted here", field="reference_type"
            )
        reference_id = (payload.reference_id or "").strip() or new_reference("MOV")

        draft = MovementDraft(
            product_id=product.id,
            location_id=location_id,
            movement_type=payload.movement_type,
            quantity=payload.quantity,
            reference=Reference(reference_type, reference_id, payload.reference_line),
            unit_cost=payload.unit_cost,
            batch_number=payload.batch_number,
            expiry_date=payload.expiry_date,
            note=payload.note,
            actor_id=actor_id,
        )
        with LogContext.bind(reference_id=reference_id, actor_id=actor_id):
            validate_draft(draft)
            return self._movement_result(self._write(draft), product)

    # -- adjustments ----------------------------------------------------

    def _adjustment_draft(
        self,
        line: AdjustmentCreate | BulkAdjustmentLine,
        reference: Reference,
        actor_id: Optional[str],
        created_at: Optional[datetime] = None,
    ) -> tuple[MovementDraft, Product]:
        product = require_product(self._catalog, line.sku)
        location_id = self._locations.resolve_id(line.location)

        try:
            direction = Direction(line.direction)
        except ValueError:
            raise ValidationError(
                f"direction must be increase or decrease, got {line.direction}", field="direction"
            ) from None
        try:
            reason = ReasonCode(line.reason_code)
        except ValueError:
            raise ValidationError(f"Unknown reason_code: {line.reason_code}", field="reason_code") from None

        movement_type = (
            MovementType.ADJUSTMENT_IN if direction is Direction.INCREASE else MovementType.ADJUSTMENT_OUT
        )
        draft = MovementDraft(
            product_id=product.id,
            location_id=location_id,
            movement_type=movement_type.value,
            quantity=line.quantity,
            reference=reference,
            unit_cost=line.unit_cost,
            reason_code=reason.value,
            batch_number=line.batch_number,
            expiry_date=line.expiry_date,
            note=line.note,
            actor_id=actor_id,
            created_at=created_at,
        )
        validate_draft(draft)
        return draft, product

    def adjust(self, payload: AdjustmentCreate, actor_id: Optional[str] = None) -> MovementResult:
        reference_id = (payload.reference_id or "").strip() or new_reference("ADJ")
        with LogContext.bind(reference_id=reference_id, actor_id=actor_id):
            draft, product = self._adjustment_draft(
                payload, Reference(ReferenceType.ADJUSTMENT.value, reference_id), actor_id
            )
            return self._movement_result(self._write(draft), product)

    def bulk_adjust(
        self, payload: BulkAdjustmentCreate, actor_id: Optional[str] = None
    ) -> BulkAdjustmentResult:
        """Validate every line, then apply the valid ones one by one.

        Applied lines stand even when a later line fails; failures are
        reported per line (1-based) and never undo earlier lines.
        """
        reference_id = (payload.reference_id or "").strip() or new_reference("ADJ")
        submitted_at = utcnow()
        planned: list[tuple[int, str, MovementDraft]] = []
        failed: list[BulkLineFailure] = []
        simulated: dict[tuple[int, int], int] = {}

        with LogContext.bind(reference_id=reference_id, actor_id=actor_id):
            for line_no, line in enumerate(payload.lines, start=1):
                reference = Reference(ReferenceType.ADJUSTMENT.value, reference_id, line_no)
                try:
                    draft, _ = self._adjustment_draft(line, reference, actor_id, submitted_at)
                    key = pair_key(*draft.pair)
                    if key not in simulated:
                        level = self._materializer.level_for(*draft.pair)
                        simulated[key] = int(level.quantity_on_hand) if level is not None else 0
                    delta = draft.quantity if draft.movement_type == MovementType.ADJUSTMENT_IN.value else -draft.quantity
                    if simulated[key] + delta < 0 and not self._materializer.allow_negative_stock:
                        raise NegativeStockError(draft.product_id, draft.location_id, simulated[key], delta)
                    simulated[key] += delta
                    planned.append((line_no, line.sku, draft))
                except StockLedgerError as exc:
                    failed.append(
                        BulkLineFailure(line=line_no, sku=line.sku, error_code=exc.code, message=str(exc))
                    )

            applied: list[int] = []
            movements: list[MovementRead] = []
            for line_no, sku, draft in planned:
                try:
                    movement, _, _ = self._write(draft)
                except StockLedgerError as exc:
                    failed.append(BulkLineFailure(line=line_no, sku=sku, error_code=exc.code, message=str(exc)))
                    continue
                applied.append(line_no)
                movements.append(MovementRead.model_validate(movement))

            failed.sort(key=lambda f: f.line)
            logger.info(
                "bulk_adjustment_completed",
                extra={"lines": len(payload.lines), "applied": len(applied), "failed": len(failed)},
            )
            log_event(
                self._db,
                actor_id,
                action="bulk_adjustment",
                entity_type="adjustment",
                entity_id=reference_id,
                detail={"applied": applied, "failed": [f.line for f in failed]},
            )
        return BulkAdjustmentResult(
            reference_id=reference_id, applied=applied, failed=failed, movements=movements
        )

    # -- transfers ------------------------------------------------------

    @staticmethod
    def _advance(transfer: StockTransfer, to_status: TransferStatus, reason: Optional[str] = None) -> TransferStatus:
        current = TransferStatus(transfer.status)
        if to_status not in TRANSFER_TRANSITIONS[current]:
            raise InvalidTransferTransition(transfer.reference_id, current.value, to_status.value)
        transfer.status = to_status.value
        if reason:
            transfer.failure_reason = reason[:255]
        transfer.updated_at = utcnow()
        return current

    @staticmethod
    def _log_state(transfer_id: int, from_status: Optional[TransferStatus], to_status: TransferStatus) -> None:
        logger.info(
            "transfer_state",
            extra={
                "from_status": from_status.value if from_status is not None else None,
                "to_status": to_status.value,
                "transfer_id": transfer_id,
            },
        )

    def _transition(self, transfer: StockTransfer, to_status: TransferStatus, reason: Optional[str] = None) -> None:
        current = self._advance(transfer, to_status, reason)
        self._db.commit()
        self._log_state(transfer.id, current, to_status)

    def _open_transfer(self, transfer: StockTransfer, debit: MovementDraft) -> Optional[StockTransfer]:
        """Insert the transfer and debit its source in one transaction.

        A rejected debit leaves neither the transfer row nor a movement.
        Returns the stored transfer when another request already used the
        reference, otherwise None.
        """
        reference_id = transfer.reference_id
        rejected: Optional[StockError] = None

        self._db.commit()
        with self._locks.hold(pair_key(*debit.pair)):
            try:
                self._transfers.add(transfer)
                self._db.flush()
                movement = self._ledger.append(debit)
                self._materializer.apply(movement, enforce_available=True)
                self._advance(transfer, TransferStatus.SOURCE_DEBITED)
                self._db.commit()
            except IntegrityError:
                self._db.rollback()
                existing = self._transfers.get_by_reference(reference_id)
                if existing is None:
                    raise
                return existing
            except StockError as exc:
                self._db.rollback()
                rejected = exc
            except Exception:
                self._db.rollback()
                raise

        if rejected is not None:
            self._reject(debit, rejected)
            raise rejected
        self._log_state(transfer.id, None, TransferStatus.REQUESTED)
        self._log_state(transfer.id, TransferStatus.REQUESTED, TransferStatus.SOURCE_DEBITED)
        return None

    def get_transfer(self, reference_id: str) -> TransferResult:
        transfer = self._transfers.get_by_reference(reference_id)
        if transfer is None:
            raise TransferNotFoundError(reference_id)
        return self._transfer_result(transfer)

    def _transfer_result(self, transfer: StockTransfer, duplicate: bool = False) -> TransferResult:
        source = self._materializer.level_for(transfer.product_id, transfer.from_location_id)
        destination = self._materializer.level_for(transfer.product_id, transfer.to_location_id)
        result = TransferResult(
            transfer=TransferRead.model_validate(transfer),
            source_level=StockLevelRead.model_validate(source) if source is not None else None,
            destination_level=StockLevelRead.model_validate(destination) if destination is not None else None,
            duplicate=duplicate,
        )
        self._db.commit()
        return result

    def transfer(self, payload: TransferCreate, actor_id: Optional[str] = None) -> TransferResult:
        """Move stock between two locations.

        requested -> source_debited -> destination_credited. The transfer
        row and the source debit commit together, so a rejected debit leaves
        neither. If the destination credit fails the source debit is reversed with a
        compensating movement and TransferFailed is raised; the transfer
        ends in ``failed`` via ``compensation_applied``.
        """
        reference_id = (payload.reference_id or "").strip() or new_reference("TRF")
        with LogContext.bind(reference_id=reference_id, actor_id=actor_id):
            existing = self._transfers.get_by_reference(reference_id)
            if existing is not None:
                return self._transfer_result(existing, duplicate=True)

            product = require_product(self._catalog, payload.sku)
            product_id = product.id
            source_id = self._locations.resolve_id(payload.from_location)
            destination_id = self._locations.resolve_id(payload.to_location)
            if location_key(source_id) == location_key(destination_id):
                raise ValidationError("source and destination must differ", field="to_location")

            source_level = self._materializer.level_for(product_id, source_id)
            available = source_level.quantity_available if source_level is not None else 0
            if available < payload.quantity:
                raise InsufficientStockError(product_id, source_id, available, payload.quantity)
            source_cost = source_level.cost_per_unit

            now = utcnow()
            transfer = StockTransfer(
                reference_id=reference_id,
                product_id=product_id,
                from_location_id=source_id,
                to_location_id=destination_id,
                quantity=payload.quantity,
                status=TransferStatus.REQUESTED.value,
                note=payload.note,
                actor_id=actor_id,
                created_at=now,
                updated_at=now,
            )
            reference = Reference(ReferenceType.TRANSFER.value, reference_id)
            debit = MovementDraft(
                product_id=product_id,
                location_id=source_id,
                movement_type=MovementType.TRANSFER_OUT.value,
                quantity=payload.quantity,
                reference=reference,
                unit_cost=source_cost,
                note=payload.note,
                actor_id=actor_id,
            )
            existing = self._open_transfer(transfer, debit)
            if existing is not None:
                return self._transfer_result(existing, duplicate=True)

            credit = MovementDraft(
                product_id=product_id,
                location_id=destination_id,
                movement_type=MovementType.TRANSFER_IN.value,
                quantity=payload.quantity,
                reference=reference,
                unit_cost=source_cost,
                note=payload.note,
                actor_id=actor_id,
            )
            try:
                self._write(credit)
            except (StockLedgerError, SQLAlchemyError) as exc:
                self._compensate(transfer, product_id, source_id, source_cost, exc, actor_id)
            self._transition(transfer, TransferStatus.DESTINATION_CREDITED)
            return self._transfer_result(transfer)

    def _compensate(
        self,
        transfer: StockTransfer,
        product_id: int,
        source_id: Optional[int],
        source_cost: Any,
        cause: Exception,
        actor_id: Optional[str],
    ) -> None:
        reference_id = transfer.reference_id
        compensation_reference = compensation_reference_for(reference_id)
        reason = f"destination credit failed: {cause}"
        draft = MovementDraft(
            product_id=product_id,
            location_id=source_id,
            movement_type=MovementType.TRANSFER_IN.value,
            quantity=transfer.quantity,
            reference=Reference(ReferenceType.TRANSFER_COMPENSATION.value, reference_id),
            unit_cost=source_cost,
            note=f"Reversal of transfer {reference_id}",
            actor_id=actor_id,
        )
        try:
            movement, _, _ = self._write(draft)
        except (StockLedgerError, SQLAlchemyError):
            # transfer stays in source_debited; rebuild or a retried compensation settles it
            logger.error("transfer_compensation_failed", extra={"cause": str(cause)}, exc_info=True)
            raise

        transfer.compensation_reference = compensation_reference
        self._transition(transfer, TransferStatus.COMPENSATION_APPLIED, reason=reason)
        self._transition(transfer, TransferStatus.FAILED, reason=reason)
        logger.warning(
            "transfer_compensated",
            extra={"compensation_reference": compensation_reference, "movement_id": movement.id},
        )
        log_event(
            self._db,
            actor_id,
            action="transfer_compensated",
            entity_type="transfer",
            entity_id=reference_id,
            detail={"compensation_reference": compensation_reference, "reason": reason},
        )
        raise TransferFailed(reference_id, compensation_reference, reason, movement.id) from cause

    # -- stock counts ---------------------------------------------------

    def record_count(self, payload: StockCountCreate, actor_id: Optional[str] = None) -> StockCountResult:
        """Bring each counted product to its counted quantity at one location."""
        reference_id = (payload.reference_id or "").strip() or new_reference("CNT")
        counted_at = utcnow()
        with LogContext.bind(reference_id=reference_id, actor_id=actor_id):
            location_id = self._locations.resolve_id(payload.location)
            products = [require_product(self._catalog, line.sku) for line in payload.lines]

            results: list[StockCountLineResult] = []
            for line_no, (line, product) in enumerate(zip(payload.lines, products), start=1):
                product_id = product.id
                seen: dict[str, int] = {}

                def build(line=line, product_id=product_id, line_no=line_no, seen=seen) -> Optional[MovementDraft]:
                    level = self._materializer.level_for(product_id, location_id)
                    expected = int(level.quantity_on_hand) if level is not None else 0
                    seen["expected"] = expected
                    variance = line.counted_quantity - expected
                    if variance == 0:
                        return None
                    return MovementDraft(
                        product_id=product_id,
                        location_id=location_id,
                        movement_type=MovementType.COUNT.value,
                        direction=(Direction.INCREASE if variance > 0 else Direction.DECREASE).value,
                        quantity=abs(variance),
                        reference=Reference(ReferenceType.COUNT.value, reference_id, line_no),
                        reason_code=ReasonCode.CYCLE_COUNT.value,
                        note=line.note,
                        actor_id=actor_id,
                        created_at=counted_at,
                    )

                written = self._write_built((product_id, location_id), build)
                expected = seen["expected"]
                results.append(
                    StockCountLineResult(
                        line=line_no,
                        sku=line.sku,
                        expected_quantity=expected,
                        counted_quantity=line.counted_quantity,
                        variance=line.counted_quantity - expected,
                        movement_id=written[0].id if written is not None else None,
                    )
                )

            log_event(
                self._db,
                actor_id,
                action="stock_count",
                entity_type="count",
                entity_id=reference_id,
                detail={"lines": len(results), "variances": sum(1 for r in results if r.variance)},
            )
        return StockCountResult(reference_id=reference_id, location_id=location_id, lines=results)

    # -- reservations and reconciliation ---------------------------------

    def reserve(self, sku: str, payload: ReserveRequest) -> StockLevelRead:
        product = require_product(self._catalog, sku)
        location_id = self._locations.resolve_id(payload.location)
        level = self._locked(
            (product.id, location_id),
            lambda: self._materializer.reserve(product.id, location_id, payload.quantity),
        )
        return StockLevelRead.model_validate(level)

    def release(self, sku: str, payload: ReserveRequest) -> StockLevelRead:
        product = require_product(self._catalog, sku)
        location_id = self._locations.resolve_id(payload.location)
        level = self._locked(
            (product.id, location_id),
            lambda: self._materializer.release(product.id, location_id, payload.quantity),
        )
        return StockLevelRead.model_validate(level)

    def verify(self, sku: str, location: Optional[str] = None, repair: bool = False) -> DriftReport:
        product = require_product(self._catalog, sku)
        product_id = product.id
        location_id = self._locations.resolve_id(location)
        report = self._materializer.verify(product_id, location_id)
        if report.in_sync or not repair:
            if not report.in_sync:
                logger.warning("stock_drift_detected", extra=report.model_dump(mode="json"))
            self._db.commit()
            return report

        logger.warning("stock_drift_detected", extra=report.model_dump(mode="json"))
        self._locked((product_id, location_id), lambda: self._materializer.rebuild(product_id, location_id))
        report = self._materializer.verify(product_id, location_id)
        self._db.commit()
        return report.model_copy(update={"repaired": True})
