"""Typed errors raised by the stock ledger.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer answers with. Structured context lives on attributes, never only in the
message.

    StockLedgerError
    +-- ValidationError
    +-- NotFoundError
    |   +-- ProductNotFoundError
    |   +-- LocationNotFoundError
    |   +-- TransferNotFoundError
    +-- ConflictError
    |   +-- ReferenceConflictError
    |   +-- DuplicateProductError
    |   +-- DuplicateLocationError
    |   +-- ImmutableMovementError
    |   +-- InvalidTransferTransition
    +-- StockError
    |   +-- NegativeStockError
    |   +-- InsufficientStockError
    +-- ContentionError
    +-- TransferFailed
"""

from __future__ import annotations

from typing import Any, Optional


class StockLedgerError(Exception):
    code: str = "STOCK_LEDGER_ERROR"
    status_code: int = 400

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "detail": str(self)}
        for key, value in vars(self).items():
            if not key.startswith("_"):
                data[key] = value
        return data


class ValidationError(StockLedgerError):
    """Malformed input: non-positive quantity, unknown reason code, ..."""

    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class NotFoundError(StockLedgerError):
    code = "NOT_FOUND"
    status_code = 404


class ProductNotFoundError(NotFoundError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product: Any):
        self.product = product
        super().__init__(f"Product not found: {product}")


class LocationNotFoundError(NotFoundError):
    code = "LOCATION_NOT_FOUND"

    def __init__(self, location: Any):
        self.location = location
        super().__init__(f"Location not found: {location}")


class TransferNotFoundError(NotFoundError):
    code = "TRANSFER_NOT_FOUND"

    def __init__(self, reference_id: str):
        self.reference_id = reference_id
        super().__init__(f"Transfer not found: {reference_id}")


class ConflictError(StockLedgerError):
    code = "CONFLICT"
    status_code = 409


class ReferenceConflictError(ConflictError):
    """The idempotency key of a movement is already in the ledger."""

    code = "REFERENCE_CONFLICT"

    def __init__(
        self,
        reference_type: str,
        reference_id: str,
        movement_type: str,
        existing_movement_id: Optional[int] = None,
        reference_line: int = 0,
    ):
        self.reference_type = reference_type
        self.reference_id = reference_id
        self.reference_line = reference_line
        self.movement_type = movement_type
        self.existing_movement_id = existing_movement_id
        super().__init__(
            f"Movement {movement_type} already recorded for "
            f"{reference_type}:{reference_id}#{reference_line}"
        )


class DuplicateProductError(ConflictError):
    code = "DUPLICATE_PRODUCT"

    def __init__(self, sku: str):
        self.sku = sku
        super().__init__(f"SKU already exists: {sku}")


class DuplicateLocationError(ConflictError):
    code = "DUPLICATE_LOCATION"

    def __init__(self, location_code: str):
        self.location_code = location_code
        super().__init__(f"Location already exists: {location_code}")


class ImmutableMovementError(ConflictError):
    code = "IMMUTABLE_MOVEMENT"

    def __init__(self, movement_id: Optional[int], operation: str):
        self.movement_id = movement_id
        self.operation = operation
        super().__init__(
            f"Movement {movement_id} is immutable; {operation} is not allowed, "
            "record a compensating movement instead"
        )


class InvalidTransferTransition(ConflictError):
    code = "INVALID_TRANSFER_TRANSITION"

    def __init__(self, reference_id: str, from_status: str, to_status: str):
        self.reference_id = reference_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Transfer {reference_id} cannot move from {from_status} to {to_status}"
        )


class StockError(StockLedgerError):
    code = "STOCK_ERROR"
    status_code = 409


class NegativeStockError(StockError):
    """Applying the movement would drive on-hand quantity below zero."""

    code = "NEGATIVE_STOCK"

    def __init__(
        self,
        product_id: int,
        location_id: Optional[int],
        quantity_on_hand: int,
        delta: int,
    ):
        self.product_id = product_id
        self.location_id = location_id
        self.quantity_on_hand = quantity_on_hand
        self.delta = delta
        super().__init__(
            f"Insufficient stock for product {product_id} at location "
            f"{location_id if location_id is not None else 'global'}: "
            f"on hand {quantity_on_hand}, change {delta}"
        )


class InsufficientStockError(StockError):
    """Available (unreserved) quantity does not cover the request."""

    code = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        product_id: int,
        location_id: Optional[int],
        available: int,
        requested: int,
    ):
        self.product_id = product_id
        self.location_id = location_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Only {available} available for product {product_id}, requested {requested}"
        )


class ContentionError(StockLedgerError):
    code = "CONTENTION"
    status_code = 503

    def __init__(self, product_id: int, location_id: Optional[int], attempts: int):
        self.product_id = product_id
        self.location_id = location_id
        self.attempts = attempts
        super().__init__(
            f"Stock level for product {product_id} at location {location_id} "
            f"kept changing; gave up after {attempts} attempts"
        )


class TransferFailed(StockLedgerError):
    """Destination credit failed; the source debit was compensated."""

    code = "TRANSFER_FAILED"
    status_code = 409

    def __init__(
        self,
        reference_id: str,
        compensation_reference: str,
        reason: str,
        compensation_movement_id: Optional[int] = None,
    ):
        self.reference_id = reference_id
        self.compensation_reference = compensation_reference
        self.compensation_movement_id = compensation_movement_id
        self.reason = reason
        super().__init__(
            f"Transfer {reference_id} failed ({reason}); source restored by "
            f"{compensation_reference}"
        )
