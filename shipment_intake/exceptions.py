"""
Error taxonomy for the intake and reconciliation core.

    IntakeError (base)
    ├── InvalidDocument             bad upload bytes, surfaced to the caller
    ├── ExtractionError
    │   ├── TransientExtractionError   retryable (timeout, 5xx, 429)
    │   ├── ExtractionUnavailable      retries exhausted / non-transient
    │   └── ParseFailure               malformed structured output
    ├── LedgerError
    │   ├── ItemNotFound
    │   ├── InsufficientStock
    │   ├── InvalidReservationState
    │   └── LedgerBusy                 contention retries exhausted
    ├── UnresolvedEntity
    ├── ConcurrencyConflict            lost a first-committer-wins race
    ├── ReviewTaskNotFound
    ├── RecordNotFound
    └── InvalidStatusTransition

Pipeline-stage errors never cross the pipeline boundary; they become a
terminal document state. Only ``LedgerBusy`` and ``InvalidDocument`` are
request-level failures for uploads.
"""


class IntakeError(Exception):
    """Base exception; ``code`` is the stable machine-readable name."""

    code: str = "INTAKE_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class InvalidDocument(IntakeError):
    code = "InvalidDocument"


# Extraction


class ExtractionError(IntakeError):
    code = "ExtractionError"


class TransientExtractionError(ExtractionError):
    code = "TransientExtractionError"


class ExtractionUnavailable(ExtractionError):
    code = "ExtractionUnavailable"


class ParseFailure(ExtractionError):
    code = "ParseFailure"


# Ledger


class LedgerError(IntakeError):
    code = "LedgerError"


class ItemNotFound(LedgerError):
    code = "ItemNotFound"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Inventory item {item_id} not found", {"item_id": item_id})


class InsufficientStock(LedgerError):
    code = "InsufficientStock"

    def __init__(self, item_id: str, requested: int, available: int):
        self.item_id = item_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for item {item_id}. Available: {available}, requested: {requested}",
            {"item_id": item_id, "requested": requested, "available": available},
        )


class InvalidReservationState(LedgerError):
    code = "InvalidReservationState"


class LedgerBusy(LedgerError):
    code = "Busy"


# Reconciliation


class UnresolvedEntity(IntakeError):
    code = "UnresolvedEntity"


class ConcurrencyConflict(IntakeError):
    code = "ConcurrencyConflict"


class ReviewTaskNotFound(IntakeError):
    code = "ReviewTaskNotFound"


class RecordNotFound(IntakeError):
    code = "RecordNotFound"


class InvalidStatusTransition(IntakeError):
    code = "InvalidStatusTransition"
