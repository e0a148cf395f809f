from __future__ import annotations

from typing import Any


class ReconciliationError(Exception):
    """Base class for every domain error raised by the engine."""

    code = "reconciliation_error"
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message, "retryable": self.retryable}
        if self.details:
            body["details"] = _jsonable(self.details)
        return body


class ValidationError(ReconciliationError):
    code = "validation_error"


class OverAllocationError(ReconciliationError):
    code = "over_allocation"


class DuplicateClaimAllocationError(ReconciliationError):
    code = "duplicate_claim_allocation"


class InvalidClaimPayerError(ReconciliationError):
    code = "invalid_claim_payer"


class DuplicateImportError(ReconciliationError):
    code = "duplicate_import"


class ParsingError(ReconciliationError):
    code = "parsing_error"

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message, errors=errors or [])
        self.errors = errors or []


class ConflictError(ReconciliationError):
    code = "conflict"
    retryable = True


class NotFoundError(ReconciliationError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class DownstreamNotificationError(ReconciliationError):
    """The allocation committed but the Claims service did not accept the status sync.

    Retry the notification (``retry_notifications``), never the allocation.
    """

    code = "downstream_notification_failed"
    retryable = True


class PaymentLockedError(ReconciliationError):
    code = "payment_locked"


class DeadlineExceededError(ReconciliationError):
    code = "deadline_exceeded"
    retryable = True


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)
