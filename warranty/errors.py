"""Domain error taxonomy shared by the warranty services and the HTTP layer."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional


class WarrantyError(ValueError):
    """Base class for every failure a warranty operation reports to its caller."""

    kind = "internal"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class InvalidArgumentError(WarrantyError):
    kind = "invalid_argument"

    def __init__(
        self,
        message: str,
        fields: Optional[Iterable[Dict[str, Any]]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.fields: List[Dict[str, Any]] = list(fields or [])
        if self.fields:
            self.details.setdefault("fields", self.fields)

    @classmethod
    def for_field(cls, field: str, message: str, value: Any = None) -> "InvalidArgumentError":
        return cls(message, fields=[{"field": field, "message": message, "value": value}])


class PayloadTooLargeError(InvalidArgumentError):
    kind = "payload_too_large"


class NotFoundError(WarrantyError):
    kind = "not_found"


class ConflictError(WarrantyError):
    kind = "conflict"


class DuplicateBarcodeError(ConflictError):
    """Raised by the store when a barcode string already exists."""

    def __init__(self, barcodes: Iterable[str]) -> None:
        values = sorted(set(barcodes))
        super().__init__("Barcode already exists", {"barcodes": values})
        self.barcodes = values


class InvalidStateError(WarrantyError):
    kind = "invalid_state"

    def __init__(
        self,
        message: str,
        current_state: Any = None,
        legal_actions: Optional[Iterable[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.current_state = getattr(current_state, "value", current_state)
        self.legal_actions = sorted(legal_actions or [])
        if current_state is not None:
            self.details.setdefault("current_state", self.current_state)
            self.details.setdefault("legal_actions", self.legal_actions)


class InvalidTransitionError(InvalidStateError):
    kind = "invalid_transition"


class PreconditionFailedError(WarrantyError):
    kind = "precondition_failed"

    def __init__(self, message: str, reason: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.reason = reason
        self.details.setdefault("reason", reason)


class ForbiddenError(WarrantyError):
    kind = "forbidden"


class DeadlineExceededError(WarrantyError):
    kind = "deadline_exceeded"


class DependencyFailureError(WarrantyError):
    kind = "dependency_failure"


class InternalError(WarrantyError):
    kind = "internal"


HTTP_STATUS_BY_KIND: Dict[str, int] = {
    InvalidArgumentError.kind: 400,
    PayloadTooLargeError.kind: 413,
    NotFoundError.kind: 404,
    ConflictError.kind: 409,
    InvalidStateError.kind: 409,
    InvalidTransitionError.kind: 409,
    PreconditionFailedError.kind: 412,
    ForbiddenError.kind: 403,
    DeadlineExceededError.kind: 504,
    DependencyFailureError.kind: 502,
    InternalError.kind: 500,
}


def http_status_for(error: WarrantyError) -> int:
    return HTTP_STATUS_BY_KIND.get(error.kind, 500)
