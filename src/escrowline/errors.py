from __future__ import annotations

from typing import Any


class EscrowlineError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": False, "message": self.message, "error": self.kind}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(EscrowlineError):
    kind = "validation_error"
    status_code = 400


class NotFoundError(EscrowlineError):
    kind = "not_found"
    status_code = 404


class ForbiddenError(EscrowlineError):
    kind = "forbidden"
    status_code = 403


class InvalidTransitionError(EscrowlineError):
    kind = "invalid_transition"
    status_code = 409


class BudgetExceededError(EscrowlineError):
    kind = "budget_exceeded"
    status_code = 400


class CapacityExceededError(EscrowlineError):
    kind = "capacity_exceeded"
    status_code = 400


class InsufficientBalanceError(EscrowlineError):
    kind = "insufficient_balance"
    status_code = 400


class ConcurrencyConflictError(EscrowlineError):
    """The row changed between read and write; safe to retry after a re-read."""

    kind = "concurrency_conflict"
    status_code = 409


class ExternalDependencyError(EscrowlineError):
    """Blob storage or notification dispatch failed."""

    kind = "external_dependency"
    status_code = 502
