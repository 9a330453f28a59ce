"""
Pass Sync Errors
================

One hierarchy for every failure the service surfaces.

- status_code: HTTP status used by the route layer envelope
- code: stable machine-readable identifier
- retryable: whether the caller may try again later
- details: structured context for client display (e.g. derived ticket counts)
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PassSyncError(Exception):
    status_code = 500
    code = "internal_error"
    retryable = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class NotFoundError(PassSyncError):
    status_code = 404
    code = "not_found"


class UnauthorizedOperatorError(PassSyncError):
    status_code = 403
    code = "unauthorized_operator"


class InsufficientAccessError(PassSyncError):
    status_code = 409
    code = "no_access"


class NoRemainingTicketsError(PassSyncError):
    status_code = 409
    code = "no_remaining_tickets"

    def __init__(self, purchased: int, used: int, **extra: Any) -> None:
        self.purchased = int(purchased)
        self.used = int(used)
        super().__init__(
            f"All tickets used ({self.used}/{self.purchased})",
            details={"purchased": self.purchased, "used": self.used, **extra},
        )


class LedgerUnavailableError(PassSyncError):
    status_code = 503
    code = "ledger_unavailable"
    retryable = True


class PersistenceError(PassSyncError):
    status_code = 503
    code = "store_unavailable"
    retryable = True


class PushDeliveryError(PassSyncError):
    status_code = 502
    code = "push_failed"
    retryable = True

    def __init__(self, reason: str, *, status: Optional[int] = None) -> None:
        self.reason = reason
        self.status = status
        super().__init__(reason, details={"status": status} if status is not None else None)


class PassAuthError(PassSyncError):
    status_code = 401
    code = "unauthorized"


class ConfigurationError(PassSyncError):
    code = "configuration_error"
