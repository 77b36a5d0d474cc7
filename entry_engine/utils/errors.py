"""Exception hierarchy for reservation errors.

Provides structured error handling with error codes and HTTP status mapping.
A full tournament is a normal reservation outcome and has no exception here.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standard error codes."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    MISSING_FIELD = "MISSING_FIELD"
    UNAUTHORIZED = "UNAUTHORIZED"

    # Lookup errors
    TOURNAMENT_NOT_FOUND = "TOURNAMENT_NOT_FOUND"
    ENTRY_NOT_FOUND = "ENTRY_NOT_FOUND"
    WAITLIST_ROW_NOT_FOUND = "WAITLIST_ROW_NOT_FOUND"

    # Gateway errors
    GATEWAY_SIGNATURE_INVALID = "GATEWAY_SIGNATURE_INVALID"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    GATEWAY_NOT_CONFIGURED = "GATEWAY_NOT_CONFIGURED"

    # Concurrency
    LOCK_UNAVAILABLE = "LOCK_UNAVAILABLE"
    HOLD_RELEASED = "HOLD_RELEASED"

    # Reconciliation
    RECONCILIATION_CONFLICT = "RECONCILIATION_CONFLICT"


class EntryEngineError(Exception):
    """Base exception for reservation engine errors.

    Attributes:
        code: Error code for programmatic handling
        message: User-friendly error message
        details: Additional error details
        status_code: HTTP status the API layer responds with
    """

    status_code: int = 400

    def __init__(
        self,
        code: ErrorCode | str,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ):
        self.code = code if isinstance(code, str) else code.value
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class ValidationError(EntryEngineError):
    """Raised when a request is missing identifiers or carries bad values."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.INVALID_REQUEST, message, details, 400)


class AdminAuthError(EntryEngineError):
    """Raised when the admin credential is missing or wrong."""

    def __init__(self):
        super().__init__(ErrorCode.UNAUTHORIZED, "Admin credential required", None, 401)


class TournamentNotFoundError(EntryEngineError):
    def __init__(self, tournament_id: str):
        super().__init__(
            ErrorCode.TOURNAMENT_NOT_FOUND,
            f"Tournament not found: {tournament_id}",
            {"tournamentId": tournament_id},
            404,
        )


class EntryNotFoundError(EntryEngineError):
    def __init__(self, tournament_id: str, user_id: str):
        super().__init__(
            ErrorCode.ENTRY_NOT_FOUND,
            "Entry not found",
            {"tournamentId": tournament_id, "userId": user_id},
            404,
        )


class WaitlistRowNotFoundError(EntryEngineError):
    def __init__(self, tournament_id: str, user_id: str):
        super().__init__(
            ErrorCode.WAITLIST_ROW_NOT_FOUND,
            "No active waitlist row",
            {"tournamentId": tournament_id, "userId": user_id},
            404,
        )


class GatewayAuthenticityError(EntryEngineError):
    """Raised when an incoming gateway event fails signature verification."""

    def __init__(self, reason: str):
        super().__init__(
            ErrorCode.GATEWAY_SIGNATURE_INVALID,
            f"Webhook verification failed: {reason}",
            None,
            400,
        )


class GatewayCallFailure(EntryEngineError):
    """Raised when a remote gateway call fails."""

    def __init__(self, operation: str, reason: str):
        super().__init__(
            ErrorCode.GATEWAY_UNAVAILABLE,
            f"Payment gateway call failed: {operation}",
            {"operation": operation, "reason": reason},
            502,
        )


class GatewayNotConfiguredError(EntryEngineError):
    def __init__(self):
        super().__init__(
            ErrorCode.GATEWAY_NOT_CONFIGURED,
            "Payment gateway is not configured",
            None,
            503,
        )


class LockUnavailableError(EntryEngineError):
    """Raised when the per-tournament lock cannot be acquired in time."""

    def __init__(self, tournament_id: str):
        super().__init__(
            ErrorCode.LOCK_UNAVAILABLE,
            "Tournament is busy, retry shortly",
            {"tournamentId": tournament_id},
            503,
        )


class HoldReleasedError(EntryEngineError):
    """Raised when a pending hold was released while its checkout was created."""

    def __init__(self, tournament_id: str, user_id: str):
        super().__init__(
            ErrorCode.HOLD_RELEASED,
            "Reservation hold was released, try again",
            {"tournamentId": tournament_id, "userId": user_id},
            409,
        )

class ReconciliationConflict(EntryEngineError):
    """An event references a missing or already-terminal record.

    Never surfaced to the gateway: the engine logs it and acknowledges the
    event so it is not redelivered forever.
    """

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.RECONCILIATION_CONFLICT, reason, details, 200)
