"""Exception taxonomy for the billing ledger.

Every error carries a machine-readable ``code`` so the CLI and any
routing layer can render it without string matching::

    try:
        guard.add_participant(booking_id, request, client_version=v)
    except RosterConflictError as exc:
        refresh_and_retry(exc.current_version)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from clubledger.roster import RosterVersion


class ClubLedgerError(Exception):
    """Base exception for billing ledger errors."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class NotFoundError(ClubLedgerError):
    """A session, booking, participant, or tier does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="NOT_FOUND")


class InvalidInputError(ClubLedgerError):
    """Missing preview fields, malformed amounts, or a rejected request."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_INPUT")


class InsufficientPassesError(ClubLedgerError):
    """The member's guest-pass allowance cannot cover the request.

    :param available: Passes still available, for display to the member.
    :param requested: Passes the caller asked for.
    """

    def __init__(self, available: int, requested: int) -> None:
        self.available = available
        self.requested = requested
        super().__init__(
            f"Not enough guest passes available. Requested: {requested}, "
            f"Available: {available}",
            code="INSUFFICIENT_PASSES",
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["available"] = self.available
        return data


class RosterConflictError(ClubLedgerError):
    """A roster mutation presented a version that is no longer current.

    :param current_version: The authoritative version the client should
        refresh to before retrying.
    """

    def __init__(self, current_version: RosterVersion) -> None:
        self.current_version = current_version
        super().__init__(
            "Roster was modified by another user",
            code="ROSTER_CONFLICT",
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["current_version"] = int(self.current_version)
        return data


class ExternalProcessorError(ClubLedgerError):
    """Wraps a failure reported by the external payment processor.

    ``code`` carries the processor's own error code where one exists,
    e.g. ``resource_missing`` or ``payment_intent_unexpected_state``.
    """

    RESOURCE_MISSING = "resource_missing"
    UNEXPECTED_STATE = "payment_intent_unexpected_state"

    @property
    def is_resource_missing(self) -> bool:
        return self.code == self.RESOURCE_MISSING

    @property
    def is_unexpected_state(self) -> bool:
        return self.code == self.UNEXPECTED_STATE


class TransactionFailure(ClubLedgerError):
    """A database transaction failed and was rolled back."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="TRANSACTION_FAILED")
