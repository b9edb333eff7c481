"""
Participation error taxonomy.

Local checks (validation, eligibility, closure, prior participation) are
advisory. The ledger's answer to a real submission is authoritative and
arrives as ExternalRejectedError carrying the raw reason text.
"""

from __future__ import annotations

from typing import Any


class AgoraError(Exception):
    """Base class for every failure the participation core reports."""

    message = "Participation failed"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        super().__init__(message or self.message)
        self.context = context


class ValidationError(AgoraError):
    """Malformed form input. Never reaches the external ledger."""

    message = "Invalid input"


class IncompleteFormError(ValidationError):
    """A create form is missing required content."""

    message = "Form is incomplete"


class InvalidIdentityError(AgoraError):
    message = "Identity is missing or not a valid address"


class NotEligibleError(AgoraError):
    message = "Identity is not on the allow-list for this item"


class AlreadyParticipatedError(AgoraError):
    message = "Identity has already participated in this item"


class ItemClosedError(AgoraError):
    message = "Item is closed"


class ResultsNotYetFinalError(AgoraError):
    message = "Results are only final once the item is closed"


class ItemNotFoundError(AgoraError):
    message = "Item not found"


class ExternalUnavailableError(AgoraError):
    """Network failure, timeout, or ledger-side outage."""

    message = "Ledger is unavailable"


class ExternalRejectedError(AgoraError):
    """
    The ledger's authoritative rejection of a submitted intent.

    ``kind`` is the classified RejectionKind, or None when the ledger
    returned text the active rejection catalog does not recognise.
    """

    message = "Action rejected by the ledger"

    def __init__(
        self,
        reason_text: str,
        kind: Any = None,
        message: str | None = None,
    ) -> None:
        super().__init__(message, reason_text=reason_text)
        self.reason_text = reason_text
        self.kind = kind


class MalformedLedgerResponseError(ExternalUnavailableError):
    """The ledger answered, but with a payload that cannot be parsed."""

    message = "Ledger returned a malformed response"
