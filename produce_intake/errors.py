from __future__ import annotations

from typing import Any, Dict, Optional


class IntakeError(Exception):
    """Base error for the order-intake core; carries a stable kind for callers."""

    kind = "IntakeError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})


class ValidationError(IntakeError):
    """Missing checkout fields, negative quantities, prices or percentages."""

    kind = "ValidationError"


class AmbiguityUnresolvedError(IntakeError):
    """Confirmation attempted while review lines are still pending."""

    kind = "AmbiguityUnresolvedError"


class AccountRestrictedError(IntakeError):
    """Buyer has outstanding invoices; confirmations are blocked."""

    kind = "AccountRestrictedError"


class UpstreamParseError(IntakeError):
    """AI collaborator failed or returned malformed/empty data."""

    kind = "UpstreamParseError"


class NotFoundError(IntakeError):
    """Referenced order, session line or comparison does not exist."""

    kind = "NotFoundError"


class DataConsistencyWarning(UserWarning):
    """Lifecycle timestamps out of order; logged for the order store, never raised."""

    kind = "DataConsistencyWarning"


class ParseInProgressError(IntakeError):
    """A free-text parse is already running for this session."""

    kind = "ParseInProgressError"
