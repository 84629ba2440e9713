"""Domain exceptions raised by the consistency engine."""

from __future__ import annotations

from typing import Any, Optional, Sequence


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced customer, item, or document is unknown."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when caller input is rejected before anything is written."""


class InsufficientStockError(ValidationError):
    """Raised when a new invoice line asks for more than the item has in stock."""

    def __init__(self, item_name: str, available: int, requested: int):
        super().__init__(
            f"Not enough stock for {item_name} (available: {available}, requested: {requested})"
        )
        self.item_name = item_name
        self.available = available
        self.requested = requested


class GuardError(BusinessRuleViolation):
    """Raised when a precondition blocks an operation outright."""


class InvalidTransitionError(BusinessRuleViolation):
    """Raised when a status change is not an allowed pair for the document type."""


class LedgerInconsistencyError(BusinessRuleViolation):
    """Raised when stock was only partly adjusted for one logical event.

    ``applied`` lists the deltas that reached the item collection before the
    failure and ``failed`` the delta that could not be applied.
    """

    def __init__(self, message: str, *, applied: Sequence[Any] = (), failed: Optional[Any] = None):
        super().__init__(message)
        self.applied = list(applied)
        self.failed = failed
