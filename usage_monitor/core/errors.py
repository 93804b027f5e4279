"""
Error taxonomy for the usage monitor.

Each class maps to one way a poll cycle can go wrong and to the way the
coordinator reacts to it.
"""

from typing import List, Optional


class MonitorError(Exception):
    """Base class for all usage monitor errors."""


class CredentialError(MonitorError):
    """Missing, unreadable, or rejected bearer token.

    Triggers exactly one credential refresh and retry; a second failure
    aborts the cycle.
    """


class TransportError(MonitorError):
    """Network failure or non-success HTTP response.

    Aborts the cycle without an in-cycle retry; the next tick retries.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TruncatedFetchError(TransportError):
    """A paginated fetch failed part way through.

    The events accumulated before the failure are attached for inspection,
    but callers must not persist them.
    """

    def __init__(
        self,
        message: str,
        partial: Optional[List] = None,
        page: int = 0,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, status_code=status_code)
        self.partial = list(partial or [])
        self.page = page


class SchemaError(MonitorError):
    """A remote value could not be interpreted."""


class InvoiceParseError(SchemaError):
    """An invoice line description matched none of the known patterns."""

    def __init__(self, description: str):
        super().__init__(f"Could not parse invoice item: {description!r}")
        self.description = description


class ReconciliationWarning(UserWarning):
    """Two data sources disagreed and one of the resolution rules was applied.

    Carried as a value in the resolution result and logged; never raised.
    """

    def __init__(self, rule: str, message: str):
        super().__init__(message)
        self.rule = rule
        self.message = message

    def __str__(self) -> str:
        return f"[{self.rule}] {self.message}"


class PersistenceError(MonitorError):
    """A storage write failed; the rest of the cycle is skipped."""


class NotificationError(MonitorError):
    """The notification sink could not deliver an alert."""


class CycleCancelled(MonitorError):
    """The shutdown signal was observed at an I/O boundary."""


class UnknownModelError(MonitorError):
    """No pricing entry or alias exists for a model."""

    def __init__(self, model: str):
        super().__init__(f"No pricing known for model: {model}")
        self.model = model


class CsvImportError(MonitorError):
    """A usage export file could not be imported at all."""
