from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger domain errors."""


class RateUnavailable(LedgerError, RuntimeError):
    """Raised when an exchange rate cannot be obtained."""


class ValidationFailure(LedgerError, ValueError):
    """Raised when input is rejected before any computation happens."""


class NotFound(LedgerError, LookupError):
    def __init__(self, resource: str, resource_id: object = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource.capitalize()} not found.")


class StoreFailure(LedgerError, RuntimeError):
    """Raised when the entity store cannot complete a read or write."""
