class LedgerError(Exception):
    """Base class for failures scoped to a single ledger operation."""


class NotFound(LedgerError):
    """The resource does not exist or is not owned by the caller."""


class ValidationError(LedgerError):
    """The request violates a type-specific invariant."""


class ConsistencyError(LedgerError):
    """A balance update could not be applied to every account it touches."""
