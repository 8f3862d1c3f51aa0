class LedgerError(Exception):
    """Base class for every failure the ledger reports to its callers."""


class NotFoundError(LedgerError, ValueError):
    pass


class BudgetExceededError(LedgerError, ValueError):
    """An expense would push the month's expenses above its income."""


class ValidationFault(LedgerError, ValueError):
    """A stored or proposed value is malformed (amount, date, required field)."""


class StorageError(LedgerError, RuntimeError):
    """The persistence layer failed; safe to retry with the same input."""
