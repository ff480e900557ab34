class TimeboxerError(Exception):
    """Base class for scheduling service errors."""


class InputValidationError(TimeboxerError, ValueError):
    """Malformed rule times, weekdays or hour budgets."""


class ExternalSyncFailure(TimeboxerError):
    """A single call to the calendar provider failed."""


class PersistenceFailure(TimeboxerError):
    """Assignment records could not be cleared or written."""


class RecalculationInProgress(TimeboxerError):
    """A recalculation for this scope is already running or was just triggered."""
