"""Exception types shared across fsd."""


class FsdError(Exception):
    """Base class for fsd errors."""


class WatcherError(FsdError):
    """A path could not be added to the watch set."""


class ProcValidationError(FsdError, ValueError):
    """A submitted proc request failed validation."""
