"""Exceptions raised by relmap."""


class RelmapError(Exception):
    """Base class for relmap errors."""


class QueueClearedError(RelmapError):
    """Raised for every pending rate-limited call when its queue is cleared."""

    def __init__(self, message: str = "Queue cleared"):
        super().__init__(message)


class ConfigError(RelmapError):
    """Raised for missing or malformed configuration."""
