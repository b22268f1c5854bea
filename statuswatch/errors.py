from typing import Optional


class StatusWatchError(Exception):
    """Base class for recoverable sampling errors."""


class AcquisitionError(StatusWatchError):
    """A raw reading source could not produce a reading."""

    def __init__(self, message: str, source_key: Optional[str] = None) -> None:
        super().__init__(message)
        self.source_key = source_key


class AcquisitionTimeout(AcquisitionError):
    """The acquisition did not finish within its timeout."""


class SampleError(StatusWatchError):
    """A reading had an unexpected shape and could not be derived."""
