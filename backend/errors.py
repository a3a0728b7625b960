"""Exception types raised by the storage layer and the AI client."""

from typing import Optional


class StorageError(RuntimeError):
    """A persistence operation could not be completed."""


class RemoteStorageError(StorageError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class BackupFormatError(ValueError):
    """The backup payload is not a usable export."""


class AIServiceError(RuntimeError):
    """The AI service failed or returned something we could not parse."""
