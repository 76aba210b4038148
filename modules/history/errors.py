"""Exception types raised by the history store and generation workflows."""

from __future__ import annotations

from typing import Iterable, Optional


class HistoryError(Exception):
    """Base class for every error surfaced by the history subsystem."""

    def __init__(self, message: str, warnings: Optional[Iterable[str]] = None) -> None:
        super().__init__(message)
        self.warnings: list[str] = list(warnings or [])


class ValidationError(HistoryError, ValueError):
    """Request rejected before any file or network side effect."""


class GenerationFailedError(HistoryError):
    """The generator failed or was cancelled; the new record was rolled back."""


class NotFoundError(HistoryError, LookupError):
    """No matching entry or edit exists."""


class CorruptRecordError(HistoryError):
    """A record directory exists but its metadata cannot be parsed."""


class PersistenceError(HistoryError):
    """Writing primary data (prompt, images, metadata) to disk failed."""


class GenerationCancelled(RuntimeError):
    """Raised by generators when the caller's cancel event fires."""
