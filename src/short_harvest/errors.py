"""Error taxonomy for the harvest pipeline."""
from __future__ import annotations

from enum import Enum
from typing import Mapping, Optional


class HarvestError(Exception):
    """Base class for every error raised by the harvester."""


class HarvestCancelled(HarvestError):
    """Raised when a caller supplied deadline expires mid-pipeline."""


class FetchError(HarvestError):
    """Transport level failure after the retry budget was spent."""

    def __init__(
        self,
        cause: str,
        attempts: int,
        *,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(f"{cause} (after {attempts} attempt(s))")
        self.cause = cause
        self.attempts = attempts
        self.status_code = status_code
        self.retryable = retryable


class StructureError(HarvestError):
    """The portal markup no longer matches the pinned table layout."""

    def __init__(self, message: str, url: Optional[str] = None) -> None:
        super().__init__(message if url is None else f"{message} [{url}]")
        self.message = message
        self.url = url


class RowError(HarvestError):
    """A single table row could not be normalized."""

    def __init__(
        self,
        reason: str,
        fragment: Mapping[str, str],
        column: Optional[str] = None,
    ) -> None:
        super().__init__(reason if column is None else f"{column}: {reason}")
        self.reason = reason
        self.fragment = dict(fragment)
        self.column = column


class ProviderErrorKind(str, Enum):
    FETCH = "fetch"
    STRUCTURE = "structure"
    EMPTY = "empty"
    UNKNOWN_ISSUER = "unknown_issuer"


class ProviderError(HarvestError):
    """Batch level failure of a data provider.

    ``pages_attempted`` is always reported so that an extraction that broke can be
    told apart from an issuer that simply has no disclosed positions.
    """

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        *,
        pages_attempted: int = 0,
        skipped_rows: int = 0,
    ) -> None:
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.message = message
        self.pages_attempted = pages_attempted
        self.skipped_rows = skipped_rows


class FeedErrorKind(str, Enum):
    PERSISTENCE = "persistence"


class FeedError(HarvestError):
    """The store rejected a sync even after retrying the transaction."""

    def __init__(self, kind: FeedErrorKind, message: str, *, attempts: int) -> None:
        super().__init__(f"{kind.value}: {message} (after {attempts} attempt(s))")
        self.kind = kind
        self.message = message
        self.attempts = attempts


__all__ = [
    "HarvestError",
    "HarvestCancelled",
    "FetchError",
    "StructureError",
    "RowError",
    "ProviderErrorKind",
    "ProviderError",
    "FeedErrorKind",
    "FeedError",
]
