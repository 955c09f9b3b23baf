"""Caller supplied deadlines for blocking pipeline steps."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from .errors import HarvestCancelled


@dataclass(frozen=True)
class Deadline:
    """Absolute point on the monotonic clock after which work is abandoned."""

    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def check(self, what: str) -> None:
        """Raise :class:`HarvestCancelled` when the deadline has passed."""

        if self.expired:
            raise HarvestCancelled(f"Deadline expired before {what}")

    def clip(self, timeout: float) -> float:
        """Shrink ``timeout`` so that it does not outlive the deadline."""

        return min(timeout, self.remaining())


def check_deadline(deadline: Optional[Deadline], what: str) -> None:
    if deadline is not None:
        deadline.check(what)


__all__ = ["Deadline", "check_deadline"]
