"""Base classes for short position data providers."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from ..deadline import Deadline
from ..models import DateRange, HarvestBatch, Issuer


class ShortDataProvider(ABC):
    """Abstract source of disclosed short positions.

    Each market regulator publishes its register differently, so every regulator
    gets its own implementation. Any provider is feedable as long as it honours
    :meth:`positions_for`.
    """

    #: Regulator code the provider is registered under.
    regulator: str = ""

    @abstractmethod
    def positions_for(
        self,
        issuer: Issuer,
        date_range: Optional[DateRange] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> HarvestBatch:
        """Return the positions disclosed against ``issuer``.

        ``date_range`` defaults to the open range, i.e. every currently alive
        position. Raises :class:`~short_harvest.errors.ProviderError` when the
        source could not be read reliably.
        """


__all__ = ["ShortDataProvider"]
