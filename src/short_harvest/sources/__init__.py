"""Provider factory for short position sources."""
from __future__ import annotations

import logging
from typing import Callable, Mapping

from ..config import Settings
from .base import ShortDataProvider
from .cnmv import CnmvProvider
from .fetcher import HtmlFetcher, RequestThrottle

LOGGER = logging.getLogger(__name__)


def _build_cnmv(fetcher: HtmlFetcher, settings: Settings) -> ShortDataProvider:
    return CnmvProvider(
        fetcher,
        url=settings.base_url,
        max_pages=settings.max_pages,
        error_threshold=settings.error_threshold,
    )


PROVIDERS: Mapping[str, Callable[[HtmlFetcher, Settings], ShortDataProvider]] = {
    "cnmv": _build_cnmv,
}


def create_fetcher(settings: Settings) -> HtmlFetcher:
    """Build the process wide fetcher shared by every issuer pipeline."""

    throttle = RequestThrottle(settings.max_concurrent_requests, settings.min_request_interval)
    return HtmlFetcher(
        timeout=settings.request_timeout,
        max_attempts=settings.max_attempts,
        backoff_factor=settings.backoff_factor,
        backoff_max=settings.backoff_max,
        throttle=throttle,
        pool_size=max(settings.max_workers, settings.max_concurrent_requests),
    )


def create_provider(regulator: str, fetcher: HtmlFetcher, settings: Settings) -> ShortDataProvider:
    """Instantiate the provider registered for ``regulator``."""

    try:
        factory = PROVIDERS[regulator.lower()]
    except KeyError:
        raise ValueError(f"Unsupported regulator: {regulator}") from None
    LOGGER.debug("Selected %s provider", regulator)
    return factory(fetcher, settings)


__all__ = [
    "create_fetcher",
    "create_provider",
    "PROVIDERS",
    "ShortDataProvider",
    "CnmvProvider",
    "HtmlFetcher",
    "RequestThrottle",
]
