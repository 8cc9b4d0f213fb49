"""Failure taxonomy shared by the fetch, cache and aggregation layers.

Cancellation is not represented here: a withdrawn call surfaces as
:class:`asyncio.CancelledError`, which is never caught as a failure.
"""

from __future__ import annotations

import httpx


class CineFeedError(Exception):
    """Base class for errors raised by the service."""


class FetchError(CineFeedError):
    """An upstream request did not produce a usable payload."""

    def __init__(self, message: str, *, url: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class TransientFetchError(FetchError):
    """5xx, 429, timeout or transport failure; safe to retry."""


class FatalFetchError(FetchError):
    """Any other upstream failure; never retried."""


class StorageQuotaExceeded(CineFeedError):
    """A storage backend refused a write because it is full."""


RETRYABLE_STATUS_CODES = frozenset({429})


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


def raise_for_upstream_status(response: httpx.Response) -> bool:
    """Classify ``response`` and return ``False`` when it is a valid absence.

    2xx returns ``True``, 404 returns ``False``. Retryable statuses raise
    :class:`TransientFetchError`, everything else raises :class:`FatalFetchError`.
    """

    status = response.status_code
    if 200 <= status < 300:
        return True
    if status == 404:
        return False

    try:
        url: str | None = str(response.request.url)
    except RuntimeError:
        url = None
    message = f"Upstream responded with HTTP {status}"
    if is_retryable_status(status):
        raise TransientFetchError(message, url=url, status_code=status)
    raise FatalFetchError(message, url=url, status_code=status)
