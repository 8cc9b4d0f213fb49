"""Shared request helper mapping upstream responses onto the error taxonomy."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from ..errors import FatalFetchError, TransientFetchError, raise_for_upstream_status

logger = logging.getLogger(__name__)


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> Any:
    """GET ``url`` and return its decoded JSON body, or ``None`` for a 404.

    Timeouts and transport failures raise :class:`TransientFetchError`; the
    per-attempt timeout is the one configured on ``client``.
    """

    try:
        response = await client.get(url, params=params, headers=headers)
    except httpx.TimeoutException as exc:
        raise TransientFetchError(f"Timed out requesting {url}", url=url) from exc
    except httpx.TransportError as exc:
        raise TransientFetchError(
            f"Transport error requesting {url}: {exc.__class__.__name__}", url=url
        ) from exc

    if not raise_for_upstream_status(response):
        logger.debug("Upstream reported %s as not found", url)
        return None

    try:
        return response.json()
    except ValueError as exc:
        raise FatalFetchError(
            f"Unexpected non-JSON response from {url}",
            url=url,
            status_code=response.status_code,
        ) from exc
