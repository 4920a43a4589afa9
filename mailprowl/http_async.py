"""Async HTTP utilities with shared aiohttp session and minimal retry/backoff.

Centralizes outbound HTTP for the push-notification endpoint.
"""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Iterable, Optional

import aiohttp
from multidict import MultiMapping

__all__ = [
    "get_session",
    "close_session",
    "post_form",
]

logger = logging.getLogger(__name__)

_SESSION: Optional[aiohttp.ClientSession] = None
_SESSION_LOCK = asyncio.Lock()
_DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=30)
FORM_CONTENT_TYPE = 'application/x-www-form-urlencoded'


async def get_session() -> aiohttp.ClientSession:
    """Return the process-wide session, creating it on first use (30s total timeout)."""
    global _SESSION
    if _SESSION and not _SESSION.closed:
        return _SESSION
    async with _SESSION_LOCK:
        if _SESSION and not _SESSION.closed:
            return _SESSION
        _SESSION = aiohttp.ClientSession(timeout=_DEFAULT_TIMEOUT)
    return _SESSION


async def close_session() -> None:
    """Close the shared session; the next ``get_session`` opens a new one."""
    global _SESSION
    if _SESSION and not _SESSION.closed:
        await _SESSION.close()
    _SESSION = None


def _retry_delay(headers: MultiMapping[str] | dict[str, str], attempt: int, backoff_base: float) -> float:
    try:
        retry_after = float(headers.get("Retry-After", "0") or 0)
    except ValueError:
        retry_after = 0.0
    return max(retry_after, backoff_base * (2 ** attempt) + random.random() * 0.3)


async def post_form(
    url: str,
    body: str,
    *,
    proxy: Optional[str] = None,
    proxy_auth: Optional[aiohttp.BasicAuth] = None,
    max_retries: int = 2,
    retry_on: Iterable[int] = (429, 500, 502, 503, 504),
    backoff_base: float = 0.5,
) -> tuple[int, str]:
    """POST an already-encoded form body and return ``(status, text)``.

    Statuses in ``retry_on`` are retried with exponential backoff (honouring
    ``Retry-After``) up to ``max_retries`` times; the last response is then
    returned as-is. Transport errors (``aiohttp.ClientError``, timeouts)
    propagate to the caller.
    """
    sess = await get_session()
    retry_set = set(retry_on)
    attempt = 0
    while True:
        async with sess.post(
            url,
            data=body.encode('ascii'),
            headers={'Content-Type': FORM_CONTENT_TYPE},
            proxy=proxy,
            proxy_auth=proxy_auth,
        ) as resp:
            text = await resp.text()
            if resp.status not in retry_set or attempt >= max_retries:
                return resp.status, text
            delay = _retry_delay(resp.headers, attempt, backoff_base)
        logger.info("POST %s returned %s; retrying in %.1fs", url, resp.status, delay)
        await asyncio.sleep(delay)
        attempt += 1
