"""
http.py – Async HTTP client built on *aiohttp* used for classifier calls,
          with retries, 429 / 5xx back-off and bearer-token auth.
"""

from __future__ import annotations

import asyncio
import email.utils
import logging
import random
import time
from typing import Any, Dict, Mapping, Optional

import aiohttp

logger = logging.getLogger(__name__)

RETRY_STATUSES = (429, 500, 502, 503, 504)


def parse_retry_after(header_val: str | None) -> Optional[float]:
    """Return seconds to wait given a Retry-After header value."""
    if not header_val:
        return None
    header_val = header_val.strip()
    # seconds
    if header_val.isdigit():
        return float(header_val)
    # HTTP-date
    try:
        parsed = email.utils.parsedate_to_datetime(header_val)
    except (TypeError, ValueError):
        return None
    if parsed is None:
        return None
    return max(0.0, parsed.timestamp() - time.time())


class HttpClient:
    """
    Thin wrapper over *aiohttp.ClientSession* adding:

    * default headers (auth, content type) kept in one place
    * exponential back-off **with jitter** for 429 / 5xx / network errors
    """

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 60.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        bearer_token: Optional[str] = None,
        default_headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._external_session = session
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._own_session: Optional[aiohttp.ClientSession] = None
        self._default_headers: Dict[str, str] = dict(default_headers or {})
        if bearer_token:
            self._default_headers["Authorization"] = f"Bearer {bearer_token}"

    # ---------------------------------------------- #
    # Session management
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._external_session:
            return self._external_session
        if self._own_session is None or self._own_session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._own_session = aiohttp.ClientSession(timeout=timeout)
        return self._own_session

    async def close(self) -> None:
        if self._own_session and not self._own_session.closed:
            await self._own_session.close()
            self._own_session = None

    # ---------------------------------------------- #
    # Internal helpers
    def _backoff_delay(self, attempt: int, error: Exception) -> float:
        if isinstance(error, aiohttp.ClientResponseError) and error.headers:
            retry_after = parse_retry_after(error.headers.get("Retry-After"))
            if retry_after is not None:
                return min(retry_after, self._max_delay)
        exponential = min(self._base_delay * 2 ** (attempt - 1), self._max_delay)
        return exponential + random.uniform(0, self._base_delay)

    async def _request_json(self, method: str, url: str, **kwargs) -> Any:
        """Perform a request with retries and decode the JSON body."""
        session = await self._ensure_session()
        headers = {**self._default_headers, **(kwargs.pop("headers", None) or {})}

        for attempt in range(1, self._max_retries + 1):
            try:
                async with session.request(method, url, headers=headers, **kwargs) as resp:
                    if resp.status in RETRY_STATUSES:
                        raise aiohttp.ClientResponseError(
                            resp.request_info,
                            resp.history,
                            status=resp.status,
                            message=f"retryable status {resp.status}",
                            headers=resp.headers,
                        )
                    resp.raise_for_status()
                    return await resp.json(content_type=None)
            except (aiohttp.ClientConnectionError, aiohttp.ClientResponseError, asyncio.TimeoutError) as e:
                retryable = not isinstance(e, aiohttp.ClientResponseError) or e.status in RETRY_STATUSES
                if not retryable or attempt == self._max_retries:
                    logger.error("HTTP %s %s failed after %d attempt(s): %s", method, url, attempt, e)
                    raise

                sleep_seconds = self._backoff_delay(attempt, e)
                logger.warning(
                    "HTTP %s %s failed (attempt %d/%d – will retry in %.1fs): %s",
                    method,
                    url,
                    attempt,
                    self._max_retries,
                    sleep_seconds,
                    str(e).splitlines()[0] if str(e) else type(e).__name__,
                )
                await asyncio.sleep(sleep_seconds)

        raise RuntimeError("Unreachable retry loop")

    # ---------------------------------------------- #
    # Public helpers
    async def post_json(self, url: str, data: Any, **kwargs) -> Any:
        return await self._request_json("POST", url, json=data, **kwargs)
