"""toncenter v3 HTTP client with rate limiting, retries and caching.

This module provides the chain client used by the deposit monitor:
- Paginated transaction listing by account, with a logical-time cursor
- Latest masterchain seqno for confirmation tracking
- Retry logic with exponential backoff
- Optional Redis caching of the latest seqno
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx
from redis.asyncio import Redis

from highload_settlement.errors import SettlementError, TransientIOFailure
from highload_settlement.ton.models import ChainTransaction

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_API_URL = "https://toncenter.com/api/v3"
DEFAULT_MAX_REQUESTS_PER_SECOND = 1.0  # toncenter's keyless limit
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30.0
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)

# Masterchain advances every few seconds
SEQNO_CACHE_TTL_SECONDS = 2


class ToncenterClientError(SettlementError):
    """Raised when the API rejects a request for a non-transient reason."""


class RateLimiter:
    """Minimum-interval rate limiter for API requests."""

    def __init__(self, max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND) -> None:
        self._min_interval = 1.0 / max_requests_per_second
        self._last_request_time: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()


class ToncenterClient:
    """Async toncenter v3 client.

    Example:
        ```python
        client = ToncenterClient(api_url="https://toncenter.com/api/v3", api_key="...")
        txs = await client.get_transactions("EQ...", limit=100, after_lt=last_lt)
        seqno = await client.get_masterchain_seqno()
        await client.close()
        ```
    """

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        *,
        api_key: str | None = None,
        redis: Redis | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialize the client.

        Args:
            api_url: toncenter v3 base URL.
            api_key: Optional API key, sent as ``X-API-Key``.
            redis: Optional Redis client for caching the latest seqno.
            http_client: Pre-built httpx client (tests inject a mock transport).
            max_requests_per_second: Rate limit for API calls.
            max_retries: Attempts per request before giving up.
            retry_delay_seconds: Initial delay between retries.
            timeout: Per-request timeout in seconds.
        """
        headers = {"X-API-Key": api_key} if api_key else {}
        self._http = http_client or httpx.AsyncClient(
            base_url=api_url.rstrip("/"), headers=headers, timeout=timeout
        )
        self._redis = redis
        self._rate_limiter = RateLimiter(max_requests_per_second)
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._cache_prefix = "toncenter:"

    async def _request(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        """GET a JSON document, retrying transient failures with exponential backoff.

        Raises:
            TransientIOFailure: If every attempt failed for a transient reason.
            ToncenterClientError: If the API answered with a non-retryable error.
        """
        last_error: Exception | None = None
        delay = self._retry_delay

        for attempt in range(self._max_retries):
            await self._rate_limiter.acquire()
            try:
                response = await self._http.get(path, params=params)
                if response.status_code in RETRY_STATUS_CODES:
                    raise httpx.HTTPStatusError(
                        f"retryable status {response.status_code}",
                        request=response.request,
                        response=response,
                    )
                if response.is_error:
                    raise ToncenterClientError(
                        f"{path} failed with status {response.status_code}: {response.text[:200]}"
                    )
                payload: dict[str, Any] = response.json()
                return payload
            except (httpx.TransportError, httpx.HTTPStatusError) as e:
                last_error = e
                logger.warning(
                    "toncenter %s failed (attempt %d/%d): %s",
                    path,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2

        raise TransientIOFailure(f"toncenter {path} failed after all retries: {last_error}", last_error)

    async def get_transactions(
        self,
        address: str,
        *,
        limit: int = 100,
        after_lt: int | None = None,
    ) -> list[ChainTransaction]:
        """List transactions of an account in ascending logical time.

        Args:
            address: Account address (raw or user-friendly).
            limit: Maximum transactions to return.
            after_lt: Cursor; only transactions with a greater lt are returned.

        Returns:
            Parsed transactions, oldest first. Unparsable entries are skipped.
        """
        params: dict[str, Any] = {"account": address, "limit": limit, "offset": 0, "sort": "asc"}
        if after_lt is not None:
            # start_lt is inclusive
            params["start_lt"] = after_lt + 1

        payload = await self._request("/transactions", params)
        transactions: list[ChainTransaction] = []
        for raw in payload.get("transactions", []):
            try:
                transactions.append(ChainTransaction.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed transaction %s: %s", raw.get("hash"), e)
        transactions.sort(key=lambda tx: tx.lt)
        return transactions

    async def get_masterchain_seqno(self) -> int:
        """Get the latest masterchain block seqno."""
        cache_key = f"{self._cache_prefix}masterchain_seqno"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        payload = await self._request("/masterchainInfo", {})
        try:
            seqno = int(payload["last"]["seqno"])
        except (KeyError, TypeError, ValueError) as e:
            raise ToncenterClientError(f"Unexpected masterchainInfo payload: {e}") from e

        await self._set_cached(cache_key, str(seqno), SEQNO_CACHE_TTL_SECONDS)
        return seqno

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def close(self) -> None:
        await self._http.aclose()
