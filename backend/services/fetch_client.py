"""
Resilient Fetch Client

Cached, concurrency-bounded, retrying JSON accessor used for every upstream
call. A fresh cache entry for the exact URL short-circuits the network and
the concurrency gate; misses take one gate slot per attempt, and the fixed
retry delay is spent outside the gate.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from config import settings
from utils.logger import fetch_logger as logger
from utils.retry import RetryConfig, retry_async


class TransientFetchError(Exception):
    """A single attempt failed (timeout, non-2xx, network, bad body)."""

    def __init__(self, url: str, reason: str, status_code: Optional[int] = None):
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"{reason} ({url})")


class UnavailableError(Exception):
    """Every attempt for one URL failed; nothing was cached."""

    def __init__(self, url: str, attempts: int):
        self.url = url
        self.attempts = attempts
        super().__init__(f"Upstream unavailable after {attempts} attempts: {url}")


@dataclass
class CacheEntry:
    payload: Any
    fetched_at: float

    def is_fresh(self, now: float, ttl: float) -> bool:
        return now - self.fetched_at < ttl


def build_url(url: str, params: Optional[dict] = None) -> str:
    """Full request URL, query string included; used as the cache key"""
    return str(httpx.URL(url, params=params)) if params else str(httpx.URL(url))


class ResilientFetchClient:
    def __init__(
        self,
        max_concurrent: int = 10,
        timeout_seconds: float = 10.0,
        cache_ttl_seconds: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_concurrent = max(1, int(max_concurrent))
        self.timeout_seconds = float(timeout_seconds)
        self.cache_ttl_seconds = float(cache_ttl_seconds)
        self.retry_config = retry_config or RetryConfig()
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._gate = asyncio.Semaphore(self.max_concurrent)
        self._cache: dict[str, CacheEntry] = {}
        self._in_flight = 0

        # Stats
        self._requests = 0
        self._cache_hits = 0
        self._failed_attempts = 0
        self._unavailable = 0

    @classmethod
    def from_settings(cls, client: Optional[httpx.AsyncClient] = None) -> "ResilientFetchClient":
        return cls(
            max_concurrent=settings.MAX_CONCURRENT_REQUESTS,
            timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS,
            cache_ttl_seconds=settings.CACHE_TTL_SECONDS,
            retry_config=RetryConfig.from_settings(),
            client=client,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Accept": "application/json"},
                follow_redirects=True,
                timeout=httpx.Timeout(self.timeout_seconds),
            )
            self._owns_client = True
        return self._client

    async def close(self):
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    # ==================== CACHE ====================

    def _cached(self, key: str) -> Optional[CacheEntry]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_fresh(self._clock(), self.cache_ttl_seconds):
            return entry
        del self._cache[key]
        return None

    def invalidate(self, url: str, params: Optional[dict] = None) -> bool:
        return self._cache.pop(build_url(url, params), None) is not None

    def prune_cache(self) -> int:
        """Drop expired entries; returns how many were removed"""
        now = self._clock()
        expired = [
            key
            for key, entry in self._cache.items()
            if not entry.is_fresh(now, self.cache_ttl_seconds)
        ]
        for key in expired:
            del self._cache[key]
        return len(expired)

    # ==================== FETCH ====================

    async def fetch(self, url: str, params: Optional[dict] = None) -> Any:
        """GET ``url`` and return the decoded JSON body.

        Raises:
            UnavailableError: every attempt failed.
        """
        key = build_url(url, params)
        entry = self._cached(key)
        if entry is not None:
            self._cache_hits += 1
            return entry.payload

        self._requests += 1
        try:
            payload = await retry_async(
                lambda: self._attempt(key),
                self.retry_config,
                lambda exc: isinstance(exc, TransientFetchError),
                description=f"GET {key}",
            )
        except TransientFetchError as e:
            self._unavailable += 1
            logger.warning("Upstream unavailable", url=key, attempts=self.retry_config.max_attempts)
            raise UnavailableError(key, self.retry_config.max_attempts) from e

        self._cache[key] = CacheEntry(payload=payload, fetched_at=self._clock())
        return payload

    async def _attempt(self, url: str) -> Any:
        """One gated, time-bounded attempt"""
        client = await self._get_client()
        async with self._gate:
            self._in_flight += 1
            try:
                response = await asyncio.wait_for(client.get(url), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                self._failed_attempts += 1
                raise TransientFetchError(url, f"timed out after {self.timeout_seconds:g}s")
            except httpx.HTTPError as e:
                self._failed_attempts += 1
                raise TransientFetchError(url, f"{type(e).__name__}: {e}") from e
            finally:
                self._in_flight -= 1

        if not response.is_success:
            self._failed_attempts += 1
            raise TransientFetchError(
                url,
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self._failed_attempts += 1
            raise TransientFetchError(url, f"undecodable body: {e}") from e

    def get_status(self) -> dict:
        return {
            "in_flight": self._in_flight,
            "max_concurrent": self.max_concurrent,
            "cache_size": len(self._cache),
            "cache_ttl_seconds": self.cache_ttl_seconds,
            "stats": {
                "requests": self._requests,
                "cache_hits": self._cache_hits,
                "failed_attempts": self._failed_attempts,
                "unavailable": self._unavailable,
            },
        }

    def __repr__(self) -> str:
        return (
            f"ResilientFetchClient(in_flight={self._in_flight}, "
            f"cache={len(self._cache)}, requests={self._requests})"
        )

    def __str__(self) -> str:
        return self.__repr__()
