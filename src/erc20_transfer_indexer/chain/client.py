"""JSON-RPC chain reader for ERC20 Transfer indexing.

This module provides the chain-data provider adapter used by the indexer:
- Latest block height, Transfer logs for a block range, block timestamps
- Structured ``ProviderError`` with an explicit kind for backoff decisions
- Client-side rate limiting to respect provider limits
- Optional Redis cache for block timestamps (blocks are immutable)

Retries are left to the indexer loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from erc20_transfer_indexer.chain.events import TRANSFER_EVENT_TOPIC
from erc20_transfer_indexer.chain.models import RawLog

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
BLOCK_TIMESTAMP_CACHE_TTL_SECONDS = 24 * 3600

# JSON-RPC error codes some providers use for throttling (Infura, Alchemy).
RATE_LIMIT_RPC_CODES = frozenset({-32005, 429})
RATE_LIMIT_MARKERS = ("too many requests", "rate limit", "rate-limit", "ratelimit")
TRANSIENT_MARKERS = ("timeout", "timed out", "network", "connection reset", "temporarily unavailable")


class ProviderErrorKind(str, Enum):
    """Failure classes reported by the provider adapter."""

    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    OTHER = "other"


class ProviderError(Exception):
    """Raised when a call to the chain-data provider fails."""

    def __init__(
        self,
        message: str,
        *,
        kind: ProviderErrorKind = ProviderErrorKind.OTHER,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status

    def __repr__(self) -> str:
        return f"ProviderError(kind={self.kind.value!r}, status={self.status!r}, message={str(self)!r})"


def classify_exception(exc: BaseException, *, operation: str = "rpc") -> ProviderError:
    """Wrap a low-level exception into a ``ProviderError`` with an explicit kind.

    Args:
        exc: Exception raised by web3/aiohttp while talking to the provider.
        operation: Label of the failed call, used in the message.

    Returns:
        ProviderError carrying kind, HTTP status (if any) and message.
    """
    if isinstance(exc, ProviderError):
        return exc

    status = getattr(exc, "status", None)
    if not isinstance(status, int):
        status = None
    detail = str(exc) or type(exc).__name__
    message = f"{operation} failed: {detail}"
    lowered = detail.lower()

    rpc_code = None
    rpc_response = getattr(exc, "rpc_response", None)
    if isinstance(rpc_response, dict):
        error = rpc_response.get("error")
        if isinstance(error, dict):
            rpc_code = error.get("code")

    if status == 429 or rpc_code in RATE_LIMIT_RPC_CODES or any(m in lowered for m in RATE_LIMIT_MARKERS):
        kind = ProviderErrorKind.RATE_LIMITED
    elif isinstance(exc, (TimeoutError, aiohttp.ClientConnectionError, ConnectionError)):
        kind = ProviderErrorKind.TRANSIENT
    elif any(m in lowered for m in TRANSIENT_MARKERS):
        kind = ProviderErrorKind.TRANSIENT
    else:
        kind = ProviderErrorKind.OTHER

    return ProviderError(message, kind=kind, status=status)


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainClient:
    """Chain reader for one ERC20 token contract.

    Example:
        ```python
        client = ChainClient(
            rpc_url="https://ethereum-sepolia-rpc.publicnode.com",
            token_address="0x89865aaf2251b10ffc80ce4a809522506bf10ba2",
        )

        latest = await client.latest_height()
        logs = await client.get_transfer_logs(latest - 100, latest)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        token_address: str,
        *,
        redis: Redis | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        poa_middleware: bool = False,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: JSON-RPC endpoint URL.
            token_address: ERC20 contract whose Transfer logs are read.
            redis: Optional Redis client for caching block timestamps.
            max_requests_per_second: Rate limit for RPC calls.
            request_timeout_seconds: HTTP timeout per request.
            poa_middleware: Inject the PoA extraData middleware.
        """
        self._rpc_url = rpc_url
        self._token_address = token_address.lower()
        self._redis = redis
        self._w3 = AsyncWeb3(
            AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout_seconds)},
                exception_retry_configuration=None,
            )
        )
        if poa_middleware:
            self._inject_poa_middleware()
        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._cache_prefix = f"erc20:{self._token_address}:"

    @property
    def token_address(self) -> str:
        return self._token_address

    def _inject_poa_middleware(self) -> None:
        try:
            self._w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except ValueError as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", self._rpc_url, e)

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

    async def _call(self, operation: str, request: Callable[[], Awaitable[T]]) -> T:
        """Run a single provider request, converting failures to ProviderError."""
        await self._rate_limiter.acquire()
        try:
            return await request()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = classify_exception(e, operation=operation)
            logger.debug("Provider call %s failed (%s): %s", operation, error.kind.value, e)
            raise error from e

    async def latest_height(self) -> int:
        """Get the latest block number known to the provider."""

        async def request() -> int:
            return int(await self._w3.eth.block_number)

        return await self._call("eth_blockNumber", request)

    async def get_transfer_logs(self, from_block: int, to_block: int) -> list[RawLog]:
        """Fetch Transfer logs of the token contract for ``[from_block, to_block]``.

        Args:
            from_block: First block of the range (inclusive).
            to_block: Last block of the range (inclusive).

        Returns:
            Logs ordered by block number, then log index.
        """
        if from_block < 0 or to_block < from_block:
            raise ValueError(f"Invalid block range [{from_block}, {to_block}]")

        filter_params: dict[str, Any] = {
            "address": AsyncWeb3.to_checksum_address(self._token_address),
            "topics": [TRANSFER_EVENT_TOPIC],
            "fromBlock": from_block,
            "toBlock": to_block,
        }

        async def request() -> list[Any]:
            return list(await self._w3.eth.get_logs(filter_params))

        logs = await self._call("eth_getLogs", request)
        raw_logs = [RawLog.from_rpc(log) for log in logs]
        raw_logs.sort(key=lambda log: (log.block_number, log.log_index))
        return raw_logs

    async def get_block_timestamp(self, block_number: int) -> datetime:
        """Get the timestamp of a block as an aware UTC datetime."""
        cache_key = f"{self._cache_prefix}block_ts:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return datetime.fromtimestamp(int(cached), tz=UTC)

        async def request() -> Any:
            return await self._w3.eth.get_block(block_number)

        block = await self._call("eth_getBlockByNumber", request)
        if block is None:
            raise ProviderError(f"Block {block_number} not found", kind=ProviderErrorKind.OTHER)
        timestamp = int(block["timestamp"])

        await self._set_cached(cache_key, str(timestamp), ttl=BLOCK_TIMESTAMP_CACHE_TTL_SECONDS)
        return datetime.fromtimestamp(timestamp, tz=UTC)

    async def aclose(self) -> None:
        """Close the async HTTP provider session."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close RPC provider session: %s", e)
