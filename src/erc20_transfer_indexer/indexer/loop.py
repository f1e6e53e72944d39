"""Polling indexer for ERC20 Transfer events.

This module provides the TransferIndexer class that drives the indexing
cycle: read the cursor, pick the next confirmed block range, fetch and
decode Transfer logs, resolve block timestamps, and commit the transfers
together with the advanced cursor.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from erc20_transfer_indexer.chain.client import ProviderErrorKind
from erc20_transfer_indexer.chain.events import decode_transfer_log, format_token_amount
from erc20_transfer_indexer.chain.timestamps import DEFAULT_MAX_CONCURRENCY, TimestampResolver
from erc20_transfer_indexer.indexer.backoff import backoff_seconds, classify_error
from erc20_transfer_indexer.storage.repos import TransferDTO

if TYPE_CHECKING:
    from erc20_transfer_indexer.chain.models import RawLog
    from erc20_transfer_indexer.storage.ledger import Ledger

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIRMATIONS = 5
DEFAULT_STEP_BLOCKS = 2500
DEFAULT_IDLE_INTERVAL_MS = 5000
STOP_POLL_INTERVAL_SECONDS = 0.1


class ChainReader(Protocol):
    async def latest_height(self) -> int: ...

    async def get_transfer_logs(self, from_block: int, to_block: int) -> list[RawLog]: ...

    async def get_block_timestamp(self, block_number: int) -> datetime: ...


class IndexerState(str, Enum):
    """Indexer lifecycle states."""

    IDLE = "idle"
    FETCHING = "fetching"
    PERSISTING = "persisting"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass
class IndexerStats:
    """Statistics for the indexer."""

    started_at: datetime | None = None
    cycles: int = 0
    transfers_indexed: int = 0
    dropped_logs: int = 0
    errors: int = 0
    last_indexed_block: int | None = None
    last_cycle_at: datetime | None = None
    last_error: str | None = None
    last_error_kind: ProviderErrorKind | None = None
    last_backoff_seconds: float | None = None


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one committed indexing cycle."""

    from_block: int
    to_block: int
    logs: int
    transfers: int
    inserted: int


class TransferIndexer:
    """Cursor-driven indexer for one ERC20 token contract.

    Only one cycle runs at a time. A stop request is observed between cycles
    and during the inter-cycle sleep; it never interrupts a running cycle.

    Example:
        ```python
        indexer = TransferIndexer(chain_client, ledger, token_address=token)
        stop = asyncio.Event()
        task = asyncio.create_task(indexer.run(stop))
        ...
        await indexer.stop()
        ```
    """

    def __init__(
        self,
        chain: ChainReader,
        ledger: Ledger,
        *,
        token_address: str,
        start_block: int | None = None,
        min_confirmations: int = DEFAULT_MIN_CONFIRMATIONS,
        step_blocks: int = DEFAULT_STEP_BLOCKS,
        idle_interval_ms: int = DEFAULT_IDLE_INTERVAL_MS,
        timestamp_resolver: TimestampResolver | None = None,
    ) -> None:
        """Initialize the indexer.

        Args:
            chain: Chain reader for heights, logs and block timestamps.
            ledger: Ledger the indexer is the sole writer of.
            token_address: ERC20 contract being indexed.
            start_block: Block treated as already indexed when no cursor exists.
            min_confirmations: Most recent blocks left unindexed.
            step_blocks: Maximum blocks per cycle.
            idle_interval_ms: Sleep between successful cycles.
            timestamp_resolver: Resolver for block timestamps; defaults to a
                resolver over ``chain`` with the default fan-out.
        """
        if step_blocks < 1:
            raise ValueError("step_blocks must be >= 1")
        if min_confirmations < 0:
            raise ValueError("min_confirmations must be >= 0")

        self._chain = chain
        self._ledger = ledger
        self._token_address = token_address.lower()
        self._start_block = start_block
        self._min_confirmations = min_confirmations
        self._step_blocks = step_blocks
        self._idle_interval = max(0, idle_interval_ms) / 1000.0
        self._timestamps = timestamp_resolver or TimestampResolver(
            chain, max_concurrency=DEFAULT_MAX_CONCURRENCY
        )

        self._state = IndexerState.IDLE
        self._stats = IndexerStats()
        self._running = False
        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> IndexerState:
        """Current indexer state."""
        return self._state

    @property
    def stats(self) -> IndexerStats:
        """Current indexer statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if the polling loop is active."""
        return self._running

    @property
    def token_address(self) -> str:
        return self._token_address

    @property
    def idle_interval_seconds(self) -> float:
        return self._idle_interval

    async def run_cycle(self) -> CycleResult | None:
        """Run one indexing cycle.

        Returns:
            CycleResult if a range was committed, None if there was nothing
            new to index.

        Raises:
            Exception: Whatever the chain reader or ledger raised; the cursor
                is left untouched in that case.
        """
        self._state = IndexerState.FETCHING

        cursor = await self._ledger.get_cursor(self._token_address)
        if cursor is not None:
            last_indexed = cursor.last_indexed_block
        elif self._start_block is not None:
            last_indexed = self._start_block
        else:
            last_indexed = 0

        latest = await self._chain.latest_height()
        to_block = min(latest - self._min_confirmations, last_indexed + self._step_blocks)
        if to_block <= last_indexed:
            logger.debug(
                "No confirmed blocks to index (last=%d latest=%d confirmations=%d)",
                last_indexed,
                latest,
                self._min_confirmations,
            )
            self._state = IndexerState.IDLE
            return None

        from_block = last_indexed + 1
        logger.info("Indexing blocks %d-%d", from_block, to_block)
        logs = await self._chain.get_transfer_logs(from_block, to_block)

        transfers: list[TransferDTO] = []
        if logs:
            logger.info("Found %d Transfer logs in blocks %d-%d", len(logs), from_block, to_block)
            transfers = await self._build_transfers(logs)
        else:
            logger.debug("No Transfer logs in blocks %d-%d", from_block, to_block)

        self._state = IndexerState.PERSISTING
        inserted = await self._ledger.commit(self._token_address, transfers, to_block)

        self._stats.cycles += 1
        self._stats.transfers_indexed += inserted
        self._stats.last_indexed_block = to_block
        self._stats.last_cycle_at = datetime.now(UTC)
        self._state = IndexerState.IDLE
        logger.info(
            "Committed %d transfers (%d new), cursor advanced to block %d",
            len(transfers),
            inserted,
            to_block,
        )
        return CycleResult(
            from_block=from_block,
            to_block=to_block,
            logs=len(logs),
            transfers=len(transfers),
            inserted=inserted,
        )

    async def _build_transfers(self, logs: Sequence[RawLog]) -> list[TransferDTO]:
        decoded = []
        for log in logs:
            parsed = decode_transfer_log(log)
            if parsed is None:
                self._stats.dropped_logs += 1
                continue
            decoded.append((log, parsed))

        timestamps = await self._timestamps.resolve(log.block_number for log, _ in decoded)

        return [
            TransferDTO(
                token_contract=self._token_address,
                tx_hash=log.tx_hash,
                log_index=log.log_index,
                block_number=log.block_number,
                block_hash=log.block_hash,
                from_address=parsed.from_address,
                to_address=parsed.to_address,
                value_raw=str(parsed.value),
                value_decimal=format_token_amount(parsed.value),
                timestamp=timestamps[log.block_number],
            )
            for log, parsed in decoded
        ]

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Poll until ``stop_event`` is set.

        Cycle failures are classified, logged and followed by a backoff
        sleep; they never propagate out of this method.

        Args:
            stop_event: Cancellation signal checked at cycle boundaries and
                during the inter-cycle sleep. A private event is created if
                omitted; use ``stop()`` to set it. A stop requested before
                ``run()`` makes it return without starting a cycle.

        Raises:
            RuntimeError: If the loop is already running.
        """
        if self._running:
            raise RuntimeError("Indexer is already running")

        pending_stop = self._stop_event is not None and self._stop_event.is_set()
        self._stop_event = stop_event or asyncio.Event()
        if pending_stop:
            self._stop_event.set()
        self._running = True
        self._state = IndexerState.IDLE
        self._stats.started_at = datetime.now(UTC)
        logger.info("Starting Transfer indexer for %s", self._token_address)

        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_cycle()
                    delay = self._idle_interval
                except Exception as e:
                    kind = classify_error(e)
                    delay = backoff_seconds(kind, self._idle_interval)
                    self._state = IndexerState.BACKOFF
                    self._stats.errors += 1
                    self._stats.last_error = str(e)
                    self._stats.last_error_kind = kind
                    self._stats.last_backoff_seconds = delay
                    logger.warning(
                        "Indexing cycle failed (%s), retrying in %.1fs: %s",
                        kind.value,
                        delay,
                        e,
                        exc_info=kind is ProviderErrorKind.OTHER,
                    )

                if await self._sleep(delay):
                    break
                self._state = IndexerState.IDLE
        finally:
            self._running = False
            self._state = IndexerState.STOPPED
            self._stop_event = None
            logger.info("Transfer indexer stopped")

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns True if a stop was requested."""
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except TimeoutError:
            return False

    def request_stop(self) -> None:
        """Ask the loop to stop at the next cycle boundary."""
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        self._stop_event.set()

    async def stop(self, timeout: float = 30.0) -> bool:
        """Request a stop and wait until the loop reports ``STOPPED``.

        Args:
            timeout: Maximum seconds to wait for the in-flight cycle.

        Returns:
            True if the loop stopped within the timeout.
        """
        logger.info("Stopping Transfer indexer...")
        self.request_stop()
        if not self._running:
            self._state = IndexerState.STOPPED
            return True

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._state is not IndexerState.STOPPED:
            if loop.time() >= deadline:
                logger.warning("Indexer did not stop within %.1fs", timeout)
                return False
            await asyncio.sleep(STOP_POLL_INTERVAL_SECONDS)
        return True
