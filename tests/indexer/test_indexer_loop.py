"""Tests for the polling Transfer indexer."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from erc20_transfer_indexer.chain.client import ProviderError, ProviderErrorKind
from erc20_transfer_indexer.chain.events import TRANSFER_EVENT_TOPIC, address_to_topic
from erc20_transfer_indexer.chain.models import RawLog
from erc20_transfer_indexer.indexer.loop import IndexerState, TransferIndexer
from erc20_transfer_indexer.storage.ledger import InMemoryLedger
from erc20_transfer_indexer.storage.repos import Direction

TOKEN = "0x89865aaf2251b10ffc80ce4a809522506bf10ba2"
SENDER = "0x1234567890abcdef1234567890abcdef12345678"
RECIPIENT = "0xabcdef1234567890abcdef1234567890abcdef12"


def _transfer_log(block_number: int, log_index: int, value: int = 10**18) -> RawLog:
    return RawLog(
        address=TOKEN,
        topics=(TRANSFER_EVENT_TOPIC, address_to_topic(SENDER), address_to_topic(RECIPIENT)),
        data="0x" + f"{value:064x}",
        block_number=block_number,
        block_hash="0x" + f"{block_number:064x}",
        tx_hash="0x" + f"{block_number * 1000 + log_index:064x}",
        log_index=log_index,
    )


class FakeChain:
    """In-process chain reader with scripted height, logs and failures."""

    def __init__(self, latest: int, logs: list[RawLog] | None = None) -> None:
        self.latest = latest
        self.logs = logs or []
        self.log_calls: list[tuple[int, int]] = []
        self.height_error: Exception | None = None
        self.logs_error: Exception | None = None

    async def latest_height(self) -> int:
        if self.height_error is not None:
            raise self.height_error
        return self.latest

    async def get_transfer_logs(self, from_block: int, to_block: int) -> list[RawLog]:
        self.log_calls.append((from_block, to_block))
        if self.logs_error is not None:
            raise self.logs_error
        return [log for log in self.logs if from_block <= log.block_number <= to_block]

    async def get_block_timestamp(self, block_number: int) -> datetime:
        return datetime.fromtimestamp(1_700_000_000 + block_number, tz=UTC)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_nothing_to_index_skips_fetch_and_commit(self, ledger: InMemoryLedger) -> None:
        await ledger.commit(TOKEN, [], 95)
        before = await ledger.get_cursor(TOKEN)
        chain = FakeChain(latest=100)
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN, min_confirmations=5)

        result = await indexer.run_cycle()

        assert result is None
        assert chain.log_calls == []
        assert await ledger.get_cursor(TOKEN) == before

    @pytest.mark.asyncio
    async def test_chain_behind_cursor_is_a_no_op(self, ledger: InMemoryLedger) -> None:
        await ledger.commit(TOKEN, [], 500)
        chain = FakeChain(latest=100)
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN)

        assert await indexer.run_cycle() is None
        cursor = await ledger.get_cursor(TOKEN)
        assert cursor is not None and cursor.last_indexed_block == 500

    @pytest.mark.asyncio
    async def test_empty_range_advances_cursor(self, ledger: InMemoryLedger) -> None:
        chain = FakeChain(latest=1_000)
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN, step_blocks=100)

        result = await indexer.run_cycle()

        assert result is not None
        assert (result.from_block, result.to_block, result.inserted) == (1, 100, 0)
        assert chain.log_calls == [(1, 100)]
        cursor = await ledger.get_cursor(TOKEN)
        assert cursor is not None and cursor.last_indexed_block == 100

    @pytest.mark.asyncio
    async def test_start_block_is_treated_as_indexed(self, ledger: InMemoryLedger) -> None:
        chain = FakeChain(latest=1_000)
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN, start_block=50, step_blocks=10)

        await indexer.run_cycle()

        assert chain.log_calls == [(51, 60)]

    @pytest.mark.asyncio
    async def test_range_respects_confirmations(self, ledger: InMemoryLedger) -> None:
        chain = FakeChain(latest=120)
        indexer = TransferIndexer(
            chain, ledger, token_address=TOKEN, start_block=100, min_confirmations=5
        )

        await indexer.run_cycle()

        assert chain.log_calls == [(101, 115)]

    @pytest.mark.asyncio
    async def test_consecutive_cycles_cover_contiguous_ranges(self, ledger: InMemoryLedger) -> None:
        chain = FakeChain(latest=1_000)
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN, step_blocks=300, min_confirmations=0)

        while await indexer.run_cycle() is not None:
            pass

        assert chain.log_calls == [(1, 300), (301, 600), (601, 900), (901, 1000)]

    @pytest.mark.asyncio
    async def test_logs_are_decoded_and_committed(self, ledger: InMemoryLedger) -> None:
        bad = RawLog(
            address=TOKEN,
            topics=(TRANSFER_EVENT_TOPIC,),
            data="0x",
            block_number=12,
            block_hash="0x" + "f" * 64,
            tx_hash="0x" + "e" * 64,
            log_index=9,
        )
        chain = FakeChain(
            latest=100,
            logs=[_transfer_log(10, 0), _transfer_log(10, 1, value=15 * 10**17), bad],
        )
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN, step_blocks=50)

        result = await indexer.run_cycle()

        assert result is not None
        assert (result.logs, result.transfers, result.inserted) == (3, 2, 2)
        assert indexer.stats.dropped_logs == 1
        page = await ledger.transfers_by_address(RECIPIENT, Direction.RECEIVED)
        assert [row.value_decimal for row in page.rows] == ["1.5", "1"]
        assert page.rows[0].from_address == SENDER
        assert page.rows[0].timestamp == datetime.fromtimestamp(1_700_000_010, tz=UTC)
        assert page.rows[0].token_contract == TOKEN

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_cursor_untouched(self, ledger: InMemoryLedger) -> None:
        await ledger.commit(TOKEN, [], 10)
        chain = FakeChain(latest=1_000)
        chain.logs_error = ProviderError("rate limited", kind=ProviderErrorKind.RATE_LIMITED)
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN)

        with pytest.raises(ProviderError):
            await indexer.run_cycle()

        cursor = await ledger.get_cursor(TOKEN)
        assert cursor is not None and cursor.last_indexed_block == 10

    @pytest.mark.asyncio
    async def test_retry_after_failure_rescans_same_range(self, ledger: InMemoryLedger) -> None:
        chain = FakeChain(latest=1_000, logs=[_transfer_log(5, 0)])
        chain.logs_error = ProviderError("timeout", kind=ProviderErrorKind.TRANSIENT)
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN, step_blocks=100)

        with pytest.raises(ProviderError):
            await indexer.run_cycle()
        chain.logs_error = None
        await indexer.run_cycle()

        assert chain.log_calls == [(1, 100), (1, 100)]
        assert await ledger.count_transfers(TOKEN) == 1

    def test_invalid_arguments(self, ledger: InMemoryLedger) -> None:
        with pytest.raises(ValueError):
            TransferIndexer(FakeChain(0), ledger, token_address=TOKEN, step_blocks=0)
        with pytest.raises(ValueError):
            TransferIndexer(FakeChain(0), ledger, token_address=TOKEN, min_confirmations=-1)


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_run_and_stop(self, ledger: InMemoryLedger) -> None:
        chain = FakeChain(latest=1_000)
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN, step_blocks=100, idle_interval_ms=10)
        assert indexer.state is IndexerState.IDLE

        task = asyncio.create_task(indexer.run())
        await _wait_until(lambda: indexer.stats.cycles >= 2)
        assert indexer.is_running is True

        assert await indexer.stop(timeout=2.0) is True
        await task

        assert indexer.state is IndexerState.STOPPED
        assert indexer.is_running is False
        assert indexer.stats.started_at is not None

    @pytest.mark.asyncio
    async def test_stop_event_wakes_backoff_sleep(self, ledger: InMemoryLedger) -> None:
        chain = FakeChain(latest=1_000)
        chain.height_error = ProviderError("429", kind=ProviderErrorKind.RATE_LIMITED, status=429)
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN)
        stop = asyncio.Event()

        task = asyncio.create_task(indexer.run(stop))
        await _wait_until(lambda: indexer.stats.errors == 1)

        assert indexer.state is IndexerState.BACKOFF
        assert indexer.stats.last_error_kind is ProviderErrorKind.RATE_LIMITED
        assert indexer.stats.last_backoff_seconds == 60.0
        assert await ledger.get_cursor(TOKEN) is None

        stop.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert indexer.state is IndexerState.STOPPED

    @pytest.mark.asyncio
    async def test_ledger_failure_backs_off_twice_idle(self) -> None:
        ledger = InMemoryLedger()
        ledger.commit = AsyncMock(side_effect=RuntimeError("database is down"))
        chain = FakeChain(latest=1_000)
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN, idle_interval_ms=5_000)

        task = asyncio.create_task(indexer.run())
        await _wait_until(lambda: indexer.stats.errors == 1)

        assert indexer.stats.last_error_kind is ProviderErrorKind.OTHER
        assert indexer.stats.last_backoff_seconds == 10.0

        assert await indexer.stop(timeout=1.0) is True
        await task

    @pytest.mark.asyncio
    async def test_second_run_rejected(self, ledger: InMemoryLedger) -> None:
        chain = FakeChain(latest=0)
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN, idle_interval_ms=1_000)

        task = asyncio.create_task(indexer.run())
        await _wait_until(lambda: indexer.is_running)

        with pytest.raises(RuntimeError):
            await indexer.run()

        await indexer.stop(timeout=1.0)
        await task

    @pytest.mark.asyncio
    async def test_stop_before_run(self, ledger: InMemoryLedger) -> None:
        indexer = TransferIndexer(FakeChain(latest=0), ledger, token_address=TOKEN)

        assert await indexer.stop() is True
        assert indexer.state is IndexerState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_before_run_is_honored(self, ledger: InMemoryLedger) -> None:
        chain = FakeChain(latest=1_000)
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN)

        await indexer.stop()
        await asyncio.wait_for(indexer.run(), timeout=1.0)

        assert chain.log_calls == []
        assert indexer.stats.cycles == 0
        assert indexer.state is IndexerState.STOPPED

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, ledger: InMemoryLedger) -> None:
        chain = FakeChain(latest=1_000)
        indexer = TransferIndexer(chain, ledger, token_address=TOKEN, step_blocks=100, idle_interval_ms=10)

        task = asyncio.create_task(indexer.run())
        await _wait_until(lambda: indexer.stats.cycles >= 1)
        await indexer.stop(timeout=1.0)
        await task
        cycles = indexer.stats.cycles

        task = asyncio.create_task(indexer.run())
        await _wait_until(lambda: indexer.stats.cycles > cycles)
        assert await indexer.stop(timeout=1.0) is True
        await task
