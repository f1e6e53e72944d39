"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from erc20_transfer_indexer.storage.database import DatabaseManager
from erc20_transfer_indexer.storage.models import Base
from erc20_transfer_indexer.storage.repos import TransferDTO

TOKEN = "0x89865aaf2251b10ffc80ce4a809522506bf10ba2"
ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
CAROL = "0xcccccccccccccccccccccccccccccccccccccccc"


def make_transfer(
    n: int,
    *,
    from_address: str = ALICE,
    to_address: str = BOB,
    block_number: int | None = None,
    log_index: int = 0,
    value: int = 10**18,
    token_contract: str = TOKEN,
) -> TransferDTO:
    """Build a transfer whose tx hash is derived from ``n``."""
    return TransferDTO(
        token_contract=token_contract,
        tx_hash="0x" + f"{n:064x}",
        log_index=log_index,
        block_number=block_number if block_number is not None else 100 + n,
        block_hash="0x" + f"{n + 1:064x}",
        from_address=from_address,
        to_address=to_address,
        value_raw=str(value),
        value_decimal="1",
        timestamp=datetime(2026, 1, 1, tzinfo=UTC),
    )


@pytest.fixture
def token_address() -> str:
    """Token contract used throughout the tests."""
    return TOKEN


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Create an async SQLite engine shared by every session of a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db_manager(async_engine: AsyncEngine) -> DatabaseManager:
    return DatabaseManager.from_engine(async_engine)


@pytest.fixture
def transfer_factory():
    """Factory for transfers with a tx hash derived from an integer."""
    return make_transfer
