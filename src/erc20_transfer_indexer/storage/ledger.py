"""Transfer ledger: durable transfer rows plus the per-contract cursor.

Two implementations share one contract:

- ``SqlLedger`` runs every commit as a single database transaction.
- ``InMemoryLedger`` applies a commit without yielding to the event loop,
  so readers never observe a half-applied batch.

In both, re-committing rows that are already stored is a no-op keyed by
``(tx_hash, log_index)``, and the cursor never moves backwards.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import UTC, datetime

from erc20_transfer_indexer.storage.database import DatabaseManager
from erc20_transfer_indexer.storage.repos import (
    DEFAULT_PAGE_LIMIT,
    Direction,
    IndexStateDTO,
    IndexStateRepository,
    TransferDTO,
    TransferPage,
    TransferRepository,
    clamp_limit,
)

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception for ledger failures."""


class CursorRegressionError(LedgerError):
    """Raised when a commit would move the cursor backwards."""

    def __init__(self, token_contract: str, current: int, requested: int) -> None:
        super().__init__(
            f"Cursor for {token_contract} cannot move from block {current} back to {requested}"
        )
        self.token_contract = token_contract
        self.current = current
        self.requested = requested


class Ledger(ABC):
    """Storage interface used by the indexer (writer) and query layer (readers)."""

    @abstractmethod
    async def get_cursor(self, token_contract: str) -> IndexStateDTO | None: ...

    @abstractmethod
    async def commit(
        self,
        token_contract: str,
        transfers: Sequence[TransferDTO],
        new_cursor_block: int,
    ) -> int:
        """Append transfers and advance the cursor as one atomic unit.

        Returns:
            Number of transfers that were not already stored.

        Raises:
            CursorRegressionError: If ``new_cursor_block`` is below the cursor.
        """

    @abstractmethod
    async def transfers_by_address(
        self,
        address: str,
        direction: Direction = Direction.ALL,
        before_id: int | None = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        *,
        token_contract: str | None = None,
    ) -> TransferPage: ...

    @abstractmethod
    async def count_transfers(self, token_contract: str | None = None) -> int: ...

    async def close(self) -> None:
        """Release storage resources."""


class SqlLedger(Ledger):
    """Ledger backed by SQLAlchemy (PostgreSQL in production, SQLite in tests)."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def init_schema(self) -> None:
        """Create missing tables (migrations remain the source of truth)."""
        await self._db.init_schema_async()

    async def get_cursor(self, token_contract: str) -> IndexStateDTO | None:
        async with self._db.get_async_session() as session:
            return await IndexStateRepository(session).get(token_contract)

    async def commit(
        self,
        token_contract: str,
        transfers: Sequence[TransferDTO],
        new_cursor_block: int,
    ) -> int:
        async with self._db.get_async_session() as session:
            states = IndexStateRepository(session)
            current = await states.get_for_update(token_contract)
            if current is not None and new_cursor_block < current.last_indexed_block:
                raise CursorRegressionError(token_contract, current.last_indexed_block, new_cursor_block)

            inserted = await TransferRepository(session).insert_many(transfers)
            await states.upsert(token_contract, new_cursor_block)
        return inserted

    async def transfers_by_address(
        self,
        address: str,
        direction: Direction = Direction.ALL,
        before_id: int | None = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        *,
        token_contract: str | None = None,
    ) -> TransferPage:
        async with self._db.get_async_session() as session:
            return await TransferRepository(session).list_by_address(
                address,
                direction=direction,
                before_id=before_id,
                limit=limit,
                token_contract=token_contract,
            )

    async def count_transfers(self, token_contract: str | None = None) -> int:
        async with self._db.get_async_session() as session:
            return await TransferRepository(session).count(token_contract)

    async def close(self) -> None:
        await self._db.dispose_async()


class InMemoryLedger(Ledger):
    """Process-local ledger for tests and database-less demo runs."""

    def __init__(self) -> None:
        self._rows: list[TransferDTO] = []
        self._keys: set[tuple[str, int]] = set()
        self._states: dict[str, IndexStateDTO] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def get_cursor(self, token_contract: str) -> IndexStateDTO | None:
        return self._states.get(token_contract.lower())

    async def commit(
        self,
        token_contract: str,
        transfers: Sequence[TransferDTO],
        new_cursor_block: int,
    ) -> int:
        token_contract = token_contract.lower()
        async with self._lock:
            current = self._states.get(token_contract)
            if current is not None and new_cursor_block < current.last_indexed_block:
                raise CursorRegressionError(token_contract, current.last_indexed_block, new_cursor_block)

            # Build the whole batch first, then publish it in one step.
            now = datetime.now(UTC)
            staged: list[TransferDTO] = []
            staged_keys: set[tuple[str, int]] = set()
            next_id = self._next_id
            for transfer in transfers:
                key = transfer.key
                if key in self._keys or key in staged_keys:
                    continue
                staged_keys.add(key)
                staged.append(
                    dataclasses.replace(
                        transfer,
                        id=next_id,
                        token_contract=transfer.token_contract.lower(),
                        tx_hash=transfer.tx_hash.lower(),
                        block_hash=transfer.block_hash.lower(),
                        from_address=transfer.from_address.lower(),
                        to_address=transfer.to_address.lower(),
                        created_at=now,
                    )
                )
                next_id += 1

            self._rows.extend(staged)
            self._keys.update(staged_keys)
            self._next_id = next_id
            self._states[token_contract] = IndexStateDTO(
                token_contract=token_contract,
                last_indexed_block=new_cursor_block,
                updated_at=now,
            )
        return len(staged)

    async def transfers_by_address(
        self,
        address: str,
        direction: Direction = Direction.ALL,
        before_id: int | None = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        *,
        token_contract: str | None = None,
    ) -> TransferPage:
        address = address.lower()
        limit = clamp_limit(limit)
        token = token_contract.lower() if token_contract is not None else None

        matches: list[TransferDTO] = []
        for row in reversed(self._rows):
            if before_id is not None and row.id is not None and row.id >= before_id:
                continue
            if token is not None and row.token_contract != token:
                continue
            if direction is Direction.SENT:
                hit = row.from_address == address
            elif direction is Direction.RECEIVED:
                hit = row.to_address == address
            else:
                hit = row.from_address == address or row.to_address == address
            if not hit:
                continue
            matches.append(row)
            if len(matches) > limit:
                break

        return TransferPage(rows=matches[:limit], has_more=len(matches) > limit)

    async def count_transfers(self, token_contract: str | None = None) -> int:
        if token_contract is None:
            return len(self._rows)
        token = token_contract.lower()
        return sum(1 for row in self._rows if row.token_contract == token)
