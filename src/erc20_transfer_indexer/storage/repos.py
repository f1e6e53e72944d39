"""Repository pattern implementations for data access.

This module provides session-scoped data access for transfers and the
index cursor. Repositories never commit; the caller owns the transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from erc20_transfer_indexer.storage.models import IndexStateModel, TransferModel

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from typing import Any

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

MIN_PAGE_LIMIT = 1
MAX_PAGE_LIMIT = 200
DEFAULT_PAGE_LIMIT = 50

# Keeps multi-row INSERTs under driver bind-parameter limits.
INSERT_CHUNK_SIZE = 500


class Direction(str, Enum):
    """Which side of a transfer an address must be on."""

    SENT = "sent"
    RECEIVED = "received"
    ALL = "all"


def clamp_limit(limit: int) -> int:
    """Clamp a page size to ``[MIN_PAGE_LIMIT, MAX_PAGE_LIMIT]``."""
    return max(MIN_PAGE_LIMIT, min(MAX_PAGE_LIMIT, int(limit)))


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back.
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


@dataclass(frozen=True)
class TransferDTO:
    """Data transfer object for ledger transfers.

    ``id`` and ``created_at`` are assigned by the ledger at insert time and
    are None on transfers that have not been committed yet.
    """

    token_contract: str
    tx_hash: str
    log_index: int
    block_number: int
    block_hash: str
    from_address: str
    to_address: str
    value_raw: str
    value_decimal: str
    timestamp: datetime
    id: int | None = None
    created_at: datetime | None = None

    @property
    def key(self) -> tuple[str, int]:
        """Natural key of the underlying log."""
        return (self.tx_hash.lower(), self.log_index)

    @classmethod
    def from_model(cls, model: TransferModel) -> TransferDTO:
        return cls(
            id=model.id,
            token_contract=model.token_contract,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            block_hash=model.block_hash,
            from_address=model.from_address,
            to_address=model.to_address,
            value_raw=model.value_raw,
            value_decimal=model.value_decimal,
            timestamp=_as_utc(model.timestamp),
            created_at=_as_utc(model.created_at),
        )


@dataclass(frozen=True)
class IndexStateDTO:
    """Data transfer object for the per-contract cursor."""

    token_contract: str
    last_indexed_block: int
    updated_at: datetime

    @classmethod
    def from_model(cls, model: IndexStateModel) -> IndexStateDTO:
        return cls(
            token_contract=model.token_contract,
            last_indexed_block=model.last_indexed_block,
            updated_at=_as_utc(model.updated_at),
        )


@dataclass(frozen=True)
class TransferPage:
    """One page of ``transfers_by_address`` results, newest first."""

    rows: list[TransferDTO]
    has_more: bool


def _dialect_insert(session: AsyncSession) -> Callable[..., Any]:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")


class TransferRepository:
    """Repository for ledger transfers."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def insert_many(self, dtos: Sequence[TransferDTO]) -> int:
        """Insert transfers, skipping ones whose (tx_hash, log_index) exists.

        Rows are inserted in the given order so ids follow chain order.

        Returns:
            Number of newly inserted rows.
        """
        if not dtos:
            return 0

        now = datetime.now(UTC)
        rows = [
            {
                "token_contract": dto.token_contract.lower(),
                "tx_hash": dto.tx_hash.lower(),
                "log_index": dto.log_index,
                "block_number": dto.block_number,
                "block_hash": dto.block_hash.lower(),
                "from_address": dto.from_address.lower(),
                "to_address": dto.to_address.lower(),
                "value_raw": dto.value_raw,
                "value_decimal": dto.value_decimal,
                "timestamp": dto.timestamp,
                "created_at": now,
            }
            for dto in dtos
        ]

        insert = _dialect_insert(self.session)
        inserted = 0
        for start in range(0, len(rows), INSERT_CHUNK_SIZE):
            chunk = rows[start : start + INSERT_CHUNK_SIZE]
            stmt = insert(TransferModel).values(chunk)
            stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash", "log_index"])
            result = await self.session.execute(stmt)
            rowcount = result.rowcount
            inserted += rowcount if rowcount is not None and rowcount >= 0 else len(chunk)
        await self.session.flush()

        if inserted < len(rows):
            logger.debug("Skipped %d already-indexed transfers", len(rows) - inserted)
        return inserted

    async def get_by_key(self, tx_hash: str, log_index: int) -> TransferDTO | None:
        result = await self.session.execute(
            select(TransferModel).where(
                (TransferModel.tx_hash == tx_hash.lower()) & (TransferModel.log_index == log_index)
            )
        )
        model = result.scalar_one_or_none()
        return TransferDTO.from_model(model) if model else None

    async def list_by_address(
        self,
        address: str,
        *,
        direction: Direction = Direction.ALL,
        before_id: int | None = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        token_contract: str | None = None,
    ) -> TransferPage:
        """List transfers involving an address, newest (highest id) first.

        Args:
            address: Wallet address.
            direction: Filter on the sending or receiving side, or either.
            before_id: Only rows with a strictly smaller id are returned.
            limit: Page size, clamped to [1, 200].
            token_contract: Optional token contract filter.

        Returns:
            TransferPage with ``has_more`` set if further rows exist.
        """
        address = address.lower()
        limit = clamp_limit(limit)

        if direction is Direction.SENT:
            condition = TransferModel.from_address == address
        elif direction is Direction.RECEIVED:
            condition = TransferModel.to_address == address
        else:
            condition = sa.or_(TransferModel.from_address == address, TransferModel.to_address == address)

        stmt = select(TransferModel).where(condition)
        if token_contract is not None:
            stmt = stmt.where(TransferModel.token_contract == token_contract.lower())
        if before_id is not None:
            stmt = stmt.where(TransferModel.id < before_id)
        stmt = stmt.order_by(TransferModel.id.desc()).limit(limit + 1)

        result = await self.session.execute(stmt)
        models = list(result.scalars().all())
        return TransferPage(
            rows=[TransferDTO.from_model(m) for m in models[:limit]],
            has_more=len(models) > limit,
        )

    async def count(self, token_contract: str | None = None) -> int:
        stmt = select(sa.func.count()).select_from(TransferModel)
        if token_contract is not None:
            stmt = stmt.where(TransferModel.token_contract == token_contract.lower())
        result = await self.session.execute(stmt)
        return int(result.scalar_one())


class IndexStateRepository:
    """Repository for the per-contract index cursor."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, token_contract: str) -> IndexStateDTO | None:
        result = await self.session.execute(
            select(IndexStateModel).where(IndexStateModel.token_contract == token_contract.lower())
        )
        model = result.scalar_one_or_none()
        return IndexStateDTO.from_model(model) if model else None

    async def get_for_update(self, token_contract: str) -> IndexStateDTO | None:
        """Read the cursor, locking the row on databases that support it."""
        stmt = select(IndexStateModel).where(IndexStateModel.token_contract == token_contract.lower())
        if self.session.get_bind().dialect.name == "postgresql":
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return IndexStateDTO.from_model(model) if model else None

    async def upsert(self, token_contract: str, last_indexed_block: int) -> None:
        """Create or move the cursor of a token contract."""
        now = datetime.now(UTC)
        insert = _dialect_insert(self.session)
        stmt = insert(IndexStateModel).values(
            token_contract=token_contract.lower(),
            last_indexed_block=last_indexed_block,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["token_contract"],
            set_={"last_indexed_block": last_indexed_block, "updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.flush()
