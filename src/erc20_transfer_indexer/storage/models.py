"""SQLAlchemy models for persistent storage.

This module defines the database schema for the transfer ledger and the
per-contract index cursor.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only auto-increments INTEGER PRIMARY KEY columns.
_ID_TYPE = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TransferModel(Base):
    """One decoded ERC20 Transfer log, immutable once written."""

    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(_ID_TYPE, primary_key=True, autoincrement=True)

    token_contract: Mapped[str] = mapped_column(String(42), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_hash: Mapped[str] = mapped_column(String(66), nullable=False)

    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)

    # uint256 as a decimal string; 78 digits cover 2**256 - 1.
    value_raw: Mapped[str] = mapped_column(String(78), nullable=False)
    value_decimal: Mapped[str] = mapped_column(String(80), nullable=False)

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_transfers_tx_log"),
        Index("idx_transfers_from_id", "from_address", "id"),
        Index("idx_transfers_to_id", "to_address", "id"),
        Index("idx_transfers_token", "token_contract"),
        Index("idx_transfers_block", "block_number"),
    )


class IndexStateModel(Base):
    """Indexing cursor, one row per token contract."""

    __tablename__ = "index_state"

    token_contract: Mapped[str] = mapped_column(String(42), primary_key=True)
    last_indexed_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
