"""Create the transfer ledger and index cursor tables.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "transfers",
        sa.Column(
            "id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            autoincrement=True,
            nullable=False,
        ),
        sa.Column("token_contract", sa.String(42), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_hash", sa.String(66), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("value_raw", sa.String(78), nullable=False),
        sa.Column("value_decimal", sa.String(80), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_transfers_tx_log"),
    )
    op.create_index("idx_transfers_from_id", "transfers", ["from_address", "id"])
    op.create_index("idx_transfers_to_id", "transfers", ["to_address", "id"])
    op.create_index("idx_transfers_token", "transfers", ["token_contract"])
    op.create_index("idx_transfers_block", "transfers", ["block_number"])

    op.create_table(
        "index_state",
        sa.Column("token_contract", sa.String(42), nullable=False),
        sa.Column("last_indexed_block", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("token_contract"),
    )


def downgrade() -> None:
    op.drop_table("index_state")
    op.drop_index("idx_transfers_block", table_name="transfers")
    op.drop_index("idx_transfers_token", table_name="transfers")
    op.drop_index("idx_transfers_to_id", table_name="transfers")
    op.drop_index("idx_transfers_from_id", table_name="transfers")
    op.drop_table("transfers")
