"""Storage layer - Database schema, repositories and the transfer ledger."""

from erc20_transfer_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from erc20_transfer_indexer.storage.ledger import (
    CursorRegressionError,
    InMemoryLedger,
    Ledger,
    LedgerError,
    SqlLedger,
)
from erc20_transfer_indexer.storage.models import Base, IndexStateModel, TransferModel
from erc20_transfer_indexer.storage.repos import (
    Direction,
    IndexStateDTO,
    IndexStateRepository,
    TransferDTO,
    TransferPage,
    TransferRepository,
    clamp_limit,
)

__all__ = [
    "Base",
    "CursorRegressionError",
    "DatabaseManager",
    "Direction",
    "InMemoryLedger",
    "IndexStateDTO",
    "IndexStateModel",
    "IndexStateRepository",
    "Ledger",
    "LedgerError",
    "SqlLedger",
    "TransferDTO",
    "TransferModel",
    "TransferPage",
    "TransferRepository",
    "clamp_limit",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
