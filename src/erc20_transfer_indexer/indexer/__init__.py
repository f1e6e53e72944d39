"""Indexing layer - polling loop and failure backoff policy."""

from erc20_transfer_indexer.indexer.backoff import (
    MAX_BACKOFF_SECONDS,
    RATE_LIMITED_BACKOFF_SECONDS,
    TRANSIENT_BACKOFF_SECONDS,
    backoff_seconds,
    classify_error,
)
from erc20_transfer_indexer.indexer.loop import (
    CycleResult,
    IndexerState,
    IndexerStats,
    TransferIndexer,
)

__all__ = [
    "MAX_BACKOFF_SECONDS",
    "RATE_LIMITED_BACKOFF_SECONDS",
    "TRANSIENT_BACKOFF_SECONDS",
    "CycleResult",
    "IndexerState",
    "IndexerStats",
    "TransferIndexer",
    "backoff_seconds",
    "classify_error",
]
