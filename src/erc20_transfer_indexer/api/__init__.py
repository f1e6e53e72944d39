"""Query layer - transfer pagination service and HTTP API."""

from erc20_transfer_indexer.api.app import create_app
from erc20_transfer_indexer.api.service import (
    InvalidAddressError,
    InvalidCursorError,
    QueryError,
    TransferQueryService,
    normalize_address,
    parse_cursor,
)

__all__ = [
    "InvalidAddressError",
    "InvalidCursorError",
    "QueryError",
    "TransferQueryService",
    "create_app",
    "normalize_address",
    "parse_cursor",
]
