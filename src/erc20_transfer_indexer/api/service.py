"""Cursor-paginated transfer queries over the ledger."""

from __future__ import annotations

import logging
import re

from erc20_transfer_indexer.api.schemas import StatusOut, TransferOut, TransferPageOut
from erc20_transfer_indexer.storage.ledger import Ledger
from erc20_transfer_indexer.storage.repos import DEFAULT_PAGE_LIMIT, Direction

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
# Row ids are BIGINT.
MAX_CURSOR = 2**63 - 1


class QueryError(ValueError):
    """Base exception for rejected queries (client errors)."""


class InvalidAddressError(QueryError):
    """Raised when the address is not a 0x-prefixed 20-byte hex string."""


class InvalidCursorError(QueryError):
    """Raised when the pagination cursor is not a positive row id."""


def normalize_address(address: str) -> str:
    """Lower-case and validate an address.

    Raises:
        InvalidAddressError: If the address is malformed.
    """
    normalized = address.strip().lower()
    if not _ADDRESS_RE.match(normalized):
        raise InvalidAddressError(f"Invalid address: {address!r}")
    return normalized


def parse_cursor(cursor: str | None) -> int | None:
    """Decode the opaque pagination cursor into a row id."""
    if cursor is None or cursor == "":
        return None
    if not (cursor.isascii() and cursor.isdigit()):
        raise InvalidCursorError(f"Invalid cursor: {cursor!r}")
    value = int(cursor)
    if value < 1 or value > MAX_CURSOR:
        raise InvalidCursorError(f"Invalid cursor: {cursor!r}")
    return value


class TransferQueryService:
    """Read-only query service for one token's ledger."""

    def __init__(self, ledger: Ledger, *, token_contract: str) -> None:
        self._ledger = ledger
        self._token_contract = token_contract.lower()

    @property
    def token_contract(self) -> str:
        return self._token_contract

    async def list_transfers(
        self,
        address: str,
        *,
        direction: Direction | str = Direction.ALL,
        limit: int = DEFAULT_PAGE_LIMIT,
        cursor: str | None = None,
    ) -> TransferPageOut:
        """Get one page of transfers involving ``address``, newest first.

        Args:
            address: Wallet address, any letter case.
            direction: ``sent``, ``received`` or ``all``.
            limit: Page size, clamped to [1, 200] by the ledger.
            cursor: ``nextCursor`` from the previous page.

        Returns:
            Page of transfers; ``next_cursor`` is set only if more rows exist.

        Raises:
            InvalidAddressError: If the address is malformed.
            InvalidCursorError: If the cursor is malformed.
        """
        normalized = normalize_address(address)
        before_id = parse_cursor(cursor)
        try:
            direction = Direction(direction)
        except ValueError as e:
            raise QueryError(f"Invalid direction: {direction!r}") from e

        page = await self._ledger.transfers_by_address(
            normalized,
            direction,
            before_id,
            limit,
            token_contract=self._token_contract,
        )

        next_cursor = None
        if page.has_more and page.rows:
            next_cursor = str(page.rows[-1].id)
        return TransferPageOut(
            data=[TransferOut.from_dto(row) for row in page.rows],
            next_cursor=next_cursor,
        )

    async def get_status(self, *, indexer_running: bool) -> StatusOut:
        state = await self._ledger.get_cursor(self._token_contract)
        total = await self._ledger.count_transfers(self._token_contract)
        return StatusOut(
            token_contract=self._token_contract,
            last_indexed_block=state.last_indexed_block if state else 0,
            last_updated=state.updated_at if state else None,
            indexer_running=indexer_running,
            total_transfers=total,
        )
