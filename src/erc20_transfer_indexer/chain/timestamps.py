"""Bounded-concurrency block timestamp resolution."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Protocol

from erc20_transfer_indexer.chain.client import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 10


class BlockTimestampSource(Protocol):
    async def get_block_timestamp(self, block_number: int) -> datetime: ...


class TimestampResolver:
    """Resolve timestamps for a batch of blocks with a fixed fan-out.

    All fetches of a batch complete before ``resolve`` returns. By default a
    block whose timestamp cannot be fetched gets the current wall-clock time;
    with ``strict=True`` the first failure is raised instead.
    """

    def __init__(
        self,
        source: BlockTimestampSource,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        strict: bool = False,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._source = source
        self._max_concurrency = max_concurrency
        self._strict = strict

    async def resolve(self, block_numbers: Iterable[int]) -> dict[int, datetime]:
        """Fetch the timestamp of every distinct block number.

        Args:
            block_numbers: Block numbers, duplicates allowed.

        Returns:
            Mapping of block number to aware UTC timestamp.

        Raises:
            ProviderError: In strict mode, if any fetch fails.
        """
        unique = sorted(set(block_numbers))
        if not unique:
            return {}

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def fetch(block_number: int) -> datetime:
            async with semaphore:
                return await self._source.get_block_timestamp(block_number)

        results = await asyncio.gather(*(fetch(n) for n in unique), return_exceptions=True)

        timestamps: dict[int, datetime] = {}
        fallbacks = 0
        for block_number, result in zip(unique, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, ProviderError) or self._strict:
                    raise result
                fallbacks += 1
                logger.warning(
                    "Failed to get timestamp of block %d, using wall-clock time: %s",
                    block_number,
                    result,
                )
                timestamps[block_number] = datetime.now(UTC)
            else:
                timestamps[block_number] = result

        if fallbacks:
            logger.warning("Substituted wall-clock time for %d/%d blocks", fallbacks, len(unique))
        return timestamps
