"""Command-line entry point.

Usage:
    python -m erc20_transfer_indexer run       # indexer + HTTP API
    python -m erc20_transfer_indexer init-db   # create tables
    python -m erc20_transfer_indexer status    # print the index state as JSON
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence

import uvicorn
from redis.asyncio import Redis

from erc20_transfer_indexer.api.app import create_app
from erc20_transfer_indexer.api.service import TransferQueryService
from erc20_transfer_indexer.chain.client import ChainClient
from erc20_transfer_indexer.chain.timestamps import TimestampResolver
from erc20_transfer_indexer.config import Settings, get_settings
from erc20_transfer_indexer.indexer.loop import TransferIndexer
from erc20_transfer_indexer.storage.database import DatabaseManager
from erc20_transfer_indexer.storage.ledger import InMemoryLedger, Ledger, SqlLedger

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
INDEXER_STOP_TIMEOUT_SECONDS = 30.0


def build_ledger(settings: Settings) -> Ledger:
    """Create the configured ledger (SQL when DATABASE_URL is set)."""
    if settings.database.url is None:
        logger.warning("DATABASE_URL is not set; transfers are kept in memory only")
        return InMemoryLedger()
    db = DatabaseManager(settings.database.url, pool_size=settings.database.pool_size)
    return SqlLedger(db)


def build_redis(settings: Settings) -> Redis | None:
    if settings.redis.url is None:
        return None
    return Redis.from_url(settings.redis.url, decode_responses=True)


def build_indexer(settings: Settings, chain: ChainClient, ledger: Ledger) -> TransferIndexer:
    resolver = TimestampResolver(
        chain,
        max_concurrency=settings.indexer.timestamp_concurrency,
        strict=settings.indexer.strict_timestamps,
    )
    return TransferIndexer(
        chain,
        ledger,
        token_address=settings.chain.token_address,
        start_block=settings.indexer.start_block,
        min_confirmations=settings.indexer.min_confirmations,
        step_blocks=settings.indexer.step_blocks,
        idle_interval_ms=settings.indexer.idle_interval_ms,
        timestamp_resolver=resolver,
    )


async def run_service(settings: Settings) -> None:
    """Run the indexer loop and the HTTP API until the server exits."""
    ledger = build_ledger(settings)
    if isinstance(ledger, SqlLedger):
        await ledger.init_schema()

    redis = build_redis(settings)
    chain = ChainClient(
        settings.chain.rpc_url,
        settings.chain.token_address,
        redis=redis,
        max_requests_per_second=settings.chain.max_requests_per_second,
        request_timeout_seconds=settings.chain.request_timeout_seconds,
        poa_middleware=settings.chain.poa_middleware,
    )
    indexer = build_indexer(settings, chain, ledger)
    service = TransferQueryService(ledger, token_contract=settings.chain.token_address)
    app = create_app(service, indexer=indexer)

    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level=settings.log_level.lower(),
        )
    )

    stop_event = asyncio.Event()
    indexer_task = asyncio.create_task(indexer.run(stop_event), name="transfer-indexer")
    logger.info("API listening on %s:%d", settings.api.host, settings.api.port)

    try:
        await server.serve()
    finally:
        stop_event.set()
        if not await indexer.stop(timeout=INDEXER_STOP_TIMEOUT_SECONDS):
            indexer_task.cancel()
        try:
            await indexer_task
        except asyncio.CancelledError:
            logger.warning("Indexer task cancelled during shutdown")
        await chain.aclose()
        if redis is not None:
            await redis.aclose()
        await ledger.close()
        logger.info("Shutdown complete")


async def init_db(settings: Settings) -> None:
    if settings.database.url is None:
        raise SystemExit("DATABASE_URL is not set")
    db = DatabaseManager(settings.database.url, pool_size=settings.database.pool_size)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


async def print_status(settings: Settings) -> None:
    ledger = build_ledger(settings)
    try:
        service = TransferQueryService(ledger, token_contract=settings.chain.token_address)
        status = await service.get_status(indexer_running=False)
    finally:
        await ledger.close()
    print(json.dumps(status.model_dump(mode="json", by_alias=True), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="erc20-indexer",
        description="Index ERC20 Transfer events and serve them over HTTP",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("run", help="Run the indexer and the HTTP API")
    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("status", help="Print the stored index state")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)
    logger.debug("Loaded settings: %s", settings.redacted_summary())

    commands = {
        "run": run_service,
        "init-db": init_db,
        "status": print_status,
    }
    try:
        asyncio.run(commands[args.command](settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
