"""HTTP query API for the transfer ledger."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from erc20_transfer_indexer import __version__
from erc20_transfer_indexer.api.schemas import HealthOut, IndexerHealth, StatusOut, TransferPageOut
from erc20_transfer_indexer.api.service import QueryError, TransferQueryService
from erc20_transfer_indexer.storage.repos import DEFAULT_PAGE_LIMIT, Direction

if TYPE_CHECKING:
    from erc20_transfer_indexer.indexer.loop import TransferIndexer

logger = logging.getLogger(__name__)
router = APIRouter()


def get_service(request: Request) -> TransferQueryService:
    service: TransferQueryService = request.app.state.query_service
    return service


def indexer_running(request: Request) -> bool:
    indexer: TransferIndexer | None = request.app.state.indexer
    return indexer is not None and indexer.is_running


@router.get("/health", response_model=HealthOut)
async def health(running: bool = Depends(indexer_running)) -> HealthOut:
    return HealthOut(
        status="ok",
        timestamp=datetime.now(UTC),
        indexer=IndexerHealth(running=running),
    )


@router.get(
    "/api/transfers",
    response_model=TransferPageOut,
    response_model_exclude_none=True,
)
async def list_transfers(
    address: str = Query(..., description="20-byte hex address, any letter case"),
    direction: Direction = Query(Direction.ALL),
    limit: int = Query(DEFAULT_PAGE_LIMIT, description="Page size, clamped to [1, 200]"),
    cursor: str | None = Query(None, description="nextCursor of the previous page"),
    service: TransferQueryService = Depends(get_service),
) -> TransferPageOut:
    try:
        return await service.list_transfers(address, direction=direction, limit=limit, cursor=cursor)
    except QueryError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except Exception as e:
        logger.exception("Failed to query transfers for %s", address)
        raise HTTPException(status_code=500, detail="Failed to query transfers") from e


@router.get("/api/status", response_model=StatusOut)
async def get_status(
    service: TransferQueryService = Depends(get_service),
    running: bool = Depends(indexer_running),
) -> StatusOut:
    try:
        return await service.get_status(indexer_running=running)
    except Exception as e:
        logger.exception("Failed to read index status")
        raise HTTPException(status_code=500, detail="Failed to read index status") from e


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 (not 422) for malformed query parameters."""
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors())},
    )


def create_app(
    service: TransferQueryService,
    *,
    indexer: TransferIndexer | None = None,
) -> FastAPI:
    """Build the FastAPI application around an existing query service.

    Args:
        service: Query service bound to the token's ledger.
        indexer: Running indexer, reported by ``/health`` and ``/api/status``.
    """
    app = FastAPI(
        title="ERC20 Transfer Indexer",
        version=__version__,
    )
    app.state.query_service = service
    app.state.indexer = indexer
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.include_router(router)
    return app
