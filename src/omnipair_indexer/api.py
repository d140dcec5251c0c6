"""FastAPI status and query API over the indexed state.

Amount fields are rendered as strings: u64/u128 values overflow the integer
range JSON consumers (JavaScript) can represent exactly.
"""

import asyncio
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from omnipair_indexer.logging import get_logger
from omnipair_indexer.models import (
    PAIR_STATE_FIELDS,
    POSITION_STATE_FIELDS,
    Pair,
    TransactionDetail,
    UserPosition,
)

logger = get_logger(__name__)

router = APIRouter()


class BackfillRequest(BaseModel):
    from_slot: int | None = None
    to_slot: int | None = None
    reprocess: bool = False


def _pair_to_dict(pair: Pair) -> dict[str, Any]:
    data = asdict(pair)
    for name in PAIR_STATE_FIELDS:
        data[name] = str(data[name])
    if data["half_life"] is not None:
        data["half_life"] = str(data["half_life"])
    data["last_position"] = list(pair.last_position)
    return data


def _position_to_dict(position: UserPosition) -> dict[str, Any]:
    data = asdict(position)
    for name in POSITION_STATE_FIELDS:
        data[name] = str(data[name])
    data["last_position"] = list(position.last_position)
    return data


def _stringify_ints(value: Any) -> Any:
    """Recursively render ints as strings in decoded payloads (bools untouched)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, dict):
        return {k: _stringify_ints(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_stringify_ints(v) for v in value]
    return value


def _detail_to_dict(detail: TransactionDetail) -> dict[str, Any]:
    return {
        "detail_index": detail.detail_index,
        "instruction_index": detail.instruction_index,
        "inner_index": detail.inner_index,
        "record_type": detail.record_type.value,
        "kind": detail.kind,
        "pair_address": detail.pair_address,
        "owner": detail.owner,
        "payload": _stringify_ints(detail.payload),
        "error": detail.error,
        "inconsistency": detail.inconsistency,
    }


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    indexer = request.app.state.indexer
    healthy = indexer.database.is_connected
    return JSONResponse(
        {"status": "ok" if healthy else "unavailable", "running": indexer.running},
        status_code=200 if healthy else 503,
    )


@router.get("/status")
async def status(request: Request) -> JSONResponse:
    return JSONResponse(await request.app.state.indexer.get_status())


@router.get("/pairs")
async def list_pairs(
    request: Request,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> JSONResponse:
    pairs = await request.app.state.indexer.store.list_pairs(limit=limit, offset=offset)
    return JSONResponse([_pair_to_dict(p) for p in pairs])


@router.get("/pairs/{address}")
async def get_pair(request: Request, address: str) -> JSONResponse:
    pair = await request.app.state.indexer.store.get_pair(address)
    if pair is None:
        raise HTTPException(status_code=404, detail=f"pair {address} not indexed")
    return JSONResponse(_pair_to_dict(pair))


@router.get("/pairs/{address}/positions")
async def list_pair_positions(
    request: Request,
    address: str,
    owner: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> JSONResponse:
    positions = await request.app.state.indexer.store.list_positions(
        pair_address=address, owner=owner, limit=limit, offset=offset
    )
    return JSONResponse([_position_to_dict(p) for p in positions])


@router.get("/transactions/{signature}")
async def get_transaction(request: Request, signature: str) -> JSONResponse:
    store = request.app.state.indexer.store
    record = await store.get_transaction(signature)
    if record is None:
        raise HTTPException(status_code=404, detail=f"transaction {signature} not indexed")
    details = await store.get_transaction_details(signature)
    return JSONResponse(
        {**asdict(record), "details": [_detail_to_dict(d) for d in details]}
    )


def _track(app: FastAPI, task: asyncio.Task, driver: str) -> None:  # type: ignore[type-arg]
    """Keep a reference to a background sync task and log how it ended."""
    app.state.sync_tasks.add(task)

    def _done(finished: asyncio.Task) -> None:  # type: ignore[type-arg]
        app.state.sync_tasks.discard(finished)
        if finished.cancelled():
            logger.info("sync_task_cancelled", driver=driver)
            return
        error = finished.exception()
        if error is not None:
            logger.error(
                "sync_task_failed",
                driver=driver,
                error=str(error),
                error_type=type(error).__name__,
            )

    task.add_done_callback(_done)


@router.post("/sync/backfill", status_code=202)
async def trigger_backfill(request: Request, body: BackfillRequest) -> JSONResponse:
    """Start a backfill in the background; poll /status for its outcome."""
    indexer = request.app.state.indexer
    if indexer.backfill.running:
        return JSONResponse({"error": "backfill already running"}, status_code=409)
    task = asyncio.create_task(
        indexer.run_backfill(body.from_slot, body.to_slot, body.reprocess)
    )
    _track(request.app, task, "backfill")
    logger.info("backfill_requested", **body.model_dump())
    return JSONResponse({"status": "accepted"}, status_code=202)


@router.post("/sync/gap-fill", status_code=202)
async def trigger_gap_fill(request: Request) -> JSONResponse:
    indexer = request.app.state.indexer
    if indexer.gap_fill.running:
        return JSONResponse({"error": "gap fill already running"}, status_code=409)
    task = asyncio.create_task(indexer.run_gap_fill())
    _track(request.app, task, "gap_fill")
    logger.info("gap_fill_requested")
    return JSONResponse({"status": "accepted"}, status_code=202)


def create_app(indexer: Any = None, lifespan: Any = None) -> FastAPI:
    """Create the API application.

    Args:
        indexer: OmnipairIndexer serving the routes; main.py's lifespan may
                 set app.state.indexer instead.
        lifespan: Optional async context manager for startup/shutdown.
    """
    app = FastAPI(title="Omnipair Indexer", lifespan=lifespan)
    app.state.indexer = indexer
    app.state.sync_tasks = set()
    app.include_router(router)
    return app
