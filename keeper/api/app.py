from __future__ import annotations

import asyncio
import logging
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pandas as pd
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from keeper.utils import database
from keeper.utils.database import (
    get_actions,
    get_events,
    get_live_status,
    get_open_traders,
    get_scan_state,
)

logger = logging.getLogger(__name__)

# Blocking SQLite reads run here so they don't freeze the event loop.
_db_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="db_ro")


def _df_to_records(df: pd.DataFrame | None) -> list[dict[str, Any]]:
    if df is None or df.empty:
        return []
    df = df.astype(object).where(pd.notna(df), None)
    return jsonable_encoder(df.to_dict(orient="records"))


def _row_to_dict(row: pd.Series | None) -> dict[str, Any] | None:
    if row is None:
        return None
    out = {}
    for k, v in row.to_dict().items():
        if pd.isna(v):
            v = None
        elif hasattr(v, "item"):
            # numpy scalar
            v = v.item()
        out[k] = v
    return jsonable_encoder(out)


app = FastAPI(
    title="Perps Keeper API",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a clean JSON 500 instead of a stack trace."""
    logger.error(f"Unhandled exception: {type(exc).__name__}: {exc}")
    logger.debug(traceback.format_exc())
    return JSONResponse(
        status_code=500,
        content={
            "detail": f"Internal server error: {type(exc).__name__}",
            "message": str(exc)[:200],
        },
    )


async def _run_in_executor(func, *args, timeout_seconds: float = 3.0, **kwargs):
    """
    Run a blocking read in the thread pool with a timeout.
    Returns None on timeout or failure so the API stays responsive under lock contention.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(_db_executor, lambda: func(*args, **kwargs)),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Database call timed out after {timeout_seconds}s: {func.__name__}")
        return None
    except Exception as e:
        logger.warning(f"Database call failed: {func.__name__}: {e}")
        return None


@app.get("/api/health")
async def health() -> dict[str, Any]:
    """Health check that tests database connectivity directly (not via the pool)."""
    db_ok = False
    db_error = None
    try:
        conn = database._connect_ro()
        try:
            conn.execute("SELECT 1").fetchone()
        finally:
            conn.close()
        db_ok = True
    except Exception as e:
        db_error = str(e)

    return {
        "status": "ok" if db_ok else "degraded",
        "db_path": database.DB_PATH,
        "db_ok": db_ok,
        "db_error": db_error,
    }


@app.get("/api/keeper/status")
async def keeper_status() -> dict[str, Any]:
    scan = await _run_in_executor(get_scan_state)
    live = await _run_in_executor(get_live_status)
    scan_d = _row_to_dict(scan)
    return {
        "cursor": scan_d.get("cursor") if scan_d else None,
        "open_count": scan_d.get("open_count") if scan_d else 0,
        "last_scan_at": scan_d.get("last_scan_at") if scan_d else None,
        "perps_address": scan_d.get("perps_address") if scan_d else None,
        "live": _row_to_dict(live),
    }


@app.get("/api/keeper/traders")
async def keeper_traders() -> list[str]:
    df = await _run_in_executor(get_open_traders)
    return [r["trader"] for r in _df_to_records(df)]


@app.get("/api/keeper/actions")
async def keeper_actions(limit: int = Query(default=100, ge=1, le=1000)) -> list[dict[str, Any]]:
    df = await _run_in_executor(get_actions, limit=limit)
    return _df_to_records(df)


@app.get("/api/events")
async def events(limit: int = Query(default=200, ge=1, le=2000)) -> list[dict[str, Any]]:
    df = await _run_in_executor(get_events, limit=limit)
    if df is None:
        raise HTTPException(status_code=503, detail="Event stream unavailable")
    return _df_to_records(df)
