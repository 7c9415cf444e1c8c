"""System health and maintenance endpoints."""

from __future__ import annotations

import time

from fastapi import APIRouter, Depends

from tradeflow.api.deps import app_state, get_pipeline
from tradeflow.pipeline import Pipeline

router = APIRouter()

_start_time = time.time()


@router.get("/system/health")
def health_check() -> dict:
    """Liveness plus a summary of what is wired in. Never requires auth."""
    db_ok = app_state.db.health_check() if app_state.db is not None else None
    pipeline = app_state.pipeline
    providers = pipeline.gateway.providers if pipeline is not None else []
    leases = len(pipeline.runtime.watchdog.active_leases) if pipeline is not None else 0
    return {
        "status": "healthy" if db_ok is not False and pipeline is not None else "degraded",
        "database": db_ok,
        "providers": providers,
        "activeLeases": leases,
        "uptime": int(time.time() - _start_time),
    }


@router.post("/system/detect-stale")
async def detect_stale(pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    report = await pipeline.detector.detect_and_reactivate()
    return report.to_dict()
