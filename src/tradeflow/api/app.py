"""FastAPI application factory with service auth middleware and lifespan management."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from tradeflow.api.auth import bearer_token, verify_token
from tradeflow.api.deps import app_state
from tradeflow.config import load_config
from tradeflow.pipeline import build_pipeline
from tradeflow.registry.db import Database
from tradeflow.registry.queries import Registry
from tradeflow.workflow.stale import stale_detection_loop

logger = logging.getLogger(__name__)

PREFIX = "/api/flow"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup/shutdown of DB, pipeline and the stale-run loop."""
    config = load_config()

    db = Database(config.db_dsn)
    db.connect()
    registry = Registry(db)

    pipeline = build_pipeline(config, registry)
    await pipeline.start()

    app_state.config = config
    app_state.db = db
    app_state.store = registry
    app_state.pipeline = pipeline

    bg_tasks = []
    if config.enable_stale_detection:
        bg_tasks.append(
            asyncio.create_task(
                stale_detection_loop(pipeline.detector, config.stale_check_interval_seconds)
            )
        )
    logger.info("API started: DB, pipeline and background tasks ready")
    yield

    for task in bg_tasks:
        task.cancel()
    await asyncio.gather(*bg_tasks, return_exceptions=True)

    await pipeline.close()
    db.close()
    app_state.pipeline = None
    app_state.store = None
    app_state.db = None
    logger.info("API shutdown complete")


# Paths that don't require authentication
PUBLIC_PATHS = {
    f"{PREFIX}/system/health",
}


class AuthMiddleware(BaseHTTPMiddleware):
    """Require a valid service bearer token on every API route except public ones."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if not path.startswith(PREFIX) or path in PUBLIC_PATHS:
            return await call_next(request)

        # Skip auth entirely if no secret key is configured (dev mode)
        config = app_state.config
        if not config or not config.service_secret_key:
            return await call_next(request)

        token = bearer_token(request.headers.get("authorization"))
        if not token or not verify_token(token, config.service_secret_key):
            return JSONResponse(status_code=401, content={"detail": "Not authenticated"})

        return await call_next(request)


def create_app(*, use_lifespan: bool = True) -> FastAPI:
    """Build and return the FastAPI application.

    Args:
        use_lifespan: If False, skip the production lifespan (useful for testing
            where deps are injected via app_state directly).
    """
    app = FastAPI(
        title="Tradeflow API",
        version="0.1.0",
        lifespan=lifespan if use_lifespan else None,
    )

    app.add_middleware(AuthMiddleware)

    from tradeflow.api.routes import analyses, coordinator, functions, system

    app.include_router(coordinator.router, prefix=PREFIX, tags=["coordinator"])
    app.include_router(functions.router, prefix=PREFIX, tags=["functions"])
    app.include_router(analyses.router, prefix=PREFIX, tags=["analyses"])
    app.include_router(system.router, prefix=PREFIX, tags=["system"])

    return app
