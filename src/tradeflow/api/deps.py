"""Dependency injection for the FastAPI application."""

from __future__ import annotations

from tradeflow.config import AppConfig
from tradeflow.pipeline import Pipeline
from tradeflow.registry.base import WorkflowStore
from tradeflow.registry.db import Database
from tradeflow.workflow.coordinator import Coordinator


class AppState:
    """Holds shared application state initialised during lifespan."""

    def __init__(self) -> None:
        self.config: AppConfig | None = None
        self.db: Database | None = None
        self.store: WorkflowStore | None = None
        self.pipeline: Pipeline | None = None


# Singleton shared across the app
app_state = AppState()


def get_store() -> WorkflowStore:
    if app_state.store is None:
        raise RuntimeError("Record store not initialised")
    return app_state.store


def get_pipeline() -> Pipeline:
    if app_state.pipeline is None:
        raise RuntimeError("Pipeline not initialised")
    return app_state.pipeline


def get_coordinator() -> Coordinator:
    return get_pipeline().coordinator
