"""Analysis endpoints: read a run and convenience wrappers over coordinator actions."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from tradeflow.api.deps import get_coordinator, get_store
from tradeflow.registry.base import WorkflowStore
from tradeflow.workflow.coordinator import Coordinator

router = APIRouter()


class StartRequest(BaseModel):
    ticker: str = Field(min_length=1, max_length=16)
    user_id: str = Field(alias="userId", min_length=1)
    settings: dict = Field(default_factory=dict)


class ActionRequest(BaseModel):
    user_id: str | None = Field(default=None, alias="userId")


@router.post("/analyses")
async def start_analysis(
    body: StartRequest,
    coordinator: Coordinator = Depends(get_coordinator),
) -> dict:
    return await coordinator.start_analysis(body.ticker, body.user_id, body.settings)


@router.get("/analyses/{analysis_id}")
def get_analysis(analysis_id: str, store: WorkflowStore = Depends(get_store)) -> dict:
    record = store.get_run(analysis_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Analysis not found: {analysis_id}")
    return record.to_dict()


@router.post("/analyses/{analysis_id}/retry")
async def retry_analysis(
    analysis_id: str,
    body: ActionRequest | None = None,
    coordinator: Coordinator = Depends(get_coordinator),
) -> dict:
    return await coordinator.resume(analysis_id, body.user_id if body else None, "retry")


@router.post("/analyses/{analysis_id}/cancel")
def cancel_analysis(
    analysis_id: str,
    body: ActionRequest | None = None,
    coordinator: Coordinator = Depends(get_coordinator),
) -> dict:
    return coordinator.cancel(analysis_id, body.user_id if body else None)
