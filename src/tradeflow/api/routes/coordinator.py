"""Coordinator endpoint: triggers, resume/cancel actions and agent callbacks."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from tradeflow.api.deps import get_coordinator
from tradeflow.workflow.coordinator import Coordinator

router = APIRouter()


@router.post("/coordinator")
async def coordinator_request(
    body: dict = Body(...),
    coordinator: Coordinator = Depends(get_coordinator),
) -> dict:
    """Always 200; logical failures are reported as ``{"success": false, "error": ...}``."""
    return await coordinator.handle_request(body)
