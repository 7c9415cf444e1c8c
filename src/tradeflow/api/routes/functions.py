"""Function entry point used by the remote invoker.

Agent work is accepted immediately and run in the background, so a slow
reasoning call never holds the caller's HTTP request open.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException

from tradeflow.api.deps import get_pipeline
from tradeflow.models.envelope import COORDINATOR_FUNCTION
from tradeflow.pipeline import Pipeline
from tradeflow.workflow import sequencer
from tradeflow.workflow.errors import UnknownAgentError

logger = logging.getLogger(__name__)

router = APIRouter()


async def _run_agent(pipeline: Pipeline, function_name: str, payload: dict) -> None:
    try:
        await pipeline.dispatch(function_name, payload)
    except Exception:
        logger.exception("Function %s failed for %s", function_name, payload.get("analysisId"))


@router.post("/functions/{function_name}")
async def invoke_function(
    function_name: str,
    background_tasks: BackgroundTasks,
    payload: dict = Body(...),
    pipeline: Pipeline = Depends(get_pipeline),
) -> dict:
    if function_name == COORDINATOR_FUNCTION:
        return await pipeline.coordinator.handle_request(payload)

    try:
        agent = sequencer.agent_for_function(function_name)
    except UnknownAgentError:
        raise HTTPException(status_code=404, detail=f"Unknown function: {function_name}")
    if payload.get("agent") != agent or "analysisId" not in payload:
        raise HTTPException(status_code=422, detail=f"Payload does not address {agent}")

    background_tasks.add_task(_run_agent, pipeline, function_name, payload)
    return {"success": True, "accepted": True, "agent": agent}
