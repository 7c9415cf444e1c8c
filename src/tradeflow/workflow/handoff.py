"""Claim-then-invoke: the only way a successor gets started.

Claiming moves the successor's step pending -> running. Only the caller that
wins the claim invokes it, so duplicate signals never double-invoke. If the
invocation itself fails the claim is released so the fallback path (or a
later resume) can claim it again.
"""

from __future__ import annotations

import logging
from enum import StrEnum

from tradeflow.invoker import BaseInvoker
from tradeflow.models.envelope import AgentTask
from tradeflow.models.run import StepStatus
from tradeflow.registry.base import WorkflowStore
from tradeflow.workflow import sequencer

logger = logging.getLogger(__name__)


class HandoffOutcome(StrEnum):
    INVOKED = "invoked"
    ALREADY_CLAIMED = "already_claimed"
    INVOKE_FAILED = "invoke_failed"


def claim(store: WorkflowStore, task: AgentTask) -> bool:
    won = store.set_step_status(
        task.analysis_id, task.phase, task.agent, {StepStatus.PENDING}, StepStatus.RUNNING
    )
    if not won:
        logger.info("Step %s/%s of %s already claimed", task.phase, task.agent, task.analysis_id)
    return won


async def invoke_claimed(
    store: WorkflowStore, invoker: BaseInvoker, task: AgentTask
) -> tuple[HandoffOutcome, str | None]:
    result = await invoker.invoke(sequencer.function_for(task.agent), task.to_payload())
    if result.ok:
        return HandoffOutcome.INVOKED, None
    store.set_step_status(
        task.analysis_id, task.phase, task.agent, {StepStatus.RUNNING}, StepStatus.PENDING
    )
    logger.warning("Failed to invoke %s for %s: %s", task.agent, task.analysis_id, result.error)
    return HandoffOutcome.INVOKE_FAILED, result.error


async def hand_off(
    store: WorkflowStore, invoker: BaseInvoker, task: AgentTask
) -> tuple[HandoffOutcome, str | None]:
    if not claim(store, task):
        return HandoffOutcome.ALREADY_CLAIMED, None
    return await invoke_claimed(store, invoker, task)
