"""Per-invocation wrapper around an agent.

One invocation goes: cancellation check, arm a lease, claim the step, do
the work, fence check, persist, mark the step completed, clear the lease,
hand off to the successor. Agents themselves only know how to reason and
persist; everything about retries, races and notifying the coordinator
lives here.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from tradeflow.agents.base import AgentContext, BaseAgent
from tradeflow.agents.watchdog import Watchdog
from tradeflow.invoker import BaseInvoker
from tradeflow.models.envelope import (
    COORDINATOR_FUNCTION,
    AgentSignal,
    AgentTask,
    CompletionType,
    RetryEnvelope,
)
from tradeflow.models.run import AnalysisRecord, ErrorType, Phase, StepStatus
from tradeflow.models.settings import DEFAULT_DEBATE_ROUNDS, RunSettings
from tradeflow.registry.base import WorkflowStore
from tradeflow.workflow import sequencer
from tradeflow.workflow.debate import DebateEngine
from tradeflow.workflow.errors import UnknownAgentError
from tradeflow.workflow.handoff import HandoffOutcome, hand_off
from tradeflow.workflow.health import classify_error

logger = logging.getLogger(__name__)

NOTIFICATION_FAILED = "COORDINATOR_NOTIFICATION_FAILED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentRuntime:
    def __init__(
        self,
        store: WorkflowStore,
        invoker: BaseInvoker,
        agents: dict[str, BaseAgent],
        debate: DebateEngine,
        *,
        max_retries: int = 3,
        timeout_ms: int = 180_000,
        default_debate_rounds: int = DEFAULT_DEBATE_ROUNDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._invoker = invoker
        self._agents = agents
        self._debate = debate
        self._max_retries = max_retries
        self._timeout_ms = timeout_ms
        self._default_debate_rounds = default_debate_rounds
        self._clock = clock or _utcnow
        self.watchdog = Watchdog(self._on_lease_expired)

    async def handle(self, payload: dict) -> dict:
        return await self.run(AgentTask.from_payload(payload))

    async def run(self, task: AgentTask) -> dict:
        agent = self._agents.get(task.agent)
        if agent is None:
            raise UnknownAgentError(task.phase, task.agent)
        if task.retry is None:
            task = task.with_retry(
                RetryEnvelope.first(
                    sequencer.function_for(task.agent), self._max_retries, self._timeout_ms
                )
            )

        record = self._store.get_run(task.analysis_id)
        if record is None:
            logger.warning("%s invoked for unknown analysis %s", task.agent, task.analysis_id)
            return {"success": False, "error": f"Analysis not found: {task.analysis_id}"}
        if not record.is_active:
            logger.info("Skipping %s: analysis %s is %s", task.agent, record.id, record.status)
            return {"success": True, "skipped": True, "message": f"Analysis is {record.status}"}
        if self._is_stale_debate_turn(record, task):
            logger.warning(
                "Skipping %s for round %s of %s: debate is at round %d",
                task.agent, task.debate_round, record.id, DebateEngine.current_round(record),
            )
            return {"success": True, "skipped": True, "message": "Debate round already passed"}

        self.watchdog.arm(task, task.retry.timeout_ms / 1000)
        try:
            if not self._store.set_step_status(
                task.analysis_id,
                task.phase,
                task.agent,
                {StepStatus.PENDING, StepStatus.RUNNING},
                StepStatus.RUNNING,
                attempt=task.attempt,
            ):
                logger.info(
                    "%s of %s is no longer runnable (attempt %d)",
                    task.agent, task.analysis_id, task.attempt,
                )
                return {"success": True, "skipped": True, "message": "Step already finished"}

            settings = RunSettings.from_dict(record.settings, self._default_debate_rounds)
            ctx = AgentContext(task=task, record=record, settings=settings)
            try:
                output = await agent.analyze(ctx)
            except Exception as e:
                logger.warning("%s failed for %s: %s", task.agent, task.analysis_id, e)
                return await self._fail(task, str(e) or type(e).__name__)

            if not self._may_write(task):
                return {"success": True, "fenced": True, "message": "Late output dropped"}

            try:
                persisted = agent.persist(self._store, ctx, output)
            except Exception as e:
                logger.exception("Saving %s output for %s failed", task.agent, task.analysis_id)
                return await self._fail(task, f"Database error saving output: {e}", ErrorType.DATABASE)
            if not persisted:
                logger.warning(
                    "%s output for %s lost a race with another attempt", task.agent, task.analysis_id
                )
                return {"success": True, "duplicate": True}

            if not self._store.set_step_status(
                task.analysis_id, task.phase, task.agent, {StepStatus.RUNNING}, StepStatus.COMPLETED
            ):
                logger.info("%s of %s was completed by another attempt", task.agent, task.analysis_id)
                return {"success": True, "duplicate": True}
        finally:
            self.watchdog.clear(task)

        logger.info("%s completed for %s (attempt %d)", task.agent, task.analysis_id, task.attempt)
        return await self._hand_off(task)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    def _is_stale_debate_turn(record: AnalysisRecord, task: AgentTask) -> bool:
        if task.agent not in sequencer.DEBATERS or task.debate_round is None:
            return False
        return task.debate_round != DebateEngine.current_round(record)

    def _may_write(self, task: AgentTask) -> bool:
        """Fence: drop output once the run is over or the step left ``running``."""
        current = self._store.get_run(task.analysis_id)
        if current is None or not current.is_active:
            status = current.status if current else "missing"
            logger.warning(
                "Dropping late output of %s for %s: analysis is %s",
                task.agent, task.analysis_id, status,
            )
            return False
        step = current.step(task.phase, task.agent)
        if step is None or step.status != StepStatus.RUNNING:
            logger.warning(
                "Dropping late output of %s for %s: step is %s",
                task.agent, task.analysis_id, step.status if step else "missing",
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Hand-off and notification
    # ------------------------------------------------------------------

    async def _hand_off(self, task: AgentTask) -> dict:
        debate_round = None
        if Phase(task.phase) == Phase.RESEARCH:
            record = self._store.get_run(task.analysis_id)
            hop = self._debate.next_hop_after(record, task.agent, task.debate_round)
            if hop.agent is None:
                return {"success": True, "message": "Debate already advanced"}
            successor, debate_round = hop.agent, hop.debate_round
        else:
            successor = sequencer.next_agent(task.phase, task.agent)

        if successor == sequencer.LAST_IN_PHASE:
            return await self._notify(task, CompletionType.LAST_IN_PHASE)

        nxt = AgentTask(
            analysis_id=task.analysis_id,
            ticker=task.ticker,
            user_id=task.user_id,
            phase=task.phase,
            agent=successor,
            debate_round=debate_round,
        )
        outcome, error = await hand_off(self._store, self._invoker, nxt)
        if outcome == HandoffOutcome.INVOKE_FAILED:
            return await self._notify(
                task,
                CompletionType.FALLBACK_INVOCATION_FAILED,
                error=error,
                failed_to_invoke=successor,
            )
        return {"success": True, "invoked": successor if outcome == HandoffOutcome.INVOKED else None}

    async def _notify(
        self,
        task: AgentTask,
        completion: CompletionType,
        *,
        error: str | None = None,
        error_type: ErrorType | None = None,
        failed_to_invoke: str | None = None,
    ) -> dict:
        signal = AgentSignal(
            analysis_id=task.analysis_id,
            ticker=task.ticker,
            user_id=task.user_id,
            phase=task.phase,
            agent=task.agent,
            completion_type=completion,
            error=error,
            error_type=error_type,
            failed_to_invoke=failed_to_invoke,
        )
        result = await self._invoker.invoke(COORDINATOR_FUNCTION, signal.to_payload())
        if result.ok:
            return {"success": True, "notified": completion.value}

        logger.error(
            "Could not notify coordinator of %s from %s for %s: %s",
            completion, task.agent, task.analysis_id, result.error,
        )
        self._store.append_to_array(
            task.analysis_id,
            "messages",
            {
                "agent": task.agent,
                "type": NOTIFICATION_FAILED,
                "message": f"{completion} notification failed: {result.error}",
                "timestamp": self._clock().isoformat(),
            },
        )
        return {"success": False, "error": result.error}

    # ------------------------------------------------------------------
    # Failure
    # ------------------------------------------------------------------

    async def _fail(
        self,
        task: AgentTask,
        error: str,
        error_type: ErrorType | None = None,
    ) -> dict:
        etype = classify_error(error, error_type, default=ErrorType.AI_ERROR)
        if not self._store.set_step_status(
            task.analysis_id,
            task.phase,
            task.agent,
            {StepStatus.PENDING, StepStatus.RUNNING},
            StepStatus.ERROR,
            error=error,
            error_type=etype,
        ):
            logger.info("%s of %s already finished; not reporting failure", task.agent, task.analysis_id)
            return {"success": False, "error": error, "errorType": etype.value}

        self._store.merge_field(
            task.analysis_id,
            f"agent_insights.{task.agent}_error",
            {
                "message": error,
                "type": etype.value,
                "attempt": task.attempt,
                "timestamp": self._clock().isoformat(),
            },
        )
        await self._notify(task, CompletionType.AGENT_ERROR, error=error, error_type=etype)
        return {"success": False, "error": error, "errorType": etype.value}

    async def _on_lease_expired(self, task: AgentTask) -> None:
        record = self._store.get_run(task.analysis_id)
        if record is None or not record.is_active:
            return
        step = record.step(task.phase, task.agent)
        if step is None or step.status not in (StepStatus.PENDING, StepStatus.RUNNING):
            return
        if step.attempt > task.attempt:
            return

        if task.retry.can_retry:
            retry = task.with_retry(task.retry.next_attempt())
            logger.warning(
                "Re-invoking %s for %s (attempt %d of %d)",
                task.agent, task.analysis_id, retry.attempt, task.retry.max_retries,
            )
            result = await self._invoker.invoke(task.retry.function_name, retry.to_payload())
            if not result.ok:
                await self._fail(task, f"Retry invocation failed: {result.error}")
            return

        await self._fail(
            task, f"Agent timed out after {task.attempt + 1} attempts", ErrorType.TIMEOUT
        )
