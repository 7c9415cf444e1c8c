"""The workflow state machine.

The coordinator keeps nothing in memory between calls: every request reads
the run from the store, decides, and writes back through the conditional
primitives. Duplicate or concurrent signals are made harmless by those
compare-and-set writes (step claims and run status), not by local locking.

Every public entry point returns a plain ``{"success": ..., ...}`` dict; the
HTTP layer always answers 200 so logical failures are never mistaken for
transport failures by the caller's retry loop.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from tradeflow.models.envelope import AgentSignal, AgentTask, CompletionType
from tradeflow.models.run import (
    ACTIVE_RUN_STATUSES,
    AnalysisRecord,
    Phase,
    RunStatus,
    StepStatus,
)
from tradeflow.models.settings import DEFAULT_DEBATE_ROUNDS, RunSettings
from tradeflow.portfolio import PortfolioSource
from tradeflow.registry.base import WorkflowStore
from tradeflow.workflow import sequencer
from tradeflow.workflow.debate import DebateEngine
from tradeflow.workflow.errors import WorkflowError
from tradeflow.invoker import BaseInvoker
from tradeflow.workflow.handoff import HandoffOutcome, claim, hand_off, invoke_claimed
from tradeflow.workflow.health import check_phase_health, classify_error, should_continue_after_error
from tradeflow.workflow.resume import STALE_AFTER, find_resume_target

logger = logging.getLogger(__name__)

TICKER_PATTERN = re.compile(r"^[A-Z0-9.\-]+$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Coordinator:
    def __init__(
        self,
        store: WorkflowStore,
        invoker: BaseInvoker,
        debate: DebateEngine,
        *,
        portfolio_source: PortfolioSource | None = None,
        default_debate_rounds: int = DEFAULT_DEBATE_ROUNDS,
        stale_after: timedelta = STALE_AFTER,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._invoker = invoker
        self._debate = debate
        self._portfolio_source = portfolio_source
        self._default_debate_rounds = default_debate_rounds
        self._stale_after = stale_after
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Request dispatch
    # ------------------------------------------------------------------

    async def handle_request(self, body: dict) -> dict:
        """Route a trigger, resume, cancel or agent-completion envelope."""
        action = body.get("action")
        try:
            if action == "start-analysis":
                return await self.start_analysis(
                    body.get("ticker", ""), body.get("userId", ""), body.get("settings")
                )
            if action in ("retry", "reactivate"):
                return await self.resume(body.get("analysisId", ""), body.get("userId"), action)
            if action == "cancel":
                return self.cancel(body.get("analysisId", ""), body.get("userId"))
            if "completionType" in body:
                return await self.on_agent_signal(AgentSignal.from_payload(body))
            return {"success": False, "error": f"Unknown action: {action}"}
        except (WorkflowError, KeyError, ValueError) as e:
            logger.warning("Rejected coordinator request %s: %s", action or "signal", e)
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.exception("Coordinator failed handling %s", action or "signal")
            return {"success": False, "error": f"Coordinator error: {e}"}

    # ------------------------------------------------------------------
    # Trigger / cancel
    # ------------------------------------------------------------------

    async def start_analysis(self, ticker: str, user_id: str, settings: dict | None = None) -> dict:
        ticker = (ticker or "").strip().upper()
        if not TICKER_PATTERN.match(ticker):
            return {"success": False, "error": f"Invalid ticker: {ticker!r}"}
        if not user_id:
            return {"success": False, "error": "userId is required"}

        active = self._store.find_active_run_ids(user_id, ticker)
        if active:
            keep, *older = active
            for old in older:
                self._store.set_run_status(
                    old, ACTIVE_RUN_STATUSES, RunStatus.ERROR, "Analysis superseded by newer request"
                )
            logger.info("Reusing active analysis %s for %s", keep, ticker)
            return {
                "success": True,
                "analysisId": keep,
                "reused": True,
                "message": f"Analysis for {ticker} already in progress",
            }

        run_settings = RunSettings.from_dict(settings, self._default_debate_rounds)
        run_id = self._store.create_run(
            ticker, user_id, run_settings.to_dict(), sequencer.initial_steps()
        )
        self._message(run_id, "system", f"Analysis started for {ticker}")
        self._store.set_run_status(run_id, {RunStatus.PENDING}, RunStatus.RUNNING)

        first = sequencer.first_agent(Phase.ANALYSIS)
        result = await self._launch(AgentTask(run_id, ticker, user_id, Phase.ANALYSIS.value, first))
        if not result["success"]:
            return result
        logger.info("Started analysis %s for %s", run_id, ticker)
        return {"success": True, "analysisId": run_id, "message": f"Analysis started for {ticker}"}

    def cancel(self, analysis_id: str, user_id: str | None = None) -> dict:
        record = self._load(analysis_id, user_id)
        if record is None:
            return {"success": False, "error": f"Analysis not found: {analysis_id}"}
        if self._store.set_run_status(
            analysis_id, ACTIVE_RUN_STATUSES, RunStatus.CANCELLED, "Cancelled by user"
        ):
            self._message(analysis_id, "system", "Analysis cancelled")
            logger.info("Cancelled analysis %s", analysis_id)
            return {"success": True, "analysisId": analysis_id, "status": RunStatus.CANCELLED.value}
        return {"success": False, "error": f"Analysis is {record.status}; cannot cancel"}

    # ------------------------------------------------------------------
    # Agent completion signals
    # ------------------------------------------------------------------

    async def on_agent_signal(self, signal: AgentSignal) -> dict:
        record = self._store.get_run(signal.analysis_id)
        if record is None:
            return {"success": False, "error": f"Analysis not found: {signal.analysis_id}"}

        last = sequencer.is_last_in_phase(signal.phase, signal.agent)
        phase = Phase(signal.phase)
        if not record.is_active:
            logger.info(
                "Ignoring %s from %s: analysis %s is %s",
                signal.completion_type, signal.agent, record.id, record.status,
            )
            return {"success": True, "message": f"Analysis is {record.status}; signal ignored"}

        completion = signal.completion_type
        if completion == CompletionType.NORMAL and not last:
            return {"success": True, "message": "Successor already invoked by agent"}
        if completion in (CompletionType.NORMAL, CompletionType.LAST_IN_PHASE):
            return await self._complete_phase(record, phase)
        if completion == CompletionType.FALLBACK_INVOCATION_FAILED:
            return await self._fallback_invoke(record, signal)
        if completion == CompletionType.AGENT_ERROR:
            return await self._handle_agent_error(record, signal)
        return {"success": False, "error": f"Unknown completion type: {signal.completion_type}"}

    async def _handle_agent_error(self, record: AnalysisRecord, signal: AgentSignal) -> dict:
        phase = Phase(signal.phase)
        agent = signal.agent
        error = signal.error or "Unknown error"
        error_type = classify_error(error, signal.error_type)
        logger.warning("Agent %s failed for %s (%s): %s", agent, record.id, error_type, error)

        if agent == sequencer.RESEARCH_MANAGER:
            self._message(record.id, "warning", "Research manager failed; proceeding with debate output")
            return await self._complete_phase(record, Phase.RESEARCH)

        if agent in sequencer.DEBATERS:
            rounds = DebateEngine.complete_round_count(record)
            if rounds == 0:
                return self._fail_run(
                    record.id,
                    f"Research phase failed - no debate rounds completed due to {agent} failure",
                )
            self._message(
                record.id,
                "warning",
                f"{agent} failed; moving to research manager with {rounds} complete round(s)",
            )
            return await self._launch(self._task(record, Phase.RESEARCH, sequencer.RESEARCH_MANAGER))

        last = sequencer.is_last_in_phase(phase, agent)
        proceed, reason = should_continue_after_error(agent, error_type, last)
        if not proceed:
            logger.error("Stopping analysis %s: %s", record.id, reason)
            return self._fail_run(record.id, f"{agent} failed: {error}")
        if last:
            return await self._complete_phase(record, phase)
        nxt = sequencer.next_agent(phase, agent)
        self._message(record.id, "warning", f"{agent} failed ({error_type}); continuing with {nxt}")
        return await self._launch(self._task(record, phase, nxt))

    async def _fallback_invoke(self, record: AnalysisRecord, signal: AgentSignal) -> dict:
        target = signal.failed_to_invoke
        if not target:
            target = sequencer.next_agent(signal.phase, signal.agent)
            if target == sequencer.LAST_IN_PHASE:
                return await self._complete_phase(record, Phase(signal.phase))
        target_phase = sequencer.phase_of(target)
        debate_round = DebateEngine.current_round(record) if target in sequencer.DEBATERS else None
        logger.info("Fallback invocation of %s for %s", target, record.id)
        return await self._launch(self._task(record, target_phase, target, debate_round))

    # ------------------------------------------------------------------
    # Phase transitions
    # ------------------------------------------------------------------

    async def _complete_phase(self, record: AnalysisRecord, phase: Phase) -> dict:
        health = check_phase_health(record, phase)
        if not health.can_proceed:
            if health.critical_failures or phase in (Phase.RESEARCH, Phase.TRADING):
                return self._fail_run(record.id, health.reason)
            logger.warning("Phase %s of %s stalled: %s", phase, record.id, health.reason)
            return {"success": True, "stalled": True, "message": f"Phase {phase} stalled: {health.reason}"}

        nxt = sequencer.next_phase(phase)
        if nxt is None:
            return self._finish(record)
        return await self._enter_phase(record, nxt)

    async def _enter_phase(self, record: AnalysisRecord, phase: Phase) -> dict:
        current = self._store.get_run(record.id)
        if current is None or not current.is_active:
            status = current.status if current else "missing"
            return {"success": True, "message": f"Analysis is {status}; not advancing"}
        if sequencer.PHASES.index(current.current_phase) > sequencer.PHASES.index(phase):
            return {"success": True, "message": f"Analysis already past {phase}"}

        self._store.set_current_phase(record.id, phase)
        logger.info("Analysis %s entering %s phase", record.id, phase)

        if phase == Phase.RESEARCH:
            round_number = self._debate.start(record.id)
            return await self._launch(
                self._task(current, phase, sequencer.BULL_RESEARCHER, round_number)
            )
        if phase == Phase.PORTFOLIO:
            return await self._route_portfolio(current)
        return await self._launch(self._task(current, phase, sequencer.first_agent(phase)))

    async def _route_portfolio(self, record: AnalysisRecord) -> dict:
        """Snapshot account data centrally, then start the portfolio manager once."""
        task = self._task(record, Phase.PORTFOLIO, sequencer.PORTFOLIO_MANAGER)
        if not claim(self._store, task):
            return {"success": True, "message": "Portfolio manager already started"}

        if self._portfolio_source is not None:
            try:
                snapshot = self._portfolio_source.snapshot(record.user_id, record.ticker)
            except Exception as e:
                logger.exception("Portfolio snapshot failed for %s", record.id)
                self._store.set_step_status(
                    record.id, Phase.PORTFOLIO, task.agent, {StepStatus.RUNNING}, StepStatus.PENDING
                )
                return self._fail_run(record.id, f"Failed to load portfolio data: {e}")
            self._store.merge_field(record.id, "portfolio", snapshot.to_dict())

        outcome, error = await invoke_claimed(self._store, self._invoker, task)
        if outcome == HandoffOutcome.INVOKE_FAILED:
            return self._fail_run(record.id, f"Failed to invoke {task.agent}: {error}")
        return {"success": True, "message": f"Invoked {task.agent}", "invoked": task.agent}

    def _finish(self, record: AnalysisRecord) -> dict:
        if self._store.set_run_status(record.id, {RunStatus.RUNNING}, RunStatus.COMPLETED):
            self._message(record.id, "system", "Analysis completed")
            logger.info("Analysis %s completed", record.id)
            return {"success": True, "analysisId": record.id, "status": RunStatus.COMPLETED.value}
        return {"success": True, "message": "Analysis already finalised"}

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    async def resume(self, analysis_id: str, user_id: str | None, action: str = "retry") -> dict:
        """Restart a run from its highest-priority failed or stale step."""
        record = self._load(analysis_id, user_id)
        if record is None:
            return {"success": False, "error": f"Analysis not found: {analysis_id}"}
        if action == "retry" and record.status != RunStatus.ERROR:
            return {"success": False, "error": f"Analysis is {record.status}, not in error state"}
        if record.status not in (RunStatus.ERROR, RunStatus.RUNNING, RunStatus.PENDING):
            return {"success": False, "error": f"Cannot resume a {record.status} analysis"}

        target = find_resume_target(record, self._clock(), self._stale_after)
        if target is None:
            in_flight = [
                s.agent for s in record.steps_for(record.current_phase) if s.status == StepStatus.RUNNING
            ]
            if in_flight and record.status == RunStatus.RUNNING:
                return {
                    "success": True,
                    "analysisId": analysis_id,
                    "message": f"Nothing to resume; still running: {', '.join(in_flight)}",
                }
            if record.status == RunStatus.RUNNING:
                # Every step of the phase finished but the transition signal was lost.
                return await self._complete_phase(record, record.current_phase)
            return {"success": False, "error": "No failed or stale agents to resume"}

        if record.status == RunStatus.ERROR and not self._store.set_run_status(
            analysis_id, {RunStatus.ERROR}, RunStatus.RUNNING
        ):
            return {"success": False, "error": "Analysis status changed concurrently"}
        if not self._store.set_step_status(
            analysis_id,
            target.phase,
            target.agent,
            {StepStatus.ERROR, StepStatus.PENDING, StepStatus.RUNNING},
            StepStatus.PENDING,
            attempt=0,
        ):
            return {"success": False, "error": f"{target.agent} is no longer resumable"}
        if target.phase != record.current_phase:
            self._store.set_current_phase(analysis_id, target.phase)

        self._message(analysis_id, "system", f"Resuming from {target.agent}: {target.reason}")
        logger.info("Resuming %s from %s (%s)", analysis_id, target.agent, target.reason)

        if target.agent == sequencer.PORTFOLIO_MANAGER:
            result = await self._route_portfolio(record)
        else:
            if target.agent in sequencer.DEBATERS and record.current_debate_round is None:
                self._debate.start(analysis_id)
            debate_round = (
                DebateEngine.current_round(record) if target.agent in sequencer.DEBATERS else None
            )
            result = await self._launch(self._task(record, target.phase, target.agent, debate_round))
        return {**result, "analysisId": analysis_id, "resumedAgent": target.agent}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _launch(self, task: AgentTask) -> dict:
        outcome, error = await hand_off(self._store, self._invoker, task)
        if outcome == HandoffOutcome.ALREADY_CLAIMED:
            return {"success": True, "message": f"{task.agent} already started"}
        if outcome == HandoffOutcome.INVOKE_FAILED:
            return self._fail_run(task.analysis_id, f"Failed to invoke {task.agent}: {error}")
        return {"success": True, "message": f"Invoked {task.agent}", "invoked": task.agent}

    def _fail_run(self, run_id: str, reason: str) -> dict:
        if self._store.set_run_status(run_id, ACTIVE_RUN_STATUSES, RunStatus.ERROR, reason):
            self._message(run_id, "error", reason)
            logger.error("Analysis %s failed: %s", run_id, reason)
        return {"success": False, "analysisId": run_id, "status": RunStatus.ERROR.value, "error": reason}

    def _load(self, analysis_id: str, user_id: str | None) -> AnalysisRecord | None:
        record = self._store.get_run(analysis_id) if analysis_id else None
        if record is None or (user_id and record.user_id != user_id):
            return None
        return record

    def _message(self, run_id: str, kind: str, text: str) -> None:
        self._store.append_to_array(
            run_id,
            "messages",
            {
                "agent": "coordinator",
                "type": kind,
                "message": text,
                "timestamp": self._clock().isoformat(),
            },
        )

    @staticmethod
    def _task(
        record: AnalysisRecord,
        phase: Phase,
        agent: str,
        debate_round: int | None = None,
    ) -> AgentTask:
        return AgentTask(
            analysis_id=record.id,
            ticker=record.ticker,
            user_id=record.user_id,
            phase=Phase(phase).value,
            agent=agent,
            debate_round=debate_round,
        )
