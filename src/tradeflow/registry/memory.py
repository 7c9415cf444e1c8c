"""In-process record store.

Same contract as the PostgreSQL registry; a single lock makes every
primitive atomic. Used by the ``simulate`` command and the test suite.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from tradeflow.models.run import (
    ACTIVE_RUN_STATUSES,
    AnalysisRecord,
    DebateRound,
    ErrorType,
    Phase,
    RunStatus,
    StepStatus,
    WorkflowStep,
)
from tradeflow.registry.base import WorkflowStore, split_path

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRegistry(WorkflowStore):
    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._runs: dict[str, AnalysisRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock or _utcnow

    def _touch(self, record: AnalysisRecord) -> None:
        record.version += 1
        record.updated_at = self._clock()

    # ------------------------------------------------------------------
    # Atomic primitives
    # ------------------------------------------------------------------

    @staticmethod
    def _parent(record: AnalysisRecord, parts: list[str]) -> tuple[dict, dict]:
        """Return (document root, container holding the leaf), creating dicts on the way."""
        root = {
            "agent_insights": record.agent_insights,
            "messages": record.messages,
            "portfolio": record.portfolio,
        }
        target = root
        for key in parts[:-1]:
            nxt = target.get(key)
            if not isinstance(nxt, dict):
                nxt = {}
                target[key] = nxt
            target = nxt
        return root, target

    @staticmethod
    def _write_back(record: AnalysisRecord, root: dict) -> None:
        record.agent_insights = root["agent_insights"]
        record.messages = root["messages"]
        record.portfolio = root["portfolio"]

    def merge_field(self, run_id: str, path: str, value: object) -> bool:
        parts = split_path(path)
        with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                return False
            root, target = self._parent(record, parts)
            existing = target.get(parts[-1])
            if isinstance(value, dict) and isinstance(existing, dict):
                existing.update(copy.deepcopy(value))
            else:
                target[parts[-1]] = copy.deepcopy(value)
            self._write_back(record, root)
            self._touch(record)
            return True

    def append_to_array(self, run_id: str, path: str, element: object) -> bool:
        parts = split_path(path)
        with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                return False
            root, target = self._parent(record, parts)
            existing = target.get(parts[-1])
            if not isinstance(existing, list):
                existing = []
                target[parts[-1]] = existing
            existing.append(copy.deepcopy(element))
            self._write_back(record, root)
            self._touch(record)
            return True

    def set_step_status(
        self,
        run_id: str,
        phase: Phase | str,
        agent: str,
        from_statuses: Iterable[StepStatus],
        to_status: StepStatus,
        *,
        error: str | None = None,
        error_type: ErrorType | None = None,
        attempt: int | None = None,
    ) -> bool:
        allowed = set(from_statuses)
        with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                return False
            step = record.step(phase, agent)
            if step is None or step.status not in allowed:
                return False
            step.status = to_status
            step.error = error
            step.error_type = error_type
            if attempt is not None:
                step.attempt = attempt
            step.updated_at = self._clock()
            self._touch(record)
            return True

    def set_run_status(
        self,
        run_id: str,
        from_statuses: Iterable[RunStatus],
        to_status: RunStatus,
        reason: str | None = None,
    ) -> bool:
        allowed = set(from_statuses)
        with self._lock:
            record = self._runs.get(run_id)
            if record is None or record.status not in allowed:
                return False
            record.status = to_status
            record.error_reason = reason
            if to_status in (RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.CANCELLED):
                record.completed_at = self._clock()
            self._touch(record)
            return True

    def get_run(self, run_id: str) -> AnalysisRecord | None:
        with self._lock:
            record = self._runs.get(run_id)
            return copy.deepcopy(record) if record is not None else None

    # ------------------------------------------------------------------
    # Typed repository methods
    # ------------------------------------------------------------------

    def create_run(
        self,
        ticker: str,
        user_id: str,
        settings: dict,
        steps: list[tuple[Phase, str, str]],
    ) -> str:
        run_id = str(uuid.uuid4())
        now = self._clock()
        record = AnalysisRecord(
            id=run_id,
            ticker=ticker,
            user_id=user_id,
            settings=copy.deepcopy(settings),
            workflow_steps=[
                WorkflowStep(phase=phase, agent=agent, function_ref=fn, updated_at=now)
                for phase, agent, fn in steps
            ],
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._runs[run_id] = record
        logger.debug("Created run %s for %s", run_id, ticker)
        return run_id

    def find_active_run_ids(self, user_id: str, ticker: str) -> list[str]:
        with self._lock:
            matches = [
                r
                for r in self._runs.values()
                if r.user_id == user_id and r.ticker == ticker and r.status in ACTIVE_RUN_STATUSES
            ]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return [r.id for r in matches]

    def find_stale_run_ids(self, updated_before: datetime) -> list[str]:
        with self._lock:
            return [
                r.id
                for r in self._runs.values()
                if r.status == RunStatus.RUNNING and r.updated_at is not None and r.updated_at < updated_before
            ]

    def set_current_phase(self, run_id: str, phase: Phase) -> None:
        with self._lock:
            record = self._runs.get(run_id)
            if record is not None:
                record.current_phase = Phase(phase)
                self._touch(record)

    def open_debate_round(self, run_id: str, round_number: int) -> bool:
        with self._lock:
            record = self._runs.get(run_id)
            if record is None or record.debate_round(round_number) is not None:
                return False
            record.debate_rounds.append(DebateRound(round_number=round_number))
            record.debate_rounds.sort(key=lambda r: r.round_number)
            self._touch(record)
            return True

    def set_debate_side(
        self,
        run_id: str,
        round_number: int,
        side: str,
        text: str,
        points: list[str],
    ) -> bool:
        if side not in ("bull", "bear"):
            raise ValueError(f"Invalid debate side: {side!r}")
        with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                return False
            rnd = record.debate_round(round_number)
            if rnd is None:
                return False
            if side == "bull":
                if rnd.bull_text:
                    return False
                rnd.bull_text = text
                rnd.bull_points = list(points)
            else:
                if rnd.bear_text or not rnd.bull_text:
                    return False
                rnd.bear_text = text
                rnd.bear_points = list(points)
            self._touch(record)
            return True

    def advance_debate_round(self, run_id: str, from_round: int | None, to_round: int) -> bool:
        with self._lock:
            record = self._runs.get(run_id)
            if record is None or record.current_debate_round != from_round:
                return False
            record.current_debate_round = to_round
            self._touch(record)
            return True

    def set_decision(self, run_id: str, decision: str, confidence: float) -> None:
        with self._lock:
            record = self._runs.get(run_id)
            if record is not None:
                record.decision = decision
                record.confidence = confidence
                self._touch(record)
