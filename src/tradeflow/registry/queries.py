from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterable
from datetime import datetime

from tradeflow.models.run import (
    AnalysisRecord,
    DebateRound,
    ErrorType,
    Phase,
    RunStatus,
    StepStatus,
    WorkflowStep,
)
from tradeflow.registry.base import WorkflowStore, split_path
from tradeflow.registry.db import Database

logger = logging.getLogger(__name__)

_DEBATE_COLUMNS = {
    "bull": ("bull_text", "bull_points", "TRUE"),
    "bear": ("bear_text", "bear_points", "bull_text IS NOT NULL"),
}


def _json(value: object) -> str:
    return json.dumps(value, default=str)


def _values(statuses: Iterable[StepStatus | RunStatus]) -> list[str]:
    return [str(s) for s in statuses]


class Registry(WorkflowStore):
    """Query layer bridging the workflow models and the tradeflow schema.

    Each write is one statement, so PostgreSQL row locking gives the
    atomicity; conditional writes report a lost race through RETURNING.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Document primitives
    # ------------------------------------------------------------------

    def merge_field(self, run_id: str, path: str, value: object) -> bool:
        parts = split_path(path)
        if isinstance(value, dict):
            query = """
                UPDATE tradeflow.analysis_runs
                SET document = jsonb_set(
                        document, %s::text[],
                        CASE WHEN jsonb_typeof(document #> %s::text[]) = 'object'
                             THEN (document #> %s::text[]) || %s::jsonb
                             ELSE %s::jsonb END,
                        true),
                    version = version + 1,
                    updated_at = NOW()
                WHERE id = %s
                RETURNING id
            """
            payload = _json(value)
            params = (parts, parts, parts, payload, payload, run_id)
        else:
            query = """
                UPDATE tradeflow.analysis_runs
                SET document = jsonb_set(document, %s::text[], %s::jsonb, true),
                    version = version + 1,
                    updated_at = NOW()
                WHERE id = %s
                RETURNING id
            """
            params = (parts, _json(value), run_id)
        return bool(self._db.execute(query, params))

    def append_to_array(self, run_id: str, path: str, element: object) -> bool:
        parts = split_path(path)
        payload = _json(element)
        rows = self._db.execute(
            """
            UPDATE tradeflow.analysis_runs
            SET document = jsonb_set(
                    document, %s::text[],
                    CASE WHEN jsonb_typeof(document #> %s::text[]) = 'array'
                         THEN (document #> %s::text[]) || jsonb_build_array(%s::jsonb)
                         ELSE jsonb_build_array(%s::jsonb) END,
                    true),
                version = version + 1,
                updated_at = NOW()
            WHERE id = %s
            RETURNING id
            """,
            (parts, parts, parts, payload, payload, run_id),
        )
        return bool(rows)

    # ------------------------------------------------------------------
    # Status compare-and-set
    # ------------------------------------------------------------------

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
        rows = self._db.execute(
            """
            WITH step AS (
                UPDATE tradeflow.workflow_steps
                SET status = %s,
                    error = %s,
                    error_type = %s,
                    attempt = COALESCE(%s::int, attempt),
                    version = version + 1,
                    updated_at = NOW()
                WHERE run_id = %s AND phase = %s AND agent = %s
                  AND status = ANY(%s::text[])
                RETURNING run_id
            )
            UPDATE tradeflow.analysis_runs r
            SET updated_at = NOW(), version = r.version + 1
            FROM step
            WHERE r.id = step.run_id
            RETURNING r.id
            """,
            (
                str(to_status),
                error,
                str(error_type) if error_type else None,
                attempt,
                run_id,
                str(phase),
                agent,
                _values(from_statuses),
            ),
        )
        if not rows:
            logger.debug(
                "Step %s/%s of %s not moved to %s (precondition failed)",
                phase, agent, run_id, to_status,
            )
        return bool(rows)

    def set_run_status(
        self,
        run_id: str,
        from_statuses: Iterable[RunStatus],
        to_status: RunStatus,
        reason: str | None = None,
    ) -> bool:
        terminal = to_status in (RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.CANCELLED)
        rows = self._db.execute(
            """
            UPDATE tradeflow.analysis_runs
            SET status = %s,
                error_reason = %s,
                completed_at = CASE WHEN %s THEN NOW() ELSE completed_at END,
                version = version + 1,
                updated_at = NOW()
            WHERE id = %s AND status = ANY(%s::text[])
            RETURNING id
            """,
            (str(to_status), reason, terminal, run_id, _values(from_statuses)),
        )
        return bool(rows)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(
        self,
        ticker: str,
        user_id: str,
        settings: dict,
        steps: list[tuple[Phase, str, str]],
    ) -> str:
        run_id = str(uuid.uuid4())
        with self._db.transaction() as cur:
            cur.execute(
                "INSERT INTO tradeflow.analysis_runs (id, ticker, user_id, settings) "
                "VALUES (%s, %s, %s, %s::jsonb)",
                (run_id, ticker, user_id, _json(settings)),
            )
            for position, (phase, agent, function_ref) in enumerate(steps):
                cur.execute(
                    "INSERT INTO tradeflow.workflow_steps "
                    "(run_id, phase, agent, position, function_ref) "
                    "VALUES (%s, %s, %s, %s, %s)",
                    (run_id, str(phase), agent, position, function_ref),
                )
        logger.info("Created analysis run %s for %s (%d steps)", run_id, ticker, len(steps))
        return run_id

    def get_run(self, run_id: str) -> AnalysisRecord | None:
        rows = self._db.execute(
            "SELECT id, ticker, user_id, status, current_phase, current_debate_round, "
            "decision, confidence, error_reason, settings, document, version, "
            "created_at, updated_at, completed_at "
            "FROM tradeflow.analysis_runs WHERE id = %s",
            (run_id,),
        )
        if not rows:
            return None
        r = rows[0]
        steps = self._db.execute(
            "SELECT phase, agent, function_ref, status, attempt, error, error_type, updated_at "
            "FROM tradeflow.workflow_steps WHERE run_id = %s ORDER BY position",
            (run_id,),
        )
        rounds = self._db.execute(
            "SELECT round_number, bull_text, bear_text, bull_points, bear_points "
            "FROM tradeflow.debate_rounds WHERE run_id = %s ORDER BY round_number",
            (run_id,),
        )
        document = r["document"] or {}
        return AnalysisRecord(
            id=str(r["id"]),
            ticker=r["ticker"],
            user_id=r["user_id"],
            status=RunStatus(r["status"]),
            current_phase=Phase(r["current_phase"]),
            current_debate_round=r["current_debate_round"],
            decision=r["decision"],
            confidence=float(r["confidence"]) if r["confidence"] is not None else None,
            error_reason=r["error_reason"],
            settings=r["settings"] or {},
            agent_insights=document.get("agent_insights") or {},
            messages=document.get("messages") or [],
            portfolio=document.get("portfolio"),
            version=r["version"],
            created_at=r["created_at"],
            updated_at=r["updated_at"],
            completed_at=r["completed_at"],
            workflow_steps=[
                WorkflowStep(
                    phase=Phase(s["phase"]),
                    agent=s["agent"],
                    function_ref=s["function_ref"],
                    status=StepStatus(s["status"]),
                    attempt=s["attempt"],
                    error=s["error"],
                    error_type=ErrorType(s["error_type"]) if s["error_type"] else None,
                    updated_at=s["updated_at"],
                )
                for s in steps
            ],
            debate_rounds=[
                DebateRound(
                    round_number=d["round_number"],
                    bull_text=d["bull_text"],
                    bear_text=d["bear_text"],
                    bull_points=d["bull_points"] or [],
                    bear_points=d["bear_points"] or [],
                )
                for d in rounds
            ],
        )

    def find_active_run_ids(self, user_id: str, ticker: str) -> list[str]:
        rows = self._db.execute(
            "SELECT id FROM tradeflow.analysis_runs "
            "WHERE user_id = %s AND ticker = %s AND status IN ('pending', 'running') "
            "ORDER BY created_at DESC",
            (user_id, ticker),
        )
        return [str(r["id"]) for r in rows]

    def find_stale_run_ids(self, updated_before: datetime) -> list[str]:
        rows = self._db.execute(
            "SELECT id FROM tradeflow.analysis_runs "
            "WHERE status = 'running' AND updated_at < %s "
            "ORDER BY updated_at",
            (updated_before,),
        )
        return [str(r["id"]) for r in rows]

    def set_current_phase(self, run_id: str, phase: Phase) -> None:
        self._db.execute(
            "UPDATE tradeflow.analysis_runs "
            "SET current_phase = %s, version = version + 1, updated_at = NOW() "
            "WHERE id = %s",
            (str(phase), run_id),
        )

    def set_decision(self, run_id: str, decision: str, confidence: float) -> None:
        self._db.execute(
            "UPDATE tradeflow.analysis_runs "
            "SET decision = %s, confidence = %s, version = version + 1, updated_at = NOW() "
            "WHERE id = %s",
            (decision, confidence, run_id),
        )

    # ------------------------------------------------------------------
    # Debate rounds
    # ------------------------------------------------------------------

    def open_debate_round(self, run_id: str, round_number: int) -> bool:
        rows = self._db.execute(
            "INSERT INTO tradeflow.debate_rounds (run_id, round_number) VALUES (%s, %s) "
            "ON CONFLICT (run_id, round_number) DO NOTHING "
            "RETURNING round_number",
            (run_id, round_number),
        )
        return bool(rows)

    def set_debate_side(
        self,
        run_id: str,
        round_number: int,
        side: str,
        text: str,
        points: list[str],
    ) -> bool:
        if side not in _DEBATE_COLUMNS:
            raise ValueError(f"Invalid debate side: {side!r}")
        text_col, points_col, guard = _DEBATE_COLUMNS[side]
        rows = self._db.execute(
            f"UPDATE tradeflow.debate_rounds "
            f"SET {text_col} = %s, {points_col} = %s::jsonb, "
            f"version = version + 1, updated_at = NOW() "
            f"WHERE run_id = %s AND round_number = %s AND {text_col} IS NULL AND {guard} "
            f"RETURNING round_number",
            (text, _json(points), run_id, round_number),
        )
        return bool(rows)

    def advance_debate_round(self, run_id: str, from_round: int | None, to_round: int) -> bool:
        rows = self._db.execute(
            "UPDATE tradeflow.analysis_runs "
            "SET current_debate_round = %s, version = version + 1, updated_at = NOW() "
            "WHERE id = %s AND current_debate_round IS NOT DISTINCT FROM %s::int "
            "RETURNING id",
            (to_round, run_id, from_round),
        )
        return bool(rows)
