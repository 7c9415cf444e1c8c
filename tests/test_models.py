from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tradeflow.models.envelope import (
    AgentSignal,
    AgentTask,
    CompletionType,
    RetryEnvelope,
)
from tradeflow.models.run import (
    AnalysisRecord,
    DebateRound,
    ErrorType,
    Phase,
    RunStatus,
    StepStatus,
    WorkflowStep,
    validate_run_transition,
    validate_step_transition,
)
from tradeflow.models.settings import RunSettings


# ------------------------------------------------------------------
# Status transitions
# ------------------------------------------------------------------


class TestTransitions:
    def test_run_moves_forward_only(self) -> None:
        assert validate_run_transition(RunStatus.PENDING, RunStatus.RUNNING)
        assert validate_run_transition(RunStatus.RUNNING, RunStatus.COMPLETED)
        assert not validate_run_transition(RunStatus.COMPLETED, RunStatus.RUNNING)
        assert not validate_run_transition(RunStatus.CANCELLED, RunStatus.RUNNING)

    def test_error_can_resume(self) -> None:
        assert validate_run_transition(RunStatus.ERROR, RunStatus.RUNNING)
        assert not validate_run_transition(RunStatus.ERROR, RunStatus.COMPLETED)

    def test_step_transitions(self) -> None:
        assert validate_step_transition(StepStatus.PENDING, StepStatus.RUNNING)
        assert validate_step_transition(StepStatus.RUNNING, StepStatus.PENDING)
        assert validate_step_transition(StepStatus.COMPLETED, StepStatus.PENDING)
        assert not validate_step_transition(StepStatus.COMPLETED, StepStatus.ERROR)


# ------------------------------------------------------------------
# AnalysisRecord
# ------------------------------------------------------------------


class TestAnalysisRecord:
    def _record(self) -> AnalysisRecord:
        return AnalysisRecord(
            id="run-1",
            ticker="AAPL",
            user_id="u1",
            status=RunStatus.RUNNING,
            workflow_steps=[
                WorkflowStep(Phase.ANALYSIS, "market-analyst", "agent-market-analyst"),
                WorkflowStep(
                    Phase.RESEARCH,
                    "bull-researcher",
                    "agent-bull-researcher",
                    status=StepStatus.ERROR,
                    error="boom",
                    error_type=ErrorType.AI_ERROR,
                ),
            ],
            debate_rounds=[
                DebateRound(1, bull_text="up", bear_text="down"),
                DebateRound(2, bull_text="up again"),
            ],
            created_at=datetime(2025, 6, 2, tzinfo=timezone.utc),
        )

    def test_lookups(self) -> None:
        record = self._record()
        assert record.is_active
        assert record.step("research", "bull-researcher").error == "boom"
        assert record.step(Phase.TRADING, "trader") is None
        assert [s.agent for s in record.steps_for(Phase.ANALYSIS)] == ["market-analyst"]

    def test_only_two_sided_rounds_are_complete(self) -> None:
        record = self._record()
        assert [r.round_number for r in record.complete_rounds()] == [1]
        assert record.debate_round(2).bull_text == "up again"
        assert record.debate_round(3) is None

    def test_to_dict_uses_camel_case(self) -> None:
        body = self._record().to_dict()
        assert body["userId"] == "u1"
        assert body["currentPhase"] == "analysis"
        assert body["workflowSteps"][1]["errorType"] == "ai_error"
        assert body["debateRounds"][0]["roundNumber"] == 1
        assert body["createdAt"] == "2025-06-02T00:00:00+00:00"
        assert body["completedAt"] is None


# ------------------------------------------------------------------
# Envelopes
# ------------------------------------------------------------------


class TestRetryEnvelope:
    def test_first_attempt(self) -> None:
        env = RetryEnvelope.first("agent-trader", max_retries=3, timeout_ms=1000)
        assert env.attempt == 0
        assert env.can_retry
        assert env.original_start_time is not None

    def test_retry_attempts_remaining(self) -> None:
        env = RetryEnvelope("agent-trader", attempt=2, max_retries=3)
        assert env.next_attempt().attempt == 3
        assert not env.next_attempt().can_retry

    def test_wire_format(self) -> None:
        started = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)
        env = RetryEnvelope("agent-trader", 1, 3, 5000, started)
        data = env.to_dict()
        assert data == {
            "attempt": 1,
            "maxRetries": 3,
            "timeoutMs": 5000,
            "originalStartTime": "2025-06-02T12:00:00+00:00",
            "functionName": "agent-trader",
        }
        assert RetryEnvelope.from_dict(data) == env


class TestAgentTask:
    def test_payload_omits_absent_fields(self) -> None:
        task = AgentTask("run-1", "AAPL", "u1", "trading", "trader")
        assert task.to_payload() == {
            "analysisId": "run-1",
            "ticker": "AAPL",
            "userId": "u1",
            "phase": "trading",
            "agent": "trader",
        }
        assert task.attempt == 0

    def test_from_payload_with_retry(self) -> None:
        task = AgentTask.from_payload(
            {
                "analysisId": "run-1",
                "ticker": "AAPL",
                "userId": "u1",
                "phase": "research",
                "agent": "bear-researcher",
                "debateRound": "2",
                "_retry": {"attempt": 1, "functionName": "agent-bear-researcher"},
            }
        )
        assert task.debate_round == 2
        assert task.attempt == 1
        assert task.retry.max_retries == 3

    def test_missing_required_key(self) -> None:
        with pytest.raises(KeyError):
            AgentTask.from_payload({"analysisId": "run-1", "phase": "trading"})


class TestAgentSignal:
    def test_error_signal(self) -> None:
        signal = AgentSignal.from_payload(
            {
                "analysisId": "run-1",
                "phase": "risk",
                "agent": "safe-analyst",
                "completionType": "agent_error",
                "error": "quota exceeded",
                "errorType": "rate_limit",
            }
        )
        assert signal.completion_type == CompletionType.AGENT_ERROR
        assert signal.error_type == ErrorType.RATE_LIMIT
        payload = signal.to_payload()
        assert payload["errorType"] == "rate_limit"
        assert "failedToInvoke" not in payload

    def test_unknown_completion_type(self) -> None:
        with pytest.raises(ValueError):
            AgentSignal.from_payload(
                {"analysisId": "r", "phase": "risk", "agent": "safe-analyst", "completionType": "meh"}
            )


# ------------------------------------------------------------------
# RunSettings
# ------------------------------------------------------------------


class TestRunSettings:
    def test_defaults(self) -> None:
        settings = RunSettings.from_dict(None)
        assert settings.debate_rounds == 2
        assert settings.max_tokens_for("trading") == 1200

    def test_trigger_aliases(self) -> None:
        settings = RunSettings.from_dict(
            {"research_debate_rounds": 4, "analysis_history_days": 90, "risk_max_tokens": 800}
        )
        assert settings.debate_rounds == 4
        assert settings.history_days == 90
        assert settings.max_tokens_for(Phase.RISK) == 800

    def test_rounds_floor_at_one(self) -> None:
        assert RunSettings.from_dict({"debate_rounds": 0}).debate_rounds == 1

    def test_configured_default_rounds(self) -> None:
        assert RunSettings.from_dict({}, default_debate_rounds=3).debate_rounds == 3
