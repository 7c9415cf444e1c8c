from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class Phase(StrEnum):
    ANALYSIS = "analysis"
    RESEARCH = "research"
    TRADING = "trading"
    RISK = "risk"
    PORTFOLIO = "portfolio"


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class ErrorType(StrEnum):
    RATE_LIMIT = "rate_limit"
    API_KEY = "api_key"
    AI_ERROR = "ai_error"
    DATA_FETCH = "data_fetch"
    TIMEOUT = "timeout"
    DATABASE = "database"
    OTHER = "other"


ACTIVE_RUN_STATUSES: frozenset[RunStatus] = frozenset({RunStatus.PENDING, RunStatus.RUNNING})
TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.CANCELLED}
)

# error -> running is the operator-initiated resume; everything else only moves forward.
RUN_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.ERROR, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.CANCELLED},
    RunStatus.ERROR: {RunStatus.RUNNING},
    RunStatus.COMPLETED: set(),
    RunStatus.CANCELLED: set(),
}

# completed -> pending only happens when the debate reopens a researcher for the next round.
STEP_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    StepStatus.PENDING: {StepStatus.RUNNING, StepStatus.COMPLETED, StepStatus.ERROR},
    StepStatus.RUNNING: {
        StepStatus.PENDING,
        StepStatus.RUNNING,
        StepStatus.COMPLETED,
        StepStatus.ERROR,
    },
    StepStatus.ERROR: {StepStatus.PENDING},
    StepStatus.COMPLETED: {StepStatus.PENDING},
}


def validate_run_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in RUN_TRANSITIONS.get(current, set())


def validate_step_transition(current: StepStatus, target: StepStatus) -> bool:
    return target in STEP_TRANSITIONS.get(current, set())


@dataclass
class WorkflowStep:
    """Persisted status of one (phase, agent) pair within a run."""

    phase: Phase
    agent: str
    function_ref: str
    status: StepStatus = StepStatus.PENDING
    attempt: int = 0
    error: str | None = None
    error_type: ErrorType | None = None
    updated_at: datetime | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.ERROR)


@dataclass
class DebateRound:
    round_number: int
    bull_text: str | None = None
    bear_text: str | None = None
    bull_points: list[str] = field(default_factory=list)
    bear_points: list[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        """A round only counts once both sides have written."""
        return bool(self.bull_text) and bool(self.bear_text)


@dataclass
class AnalysisRecord:
    """Aggregate root for one end-to-end run of the pipeline."""

    id: str
    ticker: str
    user_id: str
    status: RunStatus = RunStatus.PENDING
    current_phase: Phase = Phase.ANALYSIS
    workflow_steps: list[WorkflowStep] = field(default_factory=list)
    debate_rounds: list[DebateRound] = field(default_factory=list)
    agent_insights: dict = field(default_factory=dict)
    messages: list[dict] = field(default_factory=list)
    settings: dict = field(default_factory=dict)
    portfolio: dict | None = None
    decision: str | None = None
    confidence: float | None = None
    current_debate_round: int | None = None
    error_reason: str | None = None
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    def step(self, phase: Phase | str, agent: str) -> WorkflowStep | None:
        for s in self.workflow_steps:
            if s.phase == phase and s.agent == agent:
                return s
        return None

    def steps_for(self, phase: Phase | str) -> list[WorkflowStep]:
        return [s for s in self.workflow_steps if s.phase == phase]

    def complete_rounds(self) -> list[DebateRound]:
        return [r for r in self.debate_rounds if r.is_complete]

    def debate_round(self, round_number: int) -> DebateRound | None:
        for r in self.debate_rounds:
            if r.round_number == round_number:
                return r
        return None

    def to_dict(self) -> dict:
        """Serialise for API responses (camelCase keys)."""
        return {
            "id": self.id,
            "ticker": self.ticker,
            "userId": self.user_id,
            "status": self.status.value,
            "currentPhase": self.current_phase.value,
            "workflowSteps": [
                {
                    "phase": s.phase.value,
                    "agent": s.agent,
                    "functionRef": s.function_ref,
                    "status": s.status.value,
                    "attempt": s.attempt,
                    "error": s.error,
                    "errorType": s.error_type.value if s.error_type else None,
                    "updatedAt": s.updated_at.isoformat() if s.updated_at else None,
                }
                for s in self.workflow_steps
            ],
            "debateRounds": [
                {
                    "roundNumber": r.round_number,
                    "bullText": r.bull_text,
                    "bearText": r.bear_text,
                    "bullPoints": r.bull_points,
                    "bearPoints": r.bear_points,
                }
                for r in self.debate_rounds
            ],
            "currentDebateRound": self.current_debate_round,
            "agentInsights": self.agent_insights,
            "messages": self.messages,
            "portfolio": self.portfolio,
            "decision": self.decision,
            "confidence": self.confidence,
            "errorReason": self.error_reason,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
