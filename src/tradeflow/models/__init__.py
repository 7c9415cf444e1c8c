from __future__ import annotations

from tradeflow.models.envelope import (
    COORDINATOR_FUNCTION,
    AgentSignal,
    AgentTask,
    CompletionType,
    RetryEnvelope,
)
from tradeflow.models.run import (
    ACTIVE_RUN_STATUSES,
    RUN_TRANSITIONS,
    TERMINAL_RUN_STATUSES,
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

__all__ = [
    # run
    "Phase",
    "RunStatus",
    "StepStatus",
    "ErrorType",
    "WorkflowStep",
    "DebateRound",
    "AnalysisRecord",
    "ACTIVE_RUN_STATUSES",
    "TERMINAL_RUN_STATUSES",
    "RUN_TRANSITIONS",
    "validate_run_transition",
    "validate_step_transition",
    # envelope
    "COORDINATOR_FUNCTION",
    "CompletionType",
    "RetryEnvelope",
    "AgentTask",
    "AgentSignal",
    # settings
    "RunSettings",
]
