from tradeflow.workflow.coordinator import Coordinator
from tradeflow.workflow.debate import DebateEngine, DebateHop
from tradeflow.workflow.errors import (
    InvocationError,
    RunNotFoundError,
    UnknownAgentError,
    WorkflowError,
)
from tradeflow.workflow.health import PhaseHealth, check_phase_health, classify_error
from tradeflow.workflow.resume import ResumeTarget, find_resume_target
from tradeflow.workflow.stale import StaleRunDetector

__all__ = [
    "Coordinator",
    "DebateEngine",
    "DebateHop",
    "InvocationError",
    "PhaseHealth",
    "ResumeTarget",
    "RunNotFoundError",
    "StaleRunDetector",
    "UnknownAgentError",
    "WorkflowError",
    "check_phase_health",
    "classify_error",
    "find_resume_target",
]
