"""Error classification and phase health.

Decides whether a single agent failure may be absorbed or must stop the run,
and whether a finished phase produced enough output to move on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from tradeflow.models.run import AnalysisRecord, ErrorType, Phase, StepStatus
from tradeflow.workflow import sequencer

logger = logging.getLogger(__name__)

CRITICAL_AGENTS: frozenset[str] = frozenset(
    {
        sequencer.MARKET_ANALYST,
        sequencer.TRADER,
        sequencer.RISK_MANAGER,
        sequencer.PORTFOLIO_MANAGER,
    }
)

# Researchers are optional here; their failures go through the debate rules instead.
OPTIONAL_AGENTS: frozenset[str] = frozenset(sequencer.all_agents()) - CRITICAL_AGENTS

# Checked in order; first match wins.
_KEYWORDS: list[tuple[ErrorType, tuple[str, ...]]] = [
    (ErrorType.RATE_LIMIT, ("rate limit", "rate_limit", "ratelimit", "quota", "insufficient_quota", "too many requests")),
    (ErrorType.API_KEY, ("api key", "api_key", "apikey", "invalid key", "incorrect api key", "unauthorized")),
    (ErrorType.TIMEOUT, ("timeout", "timed out")),
    (ErrorType.DATABASE, ("database", "postgres", "psycopg", "supabase")),
    (ErrorType.DATA_FETCH, ("fetch", "network", "connection")),
]

_RETRYABLE = frozenset(
    {
        ErrorType.RATE_LIMIT,
        ErrorType.TIMEOUT,
        ErrorType.DATA_FETCH,
        ErrorType.DATABASE,
        ErrorType.AI_ERROR,
    }
)


def classify_error(
    message: str | None,
    explicit: ErrorType | str | None = None,
    default: ErrorType = ErrorType.OTHER,
) -> ErrorType:
    """Best-effort keyword classification; an explicit type always wins."""
    if explicit:
        try:
            return ErrorType(explicit)
        except ValueError:
            logger.warning("Ignoring unknown error type %r", explicit)
    text = (message or "").lower()
    for error_type, keywords in _KEYWORDS:
        if any(k in text for k in keywords):
            return error_type
    return default


def is_critical(agent: str) -> bool:
    return agent in CRITICAL_AGENTS


@dataclass(frozen=True)
class ErrorCategory:
    error_type: ErrorType
    is_critical: bool
    should_stop_workflow: bool
    retryable: bool


def categorize(agent: str, error_type: ErrorType) -> ErrorCategory:
    critical = is_critical(agent)
    return ErrorCategory(
        error_type=error_type,
        is_critical=critical,
        should_stop_workflow=critical,
        retryable=error_type in _RETRYABLE,
    )


def should_continue_after_error(
    agent: str,
    error_type: ErrorType,
    is_last_in_phase: bool,
) -> tuple[bool, str]:
    """Return (continue?, reason). Optional-agent failures never stop the run."""
    category = categorize(agent, error_type)
    if category.should_stop_workflow:
        hint = " (retryable)" if category.retryable else ""
        return False, f"Critical agent {agent} failed with {error_type}{hint}"
    if is_last_in_phase:
        return True, f"Optional agent {agent} failed with {error_type}; checking phase health"
    return True, f"Optional agent {agent} failed with {error_type}; continuing with next agent"


@dataclass
class PhaseHealth:
    phase: Phase
    can_proceed: bool
    reason: str
    critical_failures: list[str] = field(default_factory=list)
    pending_agents: list[str] = field(default_factory=list)
    failed_agents: list[str] = field(default_factory=list)
    completed_agents: list[str] = field(default_factory=list)


def check_phase_health(record: AnalysisRecord, phase: Phase | str) -> PhaseHealth:
    """Aggregate the step statuses of ``phase`` into a go/no-go verdict.

    Bull and bear step statuses only reflect their latest round, so the
    research phase is judged on complete debate rounds instead.
    """
    phase = Phase(phase)
    steps = record.steps_for(phase)
    if phase == Phase.RESEARCH:
        gated = [s for s in steps if s.agent not in sequencer.DEBATERS]
    else:
        gated = steps

    pending = [s.agent for s in gated if s.status in (StepStatus.PENDING, StepStatus.RUNNING)]
    failed = [s.agent for s in steps if s.status == StepStatus.ERROR]
    completed = [s.agent for s in steps if s.status == StepStatus.COMPLETED]
    critical = [a for a in failed if is_critical(a)]

    def verdict(ok: bool, reason: str) -> PhaseHealth:
        return PhaseHealth(
            phase=phase,
            can_proceed=ok,
            reason=reason,
            critical_failures=critical,
            pending_agents=pending,
            failed_agents=failed,
            completed_agents=completed,
        )

    if critical:
        return verdict(False, f"Critical agents failed in {phase}: {', '.join(critical)}")
    if pending:
        return verdict(False, f"Agents still pending in {phase}: {', '.join(pending)}")
    if phase == Phase.RESEARCH and not record.complete_rounds():
        return verdict(False, "Research phase has no debate rounds completed")
    if phase == Phase.TRADING and sequencer.TRADER not in completed:
        return verdict(False, "Trader did not complete")
    if phase != Phase.RESEARCH and not completed:
        return verdict(False, f"No agents completed in {phase}")
    if failed:
        return verdict(True, f"{len(failed)} optional agent(s) failed in {phase}; proceeding")
    return verdict(True, f"All agents completed in {phase}")
