"""Pick the step a retry/reactivate request should restart from.

Resuming resets exactly one step; completed steps and debate rounds are
never touched.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from tradeflow.models.run import AnalysisRecord, Phase, StepStatus, WorkflowStep
from tradeflow.workflow import sequencer
from tradeflow.workflow.health import is_critical

STALE_AFTER = timedelta(minutes=5)


@dataclass(frozen=True)
class ResumeTarget:
    phase: Phase
    agent: str
    reason: str


def _is_stale(step: WorkflowStep, now: datetime, stale_after: timedelta) -> bool:
    return step.updated_at is None or now - step.updated_at > stale_after


def _first_pending(steps: list[WorkflowStep]) -> WorkflowStep | None:
    return next((s for s in steps if s.status == StepStatus.PENDING), None)


def find_resume_target(
    record: AnalysisRecord,
    now: datetime,
    stale_after: timedelta = STALE_AFTER,
) -> ResumeTarget | None:
    """Highest-priority failed or stale step, else the first unfinished step.

    Priority: the run's current phase first, then critical agents, then
    topology order. Failures from phases the run has already left were
    absorbed by the error policy and are not resumed.

    Steps are created pending with the run's creation time, so age alone
    says nothing about a step that was never reached. A pending step only
    counts as stale when it is the next step of the current phase and
    nothing in that phase is running.
    """
    current_idx = sequencer.PHASES.index(record.current_phase)
    current_steps = record.steps_for(record.current_phase)
    phase_busy = any(s.status == StepStatus.RUNNING for s in current_steps)
    next_up = None if phase_busy else _first_pending(current_steps)

    def rank(step: WorkflowStep) -> tuple[int, int, int, int]:
        phase_idx = sequencer.PHASES.index(step.phase)
        return (
            0 if step.phase == record.current_phase else 1,
            0 if is_critical(step.agent) else 1,
            phase_idx,
            sequencer.position_of(step.phase, step.agent),
        )

    candidates: list[tuple[WorkflowStep, str]] = []
    for step in record.workflow_steps:
        if sequencer.PHASES.index(step.phase) < current_idx:
            continue
        if step.status == StepStatus.ERROR:
            candidates.append((step, f"{step.agent} failed: {step.error or 'unknown error'}"))
        elif (step.status == StepStatus.RUNNING or step is next_up) and _is_stale(
            step, now, stale_after
        ):
            candidates.append((step, f"{step.agent} stale in {step.status}"))

    if candidates:
        step, reason = min(candidates, key=lambda c: rank(c[0]))
        return ResumeTarget(phase=step.phase, agent=step.agent, reason=reason)

    if phase_busy:
        return None
    for phase in sequencer.PHASES[current_idx:]:
        step = _first_pending(record.steps_for(phase))
        if step is not None:
            return ResumeTarget(phase=phase, agent=step.agent, reason=f"resuming {phase} phase")
    return None
