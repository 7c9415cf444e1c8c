from __future__ import annotations


class WorkflowError(Exception):
    """Base class for orchestration failures."""


class UnknownAgentError(WorkflowError):
    """A (phase, agent) pair that is not part of the topology. Never retried."""

    def __init__(self, phase: str, agent: str | None = None) -> None:
        self.phase = phase
        self.agent = agent
        if agent is None:
            super().__init__(f"Unknown phase: {phase}")
        else:
            super().__init__(f"Unknown agent {agent!r} in phase {phase!r}")


class RunNotFoundError(WorkflowError):
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Analysis not found: {run_id}")


class InvocationError(WorkflowError):
    """Transport failure while invoking a remote function."""
