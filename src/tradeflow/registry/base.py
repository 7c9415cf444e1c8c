"""Record store contract.

Every mutation is a single conditional operation on the store side; callers
never read-modify-write. Conditional methods return False when the
precondition did not hold (a lost race), never raise for it.
"""

from __future__ import annotations

import abc
from collections.abc import Iterable
from datetime import datetime

from tradeflow.models.run import AnalysisRecord, ErrorType, Phase, RunStatus, StepStatus

# Top-level keys of the free-form run document addressed by merge_field/append_to_array.
DOCUMENT_KEYS = ("agent_insights", "messages", "portfolio")


def split_path(path: str) -> list[str]:
    parts = [p for p in path.split(".") if p]
    if not parts or parts[0] not in DOCUMENT_KEYS:
        raise ValueError(f"Invalid document path: {path!r}")
    return parts


class WorkflowStore(abc.ABC):
    # ------------------------------------------------------------------
    # Atomic primitives
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def merge_field(self, run_id: str, path: str, value: object) -> bool:
        """Merge ``value`` into the document at dotted ``path``.

        Dict values are merged key-by-key into what is already there; other
        values replace it. Writes to disjoint paths never clobber each other.
        """

    @abc.abstractmethod
    def append_to_array(self, run_id: str, path: str, element: object) -> bool:
        """Append ``element`` to the array at dotted ``path``."""

    @abc.abstractmethod
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
        """Move a step to ``to_status`` only if it is currently in ``from_statuses``."""

    @abc.abstractmethod
    def set_run_status(
        self,
        run_id: str,
        from_statuses: Iterable[RunStatus],
        to_status: RunStatus,
        reason: str | None = None,
    ) -> bool:
        """Move a run to ``to_status`` only if it is currently in ``from_statuses``."""

    @abc.abstractmethod
    def get_run(self, run_id: str) -> AnalysisRecord | None: ...

    # ------------------------------------------------------------------
    # Typed repository methods
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def create_run(
        self,
        ticker: str,
        user_id: str,
        settings: dict,
        steps: list[tuple[Phase, str, str]],
    ) -> str:
        """Create a pending run with all steps pending. Returns the run id."""

    @abc.abstractmethod
    def find_active_run_ids(self, user_id: str, ticker: str) -> list[str]:
        """Pending/running runs for (user, ticker), newest first."""

    @abc.abstractmethod
    def find_stale_run_ids(self, updated_before: datetime) -> list[str]:
        """Running runs whose last update is older than ``updated_before``."""

    @abc.abstractmethod
    def set_current_phase(self, run_id: str, phase: Phase) -> None: ...

    @abc.abstractmethod
    def open_debate_round(self, run_id: str, round_number: int) -> bool:
        """Create an empty round. False if it already exists."""

    @abc.abstractmethod
    def set_debate_side(
        self,
        run_id: str,
        round_number: int,
        side: str,
        text: str,
        points: list[str],
    ) -> bool:
        """Fill one side of a round, only if that side is still empty.

        The bear side additionally requires the bull side to be present.
        """

    @abc.abstractmethod
    def advance_debate_round(self, run_id: str, from_round: int | None, to_round: int) -> bool:
        """Compare-and-set the run's current debate round."""

    @abc.abstractmethod
    def set_decision(self, run_id: str, decision: str, confidence: float) -> None: ...
