"""Background detection of runs that stopped making progress.

A run still ``running`` whose record has not been touched for the stale
threshold is reactivated through the coordinator's resume path. Only
``running`` runs are considered; ``pending`` ones may just be queued.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from tradeflow.models.run import RunStatus
from tradeflow.registry.base import WorkflowStore
from tradeflow.workflow.coordinator import Coordinator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StaleReport:
    checked_at: datetime
    threshold_minutes: int
    reactivated: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "checkedAt": self.checked_at.isoformat(),
            "staleThresholdMinutes": self.threshold_minutes,
            "checkedCount": len(self.reactivated) + len(self.failed),
            "reactivated": len(self.reactivated),
            "failed": len(self.failed),
            "results": [{"analysisId": a, "status": "reactivated"} for a in self.reactivated]
            + [{"analysisId": a, "status": "error", "error": e} for a, e in self.failed.items()],
        }


class StaleRunDetector:
    def __init__(
        self,
        store: WorkflowStore,
        coordinator: Coordinator,
        threshold_minutes: int = 5,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._coordinator = coordinator
        self._threshold_minutes = threshold_minutes
        self._clock = clock or _utcnow

    async def detect_and_reactivate(self) -> StaleReport:
        now = self._clock()
        cutoff = now - timedelta(minutes=self._threshold_minutes)
        report = StaleReport(checked_at=now, threshold_minutes=self._threshold_minutes)

        stale = self._store.find_stale_run_ids(cutoff)
        if not stale:
            logger.debug("No stale running analyses")
            return report
        logger.info("Found %d stale running analysis(es)", len(stale))

        for run_id in stale:
            result = await self._coordinator.resume(run_id, None, "reactivate")
            if result.get("success"):
                report.reactivated.append(run_id)
                logger.info("Reactivated stale analysis %s", run_id)
                continue
            error = result.get("error") or "Reactivation failed"
            report.failed[run_id] = error
            self._store.set_run_status(
                run_id,
                {RunStatus.RUNNING},
                RunStatus.ERROR,
                f"Stale analysis could not be reactivated: {error}",
            )
            logger.warning("Could not reactivate stale analysis %s: %s", run_id, error)
        return report


async def stale_detection_loop(detector: StaleRunDetector, interval_seconds: float) -> None:
    """Run the detector forever; one failing pass never stops the loop."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await detector.detect_and_reactivate()
        except Exception:
            logger.exception("Stale detection pass failed")
