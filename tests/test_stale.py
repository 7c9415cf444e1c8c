from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import StepClock, new_run
from tradeflow.models.run import RunStatus
from tradeflow.registry.memory import InMemoryRegistry
from tradeflow.workflow.coordinator import Coordinator
from tradeflow.workflow.stale import StaleRunDetector, stale_detection_loop


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def store(clock: StepClock) -> InMemoryRegistry:
    return InMemoryRegistry(clock=clock)


@pytest.fixture
def coordinator() -> MagicMock:
    coord = MagicMock(spec=Coordinator)
    coord.resume = AsyncMock(return_value={"success": True, "resumedAgent": "trader"})
    return coord


def _detector(store, coordinator, clock, threshold_minutes=5) -> StaleRunDetector:
    return StaleRunDetector(store, coordinator, threshold_minutes, clock=lambda: clock.now)


# ------------------------------------------------------------------
# StaleRunDetector
# ------------------------------------------------------------------


class TestStaleRunDetector:
    def test_only_old_running_runs_are_reactivated(self, store, coordinator, clock) -> None:
        stale_id = new_run(store)
        queued_id = store.create_run("MSFT", "u1", {}, [])
        clock.now += timedelta(minutes=10)
        fresh_id = new_run(store, ticker="NVDA")

        report = asyncio.run(_detector(store, coordinator, clock).detect_and_reactivate())

        coordinator.resume.assert_awaited_once_with(stale_id, None, "reactivate")
        assert report.reactivated == [stale_id]
        assert report.failed == {}
        assert store.get_run(queued_id).status == RunStatus.PENDING
        assert store.get_run(fresh_id).status == RunStatus.RUNNING

    def test_nothing_stale(self, store, coordinator, clock) -> None:
        new_run(store)
        report = asyncio.run(_detector(store, coordinator, clock).detect_and_reactivate())
        coordinator.resume.assert_not_called()
        assert report.to_dict()["checkedCount"] == 0

    def test_failed_reactivation_marks_run_as_error(self, store, coordinator, clock) -> None:
        run_id = new_run(store)
        clock.now += timedelta(minutes=10)
        coordinator.resume.return_value = {"success": False, "error": "No failed or stale agents to resume"}

        report = asyncio.run(_detector(store, coordinator, clock).detect_and_reactivate())

        record = store.get_run(run_id)
        assert record.status == RunStatus.ERROR
        assert record.error_reason == (
            "Stale analysis could not be reactivated: No failed or stale agents to resume"
        )
        body = report.to_dict()
        assert body["failed"] == 1
        assert body["results"] == [
            {"analysisId": run_id, "status": "error", "error": "No failed or stale agents to resume"}
        ]

    def test_threshold_is_configurable(self, store, coordinator, clock) -> None:
        new_run(store)
        clock.now += timedelta(minutes=10)

        report = asyncio.run(
            _detector(store, coordinator, clock, threshold_minutes=30).detect_and_reactivate()
        )

        assert report.reactivated == []
        assert report.to_dict()["staleThresholdMinutes"] == 30


# ------------------------------------------------------------------
# Background loop
# ------------------------------------------------------------------


class TestStaleDetectionLoop:
    def test_failing_pass_does_not_stop_loop(self) -> None:
        detector = MagicMock(spec=StaleRunDetector)
        detector.detect_and_reactivate = AsyncMock(side_effect=[RuntimeError("db down"), None])
        sleeps = AsyncMock(side_effect=[None, None, asyncio.CancelledError()])

        with patch("tradeflow.workflow.stale.asyncio.sleep", sleeps):
            with pytest.raises(asyncio.CancelledError):
                asyncio.run(stale_detection_loop(detector, 60))

        assert detector.detect_and_reactivate.await_count == 2
        sleeps.assert_awaited_with(60)
