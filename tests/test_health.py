from __future__ import annotations

import pytest

from conftest import complete_phase, new_run, write_round
from tradeflow.models.run import ErrorType, Phase, StepStatus
from tradeflow.registry.memory import InMemoryRegistry
from tradeflow.workflow import sequencer
from tradeflow.workflow.health import (
    CRITICAL_AGENTS,
    OPTIONAL_AGENTS,
    categorize,
    check_phase_health,
    classify_error,
    should_continue_after_error,
)


def _set(store: InMemoryRegistry, run_id: str, agent: str, status: StepStatus) -> None:
    store.set_step_status(
        run_id,
        sequencer.phase_of(agent),
        agent,
        {StepStatus.PENDING, StepStatus.RUNNING, StepStatus.COMPLETED},
        status,
    )


# ------------------------------------------------------------------
# Error classification
# ------------------------------------------------------------------


class TestClassifyError:
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("429 Too Many Requests", ErrorType.RATE_LIMIT),
            ("You exceeded your current quota", ErrorType.RATE_LIMIT),
            ("Incorrect API key provided", ErrorType.API_KEY),
            ("request timed out after 30s", ErrorType.TIMEOUT),
            ("psycopg.OperationalError: server closed", ErrorType.DATABASE),
            ("failed to fetch price history", ErrorType.DATA_FETCH),
            ("something odd happened", ErrorType.OTHER),
            (None, ErrorType.OTHER),
        ],
    )
    def test_keywords(self, message, expected) -> None:
        assert classify_error(message) == expected

    def test_first_match_wins(self) -> None:
        assert classify_error("rate limit hit while fetching data") == ErrorType.RATE_LIMIT

    def test_explicit_type_wins(self) -> None:
        assert classify_error("request timed out", "api_key") == ErrorType.API_KEY

    def test_unknown_explicit_type_falls_back_to_keywords(self) -> None:
        assert classify_error("request timed out", "cosmic_rays") == ErrorType.TIMEOUT

    def test_custom_default(self) -> None:
        assert classify_error("bad json", default=ErrorType.AI_ERROR) == ErrorType.AI_ERROR


# ------------------------------------------------------------------
# Agent policy
# ------------------------------------------------------------------


class TestErrorPolicy:
    def test_critical_set(self) -> None:
        assert CRITICAL_AGENTS == {
            "market-analyst",
            "trader",
            "risk-manager",
            "portfolio-manager",
        }
        assert not CRITICAL_AGENTS & OPTIONAL_AGENTS
        assert CRITICAL_AGENTS | OPTIONAL_AGENTS == set(sequencer.all_agents())

    def test_critical_failure_stops(self) -> None:
        proceed, reason = should_continue_after_error(sequencer.TRADER, ErrorType.TIMEOUT, True)
        assert proceed is False
        assert "retryable" in reason

    def test_optional_failure_continues(self) -> None:
        proceed, reason = should_continue_after_error(
            sequencer.NEWS_ANALYST, ErrorType.API_KEY, False
        )
        assert proceed is True
        assert "next agent" in reason

    def test_optional_last_in_phase_checks_health(self) -> None:
        proceed, reason = should_continue_after_error(
            sequencer.FUNDAMENTALS_ANALYST, ErrorType.OTHER, True
        )
        assert proceed is True
        assert "phase health" in reason

    def test_categorize(self) -> None:
        category = categorize(sequencer.MARKET_ANALYST, ErrorType.API_KEY)
        assert category.is_critical
        assert category.should_stop_workflow
        assert not category.retryable


# ------------------------------------------------------------------
# Phase health
# ------------------------------------------------------------------


class TestPhaseHealth:
    def test_all_completed(self, store: InMemoryRegistry) -> None:
        run_id = new_run(store)
        complete_phase(store, run_id, Phase.ANALYSIS)
        health = check_phase_health(store.get_run(run_id), Phase.ANALYSIS)
        assert health.can_proceed
        assert health.completed_agents == list(sequencer.PHASE_AGENTS[Phase.ANALYSIS])

    def test_optional_failure_proceeds(self, store: InMemoryRegistry) -> None:
        run_id = new_run(store)
        complete_phase(store, run_id, Phase.ANALYSIS)
        _set(store, run_id, sequencer.NEWS_ANALYST, StepStatus.ERROR)
        health = check_phase_health(store.get_run(run_id), "analysis")
        assert health.can_proceed
        assert health.failed_agents == [sequencer.NEWS_ANALYST]

    def test_critical_failure_blocks(self, store: InMemoryRegistry) -> None:
        run_id = new_run(store)
        complete_phase(store, run_id, Phase.ANALYSIS)
        _set(store, run_id, sequencer.MARKET_ANALYST, StepStatus.ERROR)
        health = check_phase_health(store.get_run(run_id), Phase.ANALYSIS)
        assert not health.can_proceed
        assert health.critical_failures == [sequencer.MARKET_ANALYST]

    def test_pending_agent_stalls(self, store: InMemoryRegistry) -> None:
        run_id = new_run(store)
        complete_phase(store, run_id, Phase.RISK, except_=(sequencer.SAFE_ANALYST,))
        health = check_phase_health(store.get_run(run_id), Phase.RISK)
        assert not health.can_proceed
        assert health.pending_agents == [sequencer.SAFE_ANALYST]
        assert not health.critical_failures

    def test_research_judged_on_debate_rounds(self, store: InMemoryRegistry) -> None:
        run_id = new_run(store)
        _set(store, run_id, sequencer.RESEARCH_MANAGER, StepStatus.COMPLETED)
        # Debaters left pending or failed do not matter once a round is complete.
        _set(store, run_id, sequencer.BEAR_RESEARCHER, StepStatus.ERROR)

        before = check_phase_health(store.get_run(run_id), Phase.RESEARCH)
        write_round(store, run_id, 1)
        after = check_phase_health(store.get_run(run_id), Phase.RESEARCH)

        assert not before.can_proceed
        assert before.reason == "Research phase has no debate rounds completed"
        assert after.can_proceed

    def test_trading_needs_trader(self, store: InMemoryRegistry) -> None:
        run_id = new_run(store)
        _set(store, run_id, sequencer.TRADER, StepStatus.COMPLETED)
        assert check_phase_health(store.get_run(run_id), Phase.TRADING).can_proceed

