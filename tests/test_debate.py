from __future__ import annotations

import pytest

from conftest import new_run, write_round
from tradeflow.models.run import Phase, StepStatus
from tradeflow.registry.memory import InMemoryRegistry
from tradeflow.workflow import sequencer
from tradeflow.workflow.debate import DebateEngine, round_brief, side_of, transcript
from tradeflow.workflow.errors import UnknownAgentError


def _complete_debaters(store: InMemoryRegistry, run_id: str) -> None:
    for debater in sequencer.DEBATERS:
        store.set_step_status(
            run_id,
            Phase.RESEARCH,
            debater,
            {StepStatus.PENDING, StepStatus.RUNNING},
            StepStatus.COMPLETED,
        )


@pytest.fixture
def engine(store: InMemoryRegistry) -> DebateEngine:
    return DebateEngine(store, default_rounds=2)


# ------------------------------------------------------------------
# Round bookkeeping
# ------------------------------------------------------------------


class TestDebateEngine:
    def test_start_is_idempotent(self, store: InMemoryRegistry, engine: DebateEngine) -> None:
        run_id = new_run(store)
        assert engine.start(run_id) == 1
        assert engine.start(run_id) == 1
        record = store.get_run(run_id)
        assert record.current_debate_round == 1
        assert [r.round_number for r in record.debate_rounds] == [1]

    def test_max_rounds_from_settings(self, store: InMemoryRegistry, engine: DebateEngine) -> None:
        default = store.get_run(new_run(store))
        custom = store.get_run(new_run(store, research_debate_rounds=4))
        assert engine.max_rounds(default) == 2
        assert engine.max_rounds(custom) == 4

    def test_current_round_without_explicit_state(self, store: InMemoryRegistry) -> None:
        run_id = new_run(store)
        write_round(store, run_id, 1)
        assert DebateEngine.current_round(store.get_run(run_id)) == 2

    def test_bull_hands_to_bear_in_same_round(
        self, store: InMemoryRegistry, engine: DebateEngine
    ) -> None:
        run_id = new_run(store)
        engine.start(run_id)
        hop = engine.next_hop_after(store.get_run(run_id), sequencer.BULL_RESEARCHER, 1)
        assert hop.agent == sequencer.BEAR_RESEARCHER
        assert hop.debate_round == 1

    def test_bear_opens_next_round(self, store: InMemoryRegistry, engine: DebateEngine) -> None:
        run_id = new_run(store)
        engine.start(run_id)
        write_round(store, run_id, 1)
        _complete_debaters(store, run_id)

        hop = engine.next_hop_after(store.get_run(run_id), sequencer.BEAR_RESEARCHER, 1)

        assert hop.agent == sequencer.BULL_RESEARCHER
        assert hop.debate_round == 2
        record = store.get_run(run_id)
        assert record.current_debate_round == 2
        assert record.debate_round(2) is not None
        for debater in sequencer.DEBATERS:
            assert record.step(Phase.RESEARCH, debater).status == StepStatus.PENDING

    def test_duplicate_bear_completion_loses_race(
        self, store: InMemoryRegistry, engine: DebateEngine
    ) -> None:
        run_id = new_run(store)
        engine.start(run_id)
        write_round(store, run_id, 1)
        stale = store.get_run(run_id)

        first = engine.next_hop_after(stale, sequencer.BEAR_RESEARCHER, 1)
        second = engine.next_hop_after(stale, sequencer.BEAR_RESEARCHER, 1)

        assert first.agent == sequencer.BULL_RESEARCHER
        assert second.agent is None
        assert store.get_run(run_id).current_debate_round == 2

    def test_last_round_hands_to_moderator(
        self, store: InMemoryRegistry, engine: DebateEngine
    ) -> None:
        run_id = new_run(store, debate_rounds=1)
        engine.start(run_id)
        write_round(store, run_id, 1)

        hop = engine.next_hop_after(store.get_run(run_id), sequencer.BEAR_RESEARCHER, 1)

        assert hop.agent == sequencer.RESEARCH_MANAGER
        assert store.get_run(run_id).current_debate_round == 1

    def test_moderator_ends_phase(self, store: InMemoryRegistry, engine: DebateEngine) -> None:
        run_id = new_run(store)
        hop = engine.next_hop_after(store.get_run(run_id), sequencer.RESEARCH_MANAGER, None)
        assert hop.agent == sequencer.LAST_IN_PHASE

    def test_unknown_research_agent(self, store: InMemoryRegistry, engine: DebateEngine) -> None:
        run_id = new_run(store)
        with pytest.raises(UnknownAgentError):
            engine.next_hop_after(store.get_run(run_id), sequencer.TRADER, 1)


# ------------------------------------------------------------------
# Prompt material
# ------------------------------------------------------------------


class TestTranscript:
    def test_side_of(self) -> None:
        assert side_of(sequencer.BULL_RESEARCHER) == "bull"
        assert side_of(sequencer.BEAR_RESEARCHER) == "bear"
        with pytest.raises(UnknownAgentError):
            side_of(sequencer.TRADER)

    def test_transcript_includes_both_sides_in_order(self, store: InMemoryRegistry) -> None:
        run_id = new_run(store)
        write_round(store, run_id, 1)
        write_round(store, run_id, 2)

        text = transcript(store.get_run(run_id))

        assert text.index("Round 1") < text.index("bull 1") < text.index("bear 1")
        assert text.index("bear 1") < text.index("Round 2") < text.index("bull 2")

    def test_transcript_before_round(self, store: InMemoryRegistry) -> None:
        run_id = new_run(store)
        write_round(store, run_id, 1)
        write_round(store, run_id, 2)
        text = transcript(store.get_run(run_id), before_round=2)
        assert "bull 1" in text
        assert "bull 2" not in text

    def test_opening_brief(self, store: InMemoryRegistry) -> None:
        run_id = new_run(store)
        brief = round_brief(store.get_run(run_id), sequencer.BULL_RESEARCHER, 1, 2)
        assert "round 1 of 2" in brief
        assert "Open the debate" in brief
        assert "Previous rounds" not in brief

    def test_bear_sees_current_bull_argument(self, store: InMemoryRegistry) -> None:
        run_id = new_run(store)
        store.open_debate_round(run_id, 1)
        store.set_debate_side(run_id, 1, "bull", "Margins are expanding fast.", [])

        brief = round_brief(store.get_run(run_id), sequencer.BEAR_RESEARCHER, 1, 2)

        assert "The bull has just argued:\nMargins are expanding fast." in brief
        assert "Rebut the bull's strongest points" in brief

    def test_later_rounds_see_history_and_avoid_repetition(self, store: InMemoryRegistry) -> None:
        run_id = new_run(store)
        write_round(store, run_id, 1)
        store.open_debate_round(run_id, 2)

        brief = round_brief(store.get_run(run_id), sequencer.BULL_RESEARCHER, 2, 3)

        assert "Previous rounds:" in brief
        assert "bear 1" in brief
        assert "do not restate prior arguments" in brief
