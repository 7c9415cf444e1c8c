"""Bull/bear debate rounds inside the research phase.

The bull researcher opens each round and the bear researcher answers. After
the bear finishes round k the engine either opens round k+1 or hands the
whole transcript to the research manager once k reaches the configured
number of rounds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tradeflow.models.run import AnalysisRecord, DebateRound, Phase, StepStatus
from tradeflow.models.settings import DEFAULT_DEBATE_ROUNDS, RunSettings
from tradeflow.registry.base import WorkflowStore
from tradeflow.workflow import sequencer
from tradeflow.workflow.errors import UnknownAgentError

logger = logging.getLogger(__name__)

SIDES = {sequencer.BULL_RESEARCHER: "bull", sequencer.BEAR_RESEARCHER: "bear"}


@dataclass(frozen=True)
class DebateHop:
    """Where the research phase goes next.

    ``agent`` is None when another invocation already advanced the debate,
    and LAST_IN_PHASE once the moderator has finished.
    """

    agent: str | None
    debate_round: int | None = None


def side_of(agent: str) -> str:
    try:
        return SIDES[agent]
    except KeyError:
        raise UnknownAgentError(Phase.RESEARCH.value, agent) from None


class DebateEngine:
    def __init__(self, store: WorkflowStore, default_rounds: int = DEFAULT_DEBATE_ROUNDS) -> None:
        self._store = store
        self._default_rounds = default_rounds

    def max_rounds(self, record: AnalysisRecord) -> int:
        return RunSettings.from_dict(record.settings, self._default_rounds).debate_rounds

    @staticmethod
    def current_round(record: AnalysisRecord) -> int:
        """Explicit run state wins; otherwise one past the complete rounds."""
        if record.current_debate_round:
            return record.current_debate_round
        return len(record.complete_rounds()) + 1

    @staticmethod
    def complete_round_count(record: AnalysisRecord) -> int:
        return len(record.complete_rounds())

    def start(self, run_id: str) -> int:
        """Open round 1. Safe to call more than once."""
        if self._store.advance_debate_round(run_id, None, 1):
            logger.info("Debate started for %s", run_id)
        self._store.open_debate_round(run_id, 1)
        return 1

    def next_hop_after(self, record: AnalysisRecord, agent: str, round_number: int | None) -> DebateHop:
        """Decide the successor of a research agent that just completed."""
        if agent == sequencer.RESEARCH_MANAGER:
            return DebateHop(sequencer.LAST_IN_PHASE)

        round_number = round_number or self.current_round(record)
        if agent == sequencer.BULL_RESEARCHER:
            return DebateHop(sequencer.BEAR_RESEARCHER, round_number)
        if agent != sequencer.BEAR_RESEARCHER:
            raise UnknownAgentError(Phase.RESEARCH.value, agent)

        limit = self.max_rounds(record)
        if round_number >= limit:
            logger.info(
                "Debate for %s finished after %d/%d rounds; handing to moderator",
                record.id, round_number, limit,
            )
            return DebateHop(sequencer.RESEARCH_MANAGER)

        nxt = round_number + 1
        if not self._store.advance_debate_round(record.id, round_number, nxt):
            logger.warning(
                "Debate for %s already advanced past round %d; ignoring duplicate",
                record.id, round_number,
            )
            return DebateHop(None)

        self._store.open_debate_round(record.id, nxt)
        for debater in sequencer.DEBATERS:
            self._store.set_step_status(
                record.id, Phase.RESEARCH, debater, {StepStatus.COMPLETED}, StepStatus.PENDING
            )
        logger.info("Debate for %s advancing to round %d of %d", record.id, nxt, limit)
        return DebateHop(sequencer.BULL_RESEARCHER, nxt)


# ----------------------------------------------------------------------
# Prompt material
# ----------------------------------------------------------------------


def format_round(rnd: DebateRound) -> str:
    parts = [f"=== Round {rnd.round_number} ==="]
    if rnd.bull_text:
        parts.append(f"[BULL]\n{rnd.bull_text}")
    if rnd.bear_text:
        parts.append(f"[BEAR]\n{rnd.bear_text}")
    return "\n\n".join(parts)


def transcript(record: AnalysisRecord, before_round: int | None = None) -> str:
    """Full text of every round (both sides), optionally only rounds before ``before_round``."""
    rounds = [
        r
        for r in record.debate_rounds
        if (r.bull_text or r.bear_text)
        and (before_round is None or r.round_number < before_round)
    ]
    return "\n\n".join(format_round(r) for r in rounds)


def round_brief(record: AnalysisRecord, agent: str, round_number: int, max_rounds: int) -> str:
    """Debate context for one researcher turn.

    Later rounds see everything said so far and are told not to repeat it.
    """
    side = side_of(agent)
    opponent = "bear" if side == "bull" else "bull"
    lines = [f"Debate round {round_number} of {max_rounds}. You argue the {side.upper()} case."]

    history = transcript(record, before_round=round_number)
    current = record.debate_round(round_number)
    if side == "bear" and current and current.bull_text:
        lines.append(f"The bull has just argued:\n{current.bull_text}")
    if history:
        lines.append(f"Previous rounds:\n{history}")

    if round_number > 1 or side == "bear":
        lines.append(
            f"Rebut the {opponent}'s strongest points directly. Bring NEW evidence or "
            f"angles that have not appeared in earlier rounds; do not restate prior arguments."
        )
    else:
        lines.append(f"Open the debate with the strongest {side} thesis for the ticker.")
    return "\n\n".join(lines)
