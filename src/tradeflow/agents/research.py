from __future__ import annotations

import logging

from tradeflow.agents.base import AgentContext, AgentOutput, BaseAgent, bullet_points, format_insights
from tradeflow.agents.gateway import LLMGateway
from tradeflow.models.run import Phase
from tradeflow.registry.base import WorkflowStore
from tradeflow.workflow import sequencer
from tradeflow.workflow.debate import DebateEngine, round_brief, side_of, transcript

logger = logging.getLogger(__name__)

_DEBATE_SYSTEM = """\
You are the {side} researcher in a structured investment debate about a single ticker.

Argue the {side} case as persuasively as the evidence allows. Engage directly with the \
other side's arguments.

Return JSON with this exact structure:
{{
    "argument": "Your full argument for this round, 2-4 paragraphs...",
    "points": ["Concise key point 1", "Concise key point 2", "Concise key point 3"]
}}
Return ONLY valid JSON. No markdown, no code fences."""

_MANAGER_SYSTEM = """\
You are the research manager moderating a bull/bear debate. Judge which side argued \
better on the evidence, note where each side was weak or repetitive, and give an \
investment recommendation for the trader.

Return JSON with this exact structure:
{
    "summary": "Your judgement of the debate and the resulting investment thesis...",
    "points": ["Decisive point 1", "Decisive point 2"],
    "recommendation": "BUY" | "SELL" | "HOLD",
    "winner": "bull" | "bear" | "draw"
}
Return ONLY valid JSON. No markdown, no code fences."""


class ResearcherAgent(BaseAgent):
    """Bull or bear side of the debate. Writes into the current round."""

    phase = Phase.RESEARCH

    def __init__(self, name: str, gateway: LLMGateway) -> None:
        super().__init__(name=name, gateway=gateway)
        self.side = side_of(name)

    def build_system_prompt(self) -> str:
        return _DEBATE_SYSTEM.format(side=self.side)

    def _round(self, ctx: AgentContext) -> int:
        return ctx.debate_round or DebateEngine.current_round(ctx.record)

    def build_user_prompt(self, ctx: AgentContext) -> str:
        analysts = sequencer.PHASE_AGENTS[Phase.ANALYSIS]
        brief = round_brief(ctx.record, self.name, self._round(ctx), ctx.settings.debate_rounds)
        return (
            f"Ticker: {ctx.ticker}\n\n"
            f"Analyst findings:\n{format_insights(ctx.record, analysts)}\n\n"
            f"{brief}"
        )

    def parse_response(self, raw: str, ctx: AgentContext) -> AgentOutput:
        output = super().parse_response(raw, ctx)
        argument = output.data.pop("argument", None)
        if argument:
            output.summary = str(argument)
        if not output.points:
            output.points = bullet_points(output.summary)
        output.data["round"] = self._round(ctx)
        return output

    def persist(self, store: WorkflowStore, ctx: AgentContext, output: AgentOutput) -> bool:
        round_number = self._round(ctx)
        if not store.set_debate_side(
            ctx.run_id, round_number, self.side, output.summary, output.points
        ):
            logger.warning(
                "%s side of round %d for %s already written or out of turn",
                self.side, round_number, ctx.run_id,
            )
            return False
        return super().persist(store, ctx, output)


class ResearchManagerAgent(BaseAgent):
    """Moderator: consumes the whole debate and judges it."""

    phase = Phase.RESEARCH

    def __init__(self, gateway: LLMGateway) -> None:
        super().__init__(name=sequencer.RESEARCH_MANAGER, gateway=gateway)

    def build_system_prompt(self) -> str:
        return _MANAGER_SYSTEM

    def build_user_prompt(self, ctx: AgentContext) -> str:
        rounds = DebateEngine.complete_round_count(ctx.record)
        return (
            f"Ticker: {ctx.ticker}\n"
            f"Complete debate rounds: {rounds}\n\n"
            f"Debate transcript:\n{transcript(ctx.record) or '(empty)'}\n\n"
            f"Deliver your judgement."
        )
