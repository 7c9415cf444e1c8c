"""Analysis-phase agents: macro, market, news, social media and fundamentals.

Each analyst sees the summaries written by the analysts before it, so the
later ones can build on (or disagree with) the earlier ones.
"""

from __future__ import annotations

import logging

from tradeflow.agents.base import AgentContext, BaseAgent, format_insights
from tradeflow.agents.gateway import LLMGateway
from tradeflow.models.run import Phase
from tradeflow.workflow import sequencer

logger = logging.getLogger(__name__)

_RESPONSE_FORMAT = """\
Return your analysis as JSON with this exact structure:
{
    "summary": "Three to six sentences with your assessment...",
    "points": ["Key finding 1", "Key finding 2", "Key finding 3"],
    "outlook": "bullish" | "bearish" | "neutral",
    "confidence": 0-100
}
Return ONLY valid JSON. No markdown, no code fences, no commentary outside the JSON."""

_FOCUS = {
    sequencer.MACRO_ANALYST: (
        "a macroeconomic analyst",
        "interest rates, inflation, central bank policy, growth indicators and sector rotation, "
        "and how the current regime affects this ticker",
    ),
    sequencer.MARKET_ANALYST: (
        "a technical market analyst",
        "price trend, momentum, moving averages, support/resistance levels, volume and "
        "volatility over the lookback window",
    ),
    sequencer.NEWS_ANALYST: (
        "a financial news analyst",
        "recent company and industry headlines, catalysts, guidance changes and regulatory events",
    ),
    sequencer.SOCIAL_MEDIA_ANALYST: (
        "a social sentiment analyst",
        "retail and social media sentiment, attention spikes and crowd positioning",
    ),
    sequencer.FUNDAMENTALS_ANALYST: (
        "a fundamentals analyst",
        "valuation, earnings quality, margins, balance sheet strength and cash generation",
    ),
}


class AnalystAgent(BaseAgent):
    phase = Phase.ANALYSIS

    def __init__(self, name: str, gateway: LLMGateway) -> None:
        if name not in _FOCUS:
            raise ValueError(f"Not an analysis-phase agent: {name}")
        super().__init__(name=name, gateway=gateway)
        self.role, self.focus = _FOCUS[name]

    def build_system_prompt(self) -> str:
        return (
            f"You are {self.role} on a trading desk. Focus on {self.focus}.\n\n"
            f"{_RESPONSE_FORMAT}"
        )

    def build_user_prompt(self, ctx: AgentContext) -> str:
        agents = sequencer.PHASE_AGENTS[Phase.ANALYSIS]
        earlier = agents[: agents.index(self.name)]
        return (
            f"Ticker: {ctx.ticker}\n"
            f"Lookback window: {ctx.settings.history_days} days\n\n"
            f"Findings from other analysts so far:\n{format_insights(ctx.record, earlier)}\n\n"
            f"Provide your analysis of {ctx.ticker}."
        )


def build_analysts(gateway: LLMGateway) -> list[AnalystAgent]:
    return [AnalystAgent(name, gateway) for name in sequencer.PHASE_AGENTS[Phase.ANALYSIS]]
