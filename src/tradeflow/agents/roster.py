from __future__ import annotations

from tradeflow.agents.analysts import build_analysts
from tradeflow.agents.base import BaseAgent
from tradeflow.agents.gateway import LLMGateway
from tradeflow.agents.research import ResearcherAgent, ResearchManagerAgent
from tradeflow.agents.trading import (
    PortfolioManagerAgent,
    RiskAnalystAgent,
    RiskManagerAgent,
    TraderAgent,
)
from tradeflow.workflow import sequencer


def build_agents(gateway: LLMGateway) -> dict[str, BaseAgent]:
    """One instance of every agent in the topology, keyed by agent name."""
    agents: list[BaseAgent] = [
        *build_analysts(gateway),
        *(ResearcherAgent(name, gateway) for name in sequencer.DEBATERS),
        ResearchManagerAgent(gateway),
        TraderAgent(gateway),
        RiskAnalystAgent(sequencer.RISKY_ANALYST, gateway),
        RiskAnalystAgent(sequencer.SAFE_ANALYST, gateway),
        RiskAnalystAgent(sequencer.NEUTRAL_ANALYST, gateway),
        RiskManagerAgent(gateway),
        PortfolioManagerAgent(gateway),
    ]
    roster = {agent.name: agent for agent in agents}
    missing = set(sequencer.all_agents()) - set(roster)
    if missing:
        raise RuntimeError(f"Agents missing from roster: {', '.join(sorted(missing))}")
    return roster
