from tradeflow.agents.analysts import AnalystAgent
from tradeflow.agents.base import AgentContext, AgentOutput, BaseAgent
from tradeflow.agents.decision import PositionIntent, TradeAction, TradingDecision
from tradeflow.agents.gateway import LLMGateway, LLMResponse, ProviderConfig
from tradeflow.agents.research import ResearcherAgent, ResearchManagerAgent
from tradeflow.agents.roster import build_agents
from tradeflow.agents.runtime import AgentRuntime
from tradeflow.agents.trading import (
    PortfolioManagerAgent,
    RiskAnalystAgent,
    RiskManagerAgent,
    TraderAgent,
)
from tradeflow.agents.watchdog import Watchdog

__all__ = [
    "AgentContext",
    "AgentOutput",
    "AgentRuntime",
    "AnalystAgent",
    "BaseAgent",
    "LLMGateway",
    "LLMResponse",
    "PortfolioManagerAgent",
    "PositionIntent",
    "ProviderConfig",
    "ResearchManagerAgent",
    "ResearcherAgent",
    "RiskAnalystAgent",
    "RiskManagerAgent",
    "TradeAction",
    "TraderAgent",
    "TradingDecision",
    "Watchdog",
    "build_agents",
]
