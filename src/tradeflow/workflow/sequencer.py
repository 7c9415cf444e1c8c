"""Static phase/agent topology.

Every other component asks this module "who is next"; it holds no state.
"""

from __future__ import annotations

from tradeflow.models.run import Phase
from tradeflow.workflow.errors import UnknownAgentError

LAST_IN_PHASE = "LAST_IN_PHASE"

MACRO_ANALYST = "macro-analyst"
MARKET_ANALYST = "market-analyst"
NEWS_ANALYST = "news-analyst"
SOCIAL_MEDIA_ANALYST = "social-media-analyst"
FUNDAMENTALS_ANALYST = "fundamentals-analyst"
BULL_RESEARCHER = "bull-researcher"
BEAR_RESEARCHER = "bear-researcher"
RESEARCH_MANAGER = "research-manager"
TRADER = "trader"
RISKY_ANALYST = "risky-analyst"
SAFE_ANALYST = "safe-analyst"
NEUTRAL_ANALYST = "neutral-analyst"
RISK_MANAGER = "risk-manager"
PORTFOLIO_MANAGER = "portfolio-manager"

PHASES: tuple[Phase, ...] = (
    Phase.ANALYSIS,
    Phase.RESEARCH,
    Phase.TRADING,
    Phase.RISK,
    Phase.PORTFOLIO,
)

PHASE_AGENTS: dict[Phase, tuple[str, ...]] = {
    Phase.ANALYSIS: (
        MACRO_ANALYST,
        MARKET_ANALYST,
        NEWS_ANALYST,
        SOCIAL_MEDIA_ANALYST,
        FUNDAMENTALS_ANALYST,
    ),
    Phase.RESEARCH: (BULL_RESEARCHER, BEAR_RESEARCHER, RESEARCH_MANAGER),
    Phase.TRADING: (TRADER,),
    Phase.RISK: (RISKY_ANALYST, SAFE_ANALYST, NEUTRAL_ANALYST, RISK_MANAGER),
    Phase.PORTFOLIO: (PORTFOLIO_MANAGER,),
}

DEBATERS: tuple[str, str] = (BULL_RESEARCHER, BEAR_RESEARCHER)

# The portfolio manager is deployed under a different prefix from the other agents.
_FUNCTION_OVERRIDES = {PORTFOLIO_MANAGER: "analysis-portfolio-manager"}


def _phase(phase: Phase | str) -> Phase:
    try:
        return Phase(phase)
    except ValueError:
        raise UnknownAgentError(str(phase)) from None


def _agents(phase: Phase | str, agent: str) -> tuple[str, ...]:
    agents = PHASE_AGENTS[_phase(phase)]
    if agent not in agents:
        raise UnknownAgentError(str(phase), agent)
    return agents


def first_agent(phase: Phase | str) -> str:
    return PHASE_AGENTS[_phase(phase)][0]


def next_agent(phase: Phase | str, agent: str) -> str:
    """Return the agent after ``agent`` in ``phase``, or LAST_IN_PHASE."""
    agents = _agents(phase, agent)
    idx = agents.index(agent)
    if idx == len(agents) - 1:
        return LAST_IN_PHASE
    return agents[idx + 1]


def is_last_in_phase(phase: Phase | str, agent: str) -> bool:
    return next_agent(phase, agent) == LAST_IN_PHASE


def next_phase(phase: Phase | str) -> Phase | None:
    idx = PHASES.index(_phase(phase))
    if idx == len(PHASES) - 1:
        return None
    return PHASES[idx + 1]


def phase_of(agent: str) -> Phase:
    for phase, agents in PHASE_AGENTS.items():
        if agent in agents:
            return phase
    raise UnknownAgentError("?", agent)


def position_of(phase: Phase | str, agent: str) -> int:
    return _agents(phase, agent).index(agent)


def function_for(agent: str) -> str:
    phase_of(agent)
    return _FUNCTION_OVERRIDES.get(agent, f"agent-{agent}")


def agent_for_function(function_name: str) -> str:
    for agent, fn in _FUNCTION_OVERRIDES.items():
        if fn == function_name:
            return agent
    if function_name.startswith("agent-"):
        agent = function_name.removeprefix("agent-")
        phase_of(agent)
        return agent
    raise UnknownAgentError("?", function_name)


def all_agents() -> list[str]:
    return [a for phase in PHASES for a in PHASE_AGENTS[phase]]


def initial_steps() -> list[tuple[Phase, str, str]]:
    """(phase, agent, function_ref) for every step, in execution order."""
    return [(phase, agent, function_for(agent)) for phase in PHASES for agent in PHASE_AGENTS[phase]]
