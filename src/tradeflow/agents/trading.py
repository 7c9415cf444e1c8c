"""Trading, risk and portfolio agents.

The trader proposes, the three risk analysts argue about exposure, the risk
manager turns all of it into a decision, and the portfolio manager checks
that decision against the account before sizing an order.
"""

from __future__ import annotations

import logging

from tradeflow.agents.base import AgentContext, AgentOutput, BaseAgent, format_insights
from tradeflow.agents.decision import (
    INTENT_ACTIONS,
    PositionIntent,
    TradingDecision,
    apply_portfolio_constraints,
    extract_decision,
)
from tradeflow.agents.gateway import LLMGateway
from tradeflow.models.run import Phase
from tradeflow.portfolio import PortfolioSnapshot
from tradeflow.registry.base import WorkflowStore
from tradeflow.workflow import sequencer

logger = logging.getLogger(__name__)

# Largest share of equity a single new position may take at full confidence.
MAX_POSITION_PCT = 0.10
TRIM_FRACTION = 0.5

_DECISION_FORMAT = """\
Return JSON with this exact structure:
{
    "action": "BUY" | "SELL" | "HOLD",
    "intent": "BUILD" | "ADD" | "TRIM" | "EXIT" | "HOLD",
    "confidence": 0-100,
    "rationale": "Why, in three to six sentences...",
    "points": ["Key reason 1", "Key reason 2"]
}
Return ONLY valid JSON. No markdown, no code fences."""

_UPSTREAM = (
    sequencer.PHASE_AGENTS[Phase.ANALYSIS]
    + (sequencer.RESEARCH_MANAGER,)
)

_STANCES = {
    sequencer.RISKY_ANALYST: (
        "aggressive",
        "Champion the upside. Argue for taking (or enlarging) the position where the reward "
        "justifies the volatility.",
    ),
    sequencer.SAFE_ANALYST: (
        "conservative",
        "Protect capital. Focus on drawdown, liquidity, tail risks and what could go wrong.",
    ),
    sequencer.NEUTRAL_ANALYST: (
        "neutral",
        "Weigh both sides evenly and propose a balanced exposure.",
    ),
}


def _has_position(ctx: AgentContext) -> bool:
    snapshot = PortfolioSnapshot.from_dict(ctx.record.portfolio) if ctx.record.portfolio else None
    return bool(snapshot and snapshot.position_for(ctx.ticker))


def _decision_output(agent: str, raw: str, decision: TradingDecision, points: list[str]) -> AgentOutput:
    return AgentOutput(
        agent_name=agent,
        summary=decision.rationale or raw.strip(),
        points=points,
        data={
            "action": decision.action.value,
            "intent": decision.intent.value,
            "confidence": decision.confidence,
            "structured": decision.structured,
        },
    )


class TraderAgent(BaseAgent):
    phase = Phase.TRADING

    def __init__(self, gateway: LLMGateway) -> None:
        super().__init__(name=sequencer.TRADER, gateway=gateway)

    def build_system_prompt(self) -> str:
        return (
            "You are the trader. Turn the analyst reports and the research manager's "
            "judgement into a concrete trade proposal.\n\n" + _DECISION_FORMAT
        )

    def build_user_prompt(self, ctx: AgentContext) -> str:
        return (
            f"Ticker: {ctx.ticker}\n\n"
            f"Research:\n{format_insights(ctx.record, _UPSTREAM)}\n\n"
            f"Propose your trade."
        )

    def parse_response(self, raw: str, ctx: AgentContext) -> AgentOutput:
        output = super().parse_response(raw, ctx)
        decision = extract_decision(raw, _has_position(ctx))
        output.data.update(
            action=decision.action.value,
            intent=decision.intent.value,
            confidence=decision.confidence,
        )
        if decision.rationale and output.summary == raw.strip():
            output.summary = decision.rationale
        return output


class RiskAnalystAgent(BaseAgent):
    """One voice of the risk debate: aggressive, conservative or neutral."""

    phase = Phase.RISK

    def __init__(self, name: str, gateway: LLMGateway) -> None:
        if name not in _STANCES:
            raise ValueError(f"Not a risk analyst: {name}")
        super().__init__(name=name, gateway=gateway)
        self.stance, self.brief = _STANCES[name]

    def build_system_prompt(self) -> str:
        return (
            f"You are the {self.stance} risk analyst reviewing a proposed trade. {self.brief}\n\n"
            "Return JSON with this exact structure:\n"
            "{\n"
            '    "summary": "Your risk assessment...",\n'
            '    "points": ["Risk point 1", "Risk point 2"],\n'
            '    "suggested_exposure": "none" | "small" | "normal" | "large"\n'
            "}\n"
            "Return ONLY valid JSON. No markdown, no code fences."
        )

    def build_user_prompt(self, ctx: AgentContext) -> str:
        risk_agents = sequencer.PHASE_AGENTS[Phase.RISK]
        earlier = risk_agents[: risk_agents.index(self.name)]
        return (
            f"Ticker: {ctx.ticker}\n\n"
            f"Trader proposal:\n{format_insights(ctx.record, [sequencer.TRADER])}\n\n"
            f"Research manager:\n{format_insights(ctx.record, [sequencer.RESEARCH_MANAGER])}\n\n"
            f"Other risk views so far:\n{format_insights(ctx.record, earlier)}"
        )


class RiskManagerAgent(BaseAgent):
    """Produces the run's trading decision."""

    phase = Phase.RISK

    def __init__(self, gateway: LLMGateway) -> None:
        super().__init__(name=sequencer.RISK_MANAGER, gateway=gateway)

    def build_system_prompt(self) -> str:
        return (
            "You are the risk manager and final decision maker. Weigh the trader's proposal "
            "against the aggressive, conservative and neutral risk analysts and decide.\n\n"
            + _DECISION_FORMAT
        )

    def build_user_prompt(self, ctx: AgentContext) -> str:
        return (
            f"Ticker: {ctx.ticker}\n\n"
            f"Trader proposal:\n{format_insights(ctx.record, [sequencer.TRADER])}\n\n"
            f"Risk analysts:\n"
            f"{format_insights(ctx.record, sequencer.PHASE_AGENTS[Phase.RISK][:-1])}\n\n"
            f"Give the final decision."
        )

    def parse_response(self, raw: str, ctx: AgentContext) -> AgentOutput:
        decision = extract_decision(raw, _has_position(ctx))
        data = super().parse_response(raw, ctx)
        output = _decision_output(self.name, raw, decision, data.points)
        if not decision.structured:
            logger.warning("Risk manager for %s answered without JSON; used heuristics", ctx.run_id)
        return output

    def persist(self, store: WorkflowStore, ctx: AgentContext, output: AgentOutput) -> bool:
        if not super().persist(store, ctx, output):
            return False
        store.set_decision(ctx.run_id, output.data["action"], output.data["confidence"])
        return True


def size_order(
    intent: PositionIntent,
    confidence: float,
    snapshot: PortfolioSnapshot,
    ticker: str,
) -> dict | None:
    """Notional order for an intent, or None for HOLD."""
    position = snapshot.position_for(ticker)
    if intent in (PositionIntent.BUILD, PositionIntent.ADD):
        target = snapshot.equity * MAX_POSITION_PCT * confidence / 100
        if position is not None:
            target = max(0.0, target - position.market_value)
        notional = round(min(target, snapshot.cash), 2)
        if notional <= 0:
            return None
        return {"side": "buy", "notional": notional}
    if intent in (PositionIntent.TRIM, PositionIntent.EXIT) and position is not None:
        fraction = 1.0 if intent == PositionIntent.EXIT else TRIM_FRACTION
        return {
            "side": "sell",
            "quantity": round(position.quantity * fraction, 6),
            "notional": round(position.market_value * fraction, 2),
        }
    return None


class PortfolioManagerAgent(BaseAgent):
    """Reconciles the risk manager's intent with cash and holdings.

    Account data is snapshotted into the run by the coordinator before this
    agent starts, so it never talks to the broker itself.
    """

    phase = Phase.PORTFOLIO

    def __init__(self, gateway: LLMGateway) -> None:
        super().__init__(name=sequencer.PORTFOLIO_MANAGER, gateway=gateway)

    def build_system_prompt(self) -> str:
        return (
            "You are the portfolio manager. Confirm or adjust the risk manager's decision "
            "given the account's cash and existing position in the ticker.\n\n" + _DECISION_FORMAT
        )

    def build_user_prompt(self, ctx: AgentContext) -> str:
        snapshot = PortfolioSnapshot.from_dict(ctx.record.portfolio)
        position = snapshot.position_for(ctx.ticker)
        holding = (
            f"{position.quantity} shares worth {position.market_value:.2f}"
            if position
            else "no position"
        )
        return (
            f"Ticker: {ctx.ticker}\n"
            f"Cash: {snapshot.cash:.2f}\nEquity: {snapshot.equity:.2f}\n"
            f"Current holding: {holding}\n\n"
            f"Risk manager decision:\n{format_insights(ctx.record, [sequencer.RISK_MANAGER])}"
        )

    def parse_response(self, raw: str, ctx: AgentContext) -> AgentOutput:
        snapshot = PortfolioSnapshot.from_dict(ctx.record.portfolio)
        has_position = snapshot.position_for(ctx.ticker) is not None
        decision = extract_decision(raw, has_position)

        upstream = ctx.record.agent_insights.get(sequencer.RISK_MANAGER) or {}
        upstream_intent = (upstream.get("data") or {}).get("intent")
        if not decision.structured and upstream_intent:
            # Free text from this agent is less reliable than the risk manager's JSON.
            intent = PositionIntent(upstream_intent)
            decision = decision.model_copy(update={"intent": intent, "action": INTENT_ACTIONS[intent]})

        final = apply_portfolio_constraints(
            decision, has_position=has_position, cash_available=snapshot.cash
        )
        if final.intent != decision.intent:
            logger.info(
                "Portfolio override for %s: %s -> %s", ctx.ticker, decision.intent, final.intent
            )

        output = _decision_output(self.name, raw, final, super().parse_response(raw, ctx).points)
        output.data["requested_intent"] = decision.intent.value
        output.data["trade_order"] = size_order(final.intent, final.confidence, snapshot, ctx.ticker)
        return output

    def persist(self, store: WorkflowStore, ctx: AgentContext, output: AgentOutput) -> bool:
        if not super().persist(store, ctx, output):
            return False
        store.set_decision(ctx.run_id, output.data["action"], output.data["confidence"])
        return True
