"""Turning risk-manager output into a trading decision.

Structured JSON validated by ``TradingDecision`` is the primary contract.
When a provider ignores the format the keyword heuristics below are the
degrade path.
"""

from __future__ import annotations

import logging
import re
from enum import StrEnum

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from tradeflow.agents.base import extract_json

logger = logging.getLogger(__name__)


class TradeAction(StrEnum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class PositionIntent(StrEnum):
    BUILD = "BUILD"
    ADD = "ADD"
    TRIM = "TRIM"
    EXIT = "EXIT"
    HOLD = "HOLD"


INTENT_ACTIONS: dict[PositionIntent, TradeAction] = {
    PositionIntent.BUILD: TradeAction.BUY,
    PositionIntent.ADD: TradeAction.BUY,
    PositionIntent.TRIM: TradeAction.SELL,
    PositionIntent.EXIT: TradeAction.SELL,
    PositionIntent.HOLD: TradeAction.HOLD,
}

DEFAULT_CONFIDENCE = 50.0


class TradingDecision(BaseModel):
    action: TradeAction
    intent: PositionIntent | None = None
    confidence: float = Field(default=DEFAULT_CONFIDENCE, ge=0, le=100)
    rationale: str = ""
    structured: bool = True

    @field_validator("action", "intent", mode="before")
    @classmethod
    def _upper(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("confidence", mode="before")
    @classmethod
    def _percent(cls, v):
        # Some providers answer 0.72 instead of 72.
        if isinstance(v, (int, float)) and 0 < v <= 1:
            return float(v) * 100
        return v

    @model_validator(mode="after")
    def _fill_intent(self) -> TradingDecision:
        if self.intent is None:
            self.intent = {
                TradeAction.BUY: PositionIntent.BUILD,
                TradeAction.SELL: PositionIntent.TRIM,
                TradeAction.HOLD: PositionIntent.HOLD,
            }[self.action]
        return self


# ----------------------------------------------------------------------
# Heuristic fallback
# ----------------------------------------------------------------------

_EXIT_PHRASES = ("full exit", "exit position", "close position", "liquidate", "close out")
_TRIM_PHRASES = (
    "trim", "partial sell", "scale out", "take profit", "reduce exposure", "lock in gains",
)
_ADD_PHRASES = (
    "average down", "add to position", "scale in", "increase position", "double down", "top up",
)
_BUILD_PHRASES = ("build position", "initiate position", "open position", "start position")
_BUILD_WORDS = re.compile(r"\b(build|go)\b")

_ACTION_PATTERNS = [
    re.compile(r"(?:final\s+)?(?:decision|recommendation|action)\s*[:\-]\s*\**\s*(BUY|SELL|HOLD)\b", re.I),
    re.compile(r"\bI\s+recommend\s+(?:a\s+)?(BUY|SELL|HOLD)(?:ING)?\b", re.I),
]
_CONFIDENCE = re.compile(r"confidence(?:\s+level)?\s*(?:[:\-]|of|is)?\s*(\d{1,3}(?:\.\d+)?)\s*(%)?", re.I)


def extract_action(text: str) -> TradeAction:
    for pattern in _ACTION_PATTERNS:
        m = pattern.search(text)
        if m:
            return TradeAction(m.group(1).upper())
    upper = text.upper()
    counts = {a: len(re.findall(rf"\b{a.value}\b", upper)) for a in TradeAction}
    best = max(counts, key=lambda a: counts[a])
    return best if counts[best] > 0 else TradeAction.HOLD


def extract_confidence(text: str) -> float:
    m = _CONFIDENCE.search(text)
    if not m:
        return DEFAULT_CONFIDENCE
    value = float(m.group(1))
    if value <= 1 and not m.group(2):
        value *= 100
    return max(0.0, min(100.0, value))


def deduce_intent(text: str, action: TradeAction, has_position: bool = False) -> PositionIntent:
    """Map free-text position language to an intent; fall back on the action."""
    lower = text.lower()
    if any(p in lower for p in _EXIT_PHRASES):
        return PositionIntent.EXIT if has_position else PositionIntent.HOLD
    if any(p in lower for p in _TRIM_PHRASES):
        return PositionIntent.TRIM if has_position else PositionIntent.HOLD
    if any(p in lower for p in _ADD_PHRASES):
        return PositionIntent.ADD if has_position else PositionIntent.BUILD
    if not has_position and action != TradeAction.SELL:
        if any(p in lower for p in _BUILD_PHRASES) or _BUILD_WORDS.search(lower):
            return PositionIntent.BUILD
    if action == TradeAction.BUY:
        return PositionIntent.ADD if has_position else PositionIntent.BUILD
    if action == TradeAction.SELL:
        return PositionIntent.TRIM if has_position else PositionIntent.EXIT
    return PositionIntent.HOLD


def parse_structured(raw: str) -> TradingDecision | None:
    data = extract_json(raw)
    if data is None:
        return None
    try:
        return TradingDecision.model_validate(
            {
                "action": data.get("action") or data.get("decision"),
                "intent": data.get("intent"),
                "confidence": data.get("confidence", DEFAULT_CONFIDENCE),
                "rationale": data.get("rationale") or data.get("summary") or "",
            }
        )
    except ValidationError as e:
        logger.info("Structured decision rejected, falling back to heuristics: %s", e.errors()[0]["msg"])
        return None


def extract_decision(raw: str, has_position: bool = False) -> TradingDecision:
    decision = parse_structured(raw)
    if decision is not None:
        return decision
    action = extract_action(raw)
    intent = deduce_intent(raw, action, has_position)
    return TradingDecision(
        action=INTENT_ACTIONS[intent],
        intent=intent,
        confidence=extract_confidence(raw),
        rationale=raw.strip()[:2000],
        structured=False,
    )


def apply_portfolio_constraints(
    decision: TradingDecision,
    *,
    has_position: bool,
    cash_available: float,
) -> TradingDecision:
    """Reconcile an intent with what the account can actually do."""
    intent = decision.intent
    if intent in (PositionIntent.BUILD, PositionIntent.ADD) and cash_available <= 0:
        intent = PositionIntent.HOLD
    elif intent == PositionIntent.BUILD and has_position:
        intent = PositionIntent.ADD
    elif intent == PositionIntent.ADD and not has_position:
        intent = PositionIntent.BUILD
    elif intent in (PositionIntent.TRIM, PositionIntent.EXIT) and not has_position:
        intent = PositionIntent.HOLD
    if intent == decision.intent:
        return decision
    return decision.model_copy(update={"intent": intent, "action": INTENT_ACTIONS[intent]})
