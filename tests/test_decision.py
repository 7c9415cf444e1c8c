from __future__ import annotations

import pytest
from pydantic import ValidationError

from tradeflow.agents.decision import (
    PositionIntent,
    TradeAction,
    TradingDecision,
    apply_portfolio_constraints,
    deduce_intent,
    extract_action,
    extract_confidence,
    extract_decision,
)


class TestTradingDecision:
    def test_normalises_case_and_fraction_confidence(self) -> None:
        decision = TradingDecision(action="buy", confidence=0.8)
        assert decision.action == TradeAction.BUY
        assert decision.confidence == 80.0
        assert decision.intent == PositionIntent.BUILD

    def test_default_intent_per_action(self) -> None:
        assert TradingDecision(action="SELL").intent == PositionIntent.TRIM
        assert TradingDecision(action="HOLD").intent == PositionIntent.HOLD

    def test_rejects_out_of_range_confidence(self) -> None:
        with pytest.raises(ValidationError):
            TradingDecision(action="BUY", confidence=150)

    def test_rejects_unknown_action(self) -> None:
        with pytest.raises(ValidationError):
            TradingDecision(action="SHORT")


class TestExtractDecision:
    def test_structured_json(self) -> None:
        decision = extract_decision(
            '{"action": "SELL", "intent": "exit", "confidence": 64, "rationale": "Broken thesis."}'
        )
        assert decision.structured
        assert (decision.action, decision.intent) == (TradeAction.SELL, PositionIntent.EXIT)
        assert decision.confidence == 64.0
        assert decision.rationale == "Broken thesis."

    def test_fenced_json_with_chatter(self) -> None:
        raw = 'Here is my call:\n```json\n{"decision": "buy", "confidence": 70}\n```\nThanks.'
        decision = extract_decision(raw)
        assert decision.structured
        assert decision.action == TradeAction.BUY

    def test_invalid_json_falls_back_to_heuristics(self) -> None:
        raw = '{"action": "BUY", "confidence": 400}\nFinal decision: BUY with confidence 60%'
        decision = extract_decision(raw)
        assert not decision.structured
        assert decision.action == TradeAction.BUY
        assert decision.confidence == 60.0

    def test_free_text_sell_with_position_trims(self) -> None:
        decision = extract_decision("Final decision: SELL. Confidence: 65%", has_position=True)
        assert decision.intent == PositionIntent.TRIM
        assert decision.action == TradeAction.SELL
        assert decision.confidence == 65.0

    def test_free_text_sell_without_position_exits(self) -> None:
        decision = extract_decision("Recommendation - SELL")
        assert decision.intent == PositionIntent.EXIT


class TestHeuristics:
    def test_explicit_action_beats_counts(self) -> None:
        assert extract_action("buy buy buy... but Final Decision: HOLD") == TradeAction.HOLD

    def test_recommend_phrase(self) -> None:
        assert extract_action("I recommend selling into strength") == TradeAction.SELL

    def test_majority_and_default(self) -> None:
        assert extract_action("BUY the dip, BUY more, maybe SELL later") == TradeAction.BUY
        assert extract_action("No opinion today.") == TradeAction.HOLD

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("confidence: 85", 85.0),
            ("Confidence level of 0.7", 70.0),
            ("confidence is 7%", 7.0),
            ("no number here", 50.0),
        ],
    )
    def test_confidence(self, text, expected) -> None:
        assert extract_confidence(text) == expected

    @pytest.mark.parametrize(
        "text,action,has_position,expected",
        [
            ("Time to liquidate.", TradeAction.SELL, True, PositionIntent.EXIT),
            ("Time to liquidate.", TradeAction.SELL, False, PositionIntent.HOLD),
            ("Take profit on half.", TradeAction.SELL, True, PositionIntent.TRIM),
            ("We should average down.", TradeAction.BUY, True, PositionIntent.ADD),
            ("We should average down.", TradeAction.BUY, False, PositionIntent.BUILD),
            ("Initiate position slowly.", TradeAction.HOLD, False, PositionIntent.BUILD),
            ("Looks fine.", TradeAction.BUY, True, PositionIntent.ADD),
            ("Looks fine.", TradeAction.HOLD, True, PositionIntent.HOLD),
        ],
    )
    def test_deduce_intent(self, text, action, has_position, expected) -> None:
        assert deduce_intent(text, action, has_position) == expected


class TestPortfolioConstraints:
    @pytest.mark.parametrize(
        "intent,has_position,cash,expected",
        [
            (PositionIntent.BUILD, False, 0.0, PositionIntent.HOLD),
            (PositionIntent.BUILD, True, 100.0, PositionIntent.ADD),
            (PositionIntent.ADD, False, 100.0, PositionIntent.BUILD),
            (PositionIntent.TRIM, False, 100.0, PositionIntent.HOLD),
            (PositionIntent.EXIT, True, 0.0, PositionIntent.EXIT),
        ],
    )
    def test_reconciles_intent(self, intent, has_position, cash, expected) -> None:
        decision = TradingDecision(action="HOLD", intent=intent, confidence=70)
        final = apply_portfolio_constraints(decision, has_position=has_position, cash_available=cash)
        assert final.intent == expected
        assert final.confidence == 70.0

    def test_unchanged_decision_is_returned_as_is(self) -> None:
        decision = TradingDecision(action="BUY", intent="BUILD")
        assert apply_portfolio_constraints(decision, has_position=False, cash_available=10) is decision

    def test_action_follows_new_intent(self) -> None:
        decision = TradingDecision(action="SELL", intent="TRIM")
        final = apply_portfolio_constraints(decision, has_position=False, cash_available=10)
        assert final.action == TradeAction.HOLD
