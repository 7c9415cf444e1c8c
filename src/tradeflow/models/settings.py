from __future__ import annotations

from dataclasses import asdict, dataclass

from tradeflow.models.run import Phase

DEFAULT_DEBATE_ROUNDS = 2
DEFAULT_MAX_TOKENS = 1200
DEFAULT_HISTORY_DAYS = 30


@dataclass(frozen=True)
class RunSettings:
    """Per-run settings supplied with the start-analysis trigger."""

    ai_provider: str = ""
    ai_model: str | None = None
    debate_rounds: int = DEFAULT_DEBATE_ROUNDS
    history_days: int = DEFAULT_HISTORY_DAYS
    analysis_max_tokens: int = DEFAULT_MAX_TOKENS
    research_max_tokens: int = DEFAULT_MAX_TOKENS
    trading_max_tokens: int = DEFAULT_MAX_TOKENS
    risk_max_tokens: int = DEFAULT_MAX_TOKENS
    portfolio_max_tokens: int = DEFAULT_MAX_TOKENS

    def max_tokens_for(self, phase: Phase | str) -> int:
        return getattr(self, f"{Phase(phase).value}_max_tokens")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None, default_debate_rounds: int = DEFAULT_DEBATE_ROUNDS) -> RunSettings:
        """Build settings, accepting both stored keys and the trigger's aliases."""
        data = data or {}
        rounds = data.get("debate_rounds", data.get("research_debate_rounds", default_debate_rounds))
        history = data.get("history_days", data.get("analysis_history_days", DEFAULT_HISTORY_DAYS))
        kwargs: dict = {
            "ai_provider": data.get("ai_provider") or "",
            "ai_model": data.get("ai_model") or None,
            "debate_rounds": max(1, int(rounds)),
            "history_days": int(history),
        }
        for phase in Phase:
            key = f"{phase.value}_max_tokens"
            if data.get(key):
                kwargs[key] = int(data[key])
        return cls(**kwargs)
