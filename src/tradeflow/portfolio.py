"""Read-only account/position data consumed by portfolio routing."""

from __future__ import annotations

import abc
from dataclasses import asdict, dataclass, field


@dataclass
class PositionSnapshot:
    ticker: str
    quantity: float
    market_value: float
    avg_cost: float = 0.0


@dataclass
class PortfolioSnapshot:
    cash: float
    equity: float
    positions: list[PositionSnapshot] = field(default_factory=list)

    def position_for(self, ticker: str) -> PositionSnapshot | None:
        for p in self.positions:
            if p.ticker == ticker and p.quantity:
                return p
        return None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> PortfolioSnapshot:
        data = data or {}
        return cls(
            cash=float(data.get("cash", 0)),
            equity=float(data.get("equity", 0)),
            positions=[PositionSnapshot(**p) for p in data.get("positions", [])],
        )


class PortfolioSource(abc.ABC):
    @abc.abstractmethod
    def snapshot(self, user_id: str, ticker: str) -> PortfolioSnapshot:
        """Account cash and open positions for the user."""


class StaticPortfolioSource(PortfolioSource):
    """Fixed paper account; used when no broker integration is wired in."""

    def __init__(self, cash: float, positions: list[PositionSnapshot] | None = None) -> None:
        self._cash = cash
        self._positions = list(positions or [])

    def snapshot(self, user_id: str, ticker: str) -> PortfolioSnapshot:
        equity = self._cash + sum(p.market_value for p in self._positions)
        return PortfolioSnapshot(cash=self._cash, equity=equity, positions=list(self._positions))
