from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradeflow.agents.gateway import LLMGateway, LLMResponse
from tradeflow.invoker import BaseInvoker, InvokeResult
from tradeflow.models.run import Phase, RunStatus, StepStatus
from tradeflow.registry.memory import InMemoryRegistry
from tradeflow.workflow import sequencer

T0 = datetime(2025, 6, 2, 14, 30, tzinfo=timezone.utc)

# One reply every agent can parse: analysts read summary/points, researchers
# read argument, decision makers read action/intent/confidence.
AGENT_REPLY = json.dumps(
    {
        "summary": "Constructive setup with improving margins.",
        "points": ["Margins expanding", "Guidance raised"],
        "argument": "Revenue growth is re-accelerating while the multiple is below peers.",
        "action": "BUY",
        "intent": "BUILD",
        "confidence": 72,
        "rationale": "Upside outweighs the identified risks at current prices.",
    }
)


class StepClock:
    """Deterministic clock: each call is one second after the previous one."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def llm_response(content: str = AGENT_REPLY) -> LLMResponse:
    return LLMResponse(
        content=content,
        model="test-model",
        provider="test",
        token_usage={"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30},
        latency_ms=5,
    )


def new_run(store: InMemoryRegistry, ticker: str = "AAPL", user_id: str = "u1", **settings) -> str:
    """A running run with every step pending, as the coordinator leaves it."""
    run_id = store.create_run(ticker, user_id, dict(settings), sequencer.initial_steps())
    store.set_run_status(run_id, {RunStatus.PENDING}, RunStatus.RUNNING)
    return run_id


def complete_phase(store: InMemoryRegistry, run_id: str, phase: Phase, *, except_: tuple = ()) -> None:
    for agent in sequencer.PHASE_AGENTS[phase]:
        if agent in except_:
            continue
        store.set_step_status(
            run_id, phase, agent, {StepStatus.PENDING, StepStatus.RUNNING}, StepStatus.COMPLETED
        )


def write_round(store: InMemoryRegistry, run_id: str, round_number: int) -> None:
    store.open_debate_round(run_id, round_number)
    store.set_debate_side(run_id, round_number, "bull", f"bull {round_number}", ["b"])
    store.set_debate_side(run_id, round_number, "bear", f"bear {round_number}", ["s"])


@pytest.fixture
def store() -> InMemoryRegistry:
    return InMemoryRegistry(clock=StepClock())


@pytest.fixture
def invoker() -> MagicMock:
    inv = MagicMock(spec=BaseInvoker)
    inv.invoke = AsyncMock(return_value=InvokeResult(ok=True))
    return inv


@pytest.fixture
def gateway() -> MagicMock:
    gw = MagicMock(spec=LLMGateway)
    gw.default_provider = "test"
    gw.providers = ["test"]
    gw.call = AsyncMock(return_value=llm_response())
    return gw


def invoked(invoker: MagicMock, function_name: str) -> list[dict]:
    """Payloads the mocked invoker was asked to send to ``function_name``."""
    return [c.args[1] for c in invoker.invoke.call_args_list if c.args[0] == function_name]
