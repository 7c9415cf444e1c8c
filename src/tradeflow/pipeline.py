"""Wiring: one place that builds the store, invoker, runtime and coordinator."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from functools import partial

from tradeflow.agents.base import BaseAgent
from tradeflow.agents.gateway import LLMGateway
from tradeflow.agents.roster import build_agents
from tradeflow.agents.runtime import AgentRuntime
from tradeflow.api.auth import create_token
from tradeflow.config import AppConfig
from tradeflow.invoker import BaseInvoker, LocalInvoker, RemoteInvoker
from tradeflow.models.envelope import COORDINATOR_FUNCTION
from tradeflow.portfolio import PortfolioSource, StaticPortfolioSource
from tradeflow.registry.base import WorkflowStore
from tradeflow.workflow import sequencer
from tradeflow.workflow.coordinator import Coordinator
from tradeflow.workflow.debate import DebateEngine
from tradeflow.workflow.errors import UnknownAgentError
from tradeflow.workflow.stale import StaleRunDetector

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    store: WorkflowStore
    gateway: LLMGateway
    invoker: BaseInvoker
    debate: DebateEngine
    runtime: AgentRuntime
    coordinator: Coordinator
    detector: StaleRunDetector

    async def dispatch(self, function_name: str, payload: dict) -> dict:
        """Run the named function in this process."""
        if function_name == COORDINATOR_FUNCTION:
            return await self.coordinator.handle_request(payload)
        agent = sequencer.agent_for_function(function_name)
        if payload.get("agent") != agent:
            raise UnknownAgentError(str(payload.get("phase")), str(payload.get("agent")))
        return await self.runtime.handle(payload)

    async def run_until_idle(self, timeout: float = 600.0) -> bool:
        """Wait for in-process work and pending leases to finish. Local invoker only."""
        if not isinstance(self.invoker, LocalInvoker):
            raise TypeError("run_until_idle needs a LocalInvoker")
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            await self.invoker.drain()
            if not self.runtime.watchdog.busy:
                return True
            await asyncio.sleep(0.005)
        return False

    async def start(self) -> None:
        await self.gateway.start()
        await self.invoker.start()

    async def close(self) -> None:
        await self.runtime.watchdog.shutdown()
        await self.invoker.close()
        await self.gateway.close()


def build_invoker(config: AppConfig) -> BaseInvoker:
    if not config.uses_remote_functions:
        return LocalInvoker()
    token_provider = None
    if config.service_secret_key:
        token_provider = partial(
            create_token, config.service_secret_key, config.service_token_expiry_minutes
        )
    return RemoteInvoker(config.functions_base_url, token_provider=token_provider)


def build_pipeline(
    config: AppConfig,
    store: WorkflowStore,
    *,
    gateway: LLMGateway | None = None,
    invoker: BaseInvoker | None = None,
    agents: dict[str, BaseAgent] | None = None,
    portfolio_source: PortfolioSource | None = None,
) -> Pipeline:
    gateway = gateway or LLMGateway.from_config(config)
    invoker = invoker or build_invoker(config)
    agents = agents or build_agents(gateway)
    portfolio_source = portfolio_source or StaticPortfolioSource(cash=config.paper_cash)

    debate = DebateEngine(store, default_rounds=config.debate_rounds)
    runtime = AgentRuntime(
        store,
        invoker,
        agents,
        debate,
        max_retries=config.agent_max_retries,
        timeout_ms=config.agent_timeout_ms,
        default_debate_rounds=config.debate_rounds,
    )
    coordinator = Coordinator(
        store,
        invoker,
        debate,
        portfolio_source=portfolio_source,
        default_debate_rounds=config.debate_rounds,
        stale_after=timedelta(minutes=config.stale_threshold_minutes),
    )
    detector = StaleRunDetector(store, coordinator, config.stale_threshold_minutes)

    if isinstance(invoker, LocalInvoker):
        invoker.register(COORDINATOR_FUNCTION, coordinator.handle_request)
        for name in sequencer.all_agents():
            invoker.register(sequencer.function_for(name), runtime.handle)

    logger.info(
        "Pipeline ready: %d agents, %s invoker, %d debate round(s)",
        len(agents), type(invoker).__name__, config.debate_rounds,
    )
    return Pipeline(
        store=store,
        gateway=gateway,
        invoker=invoker,
        debate=debate,
        runtime=runtime,
        coordinator=coordinator,
        detector=detector,
    )
