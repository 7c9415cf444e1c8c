from __future__ import annotations

import abc
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from tradeflow.agents.gateway import LLMGateway
from tradeflow.models.envelope import AgentTask
from tradeflow.models.run import AnalysisRecord, Phase
from tradeflow.models.settings import RunSettings
from tradeflow.registry.base import WorkflowStore

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+)$")


@dataclass
class AgentContext:
    """Input to an agent: the task envelope plus the run as read at start."""

    task: AgentTask
    record: AnalysisRecord
    settings: RunSettings

    @property
    def run_id(self) -> str:
        return self.task.analysis_id

    @property
    def ticker(self) -> str:
        return self.record.ticker

    @property
    def debate_round(self) -> int | None:
        return self.task.debate_round


@dataclass
class AgentOutput:
    """Output from an agent."""

    agent_name: str
    summary: str
    data: dict = field(default_factory=dict)
    points: list[str] = field(default_factory=list)
    model: str = ""
    provider: str = ""
    token_usage: dict | None = None
    latency_ms: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_insight(self) -> dict:
        return {
            "summary": self.summary,
            "points": self.points,
            "data": self.data,
            "model": self.model,
            "provider": self.provider,
            "tokenUsage": self.token_usage,
            "latencyMs": self.latency_ms,
            "timestamp": self.timestamp.isoformat(),
        }


def extract_json(raw: str) -> dict | None:
    """Parse a JSON object out of an LLM reply, tolerating code fences and chatter."""
    candidates = [raw.strip()]
    candidates += [m.strip() for m in _FENCE.findall(raw)]
    start, end = raw.find("{"), raw.rfind("}")
    if start != -1 and end > start:
        candidates.append(raw[start : end + 1])
    for text in candidates:
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def bullet_points(text: str, limit: int = 8) -> list[str]:
    points = []
    for line in text.splitlines():
        m = _BULLET.match(line)
        if m:
            points.append(m.group(1).strip())
        if len(points) >= limit:
            break
    return points


def format_insights(record: AnalysisRecord, agents: list[str] | tuple[str, ...]) -> str:
    """Summaries written by earlier agents, for use as prompt context."""
    parts = []
    for name in agents:
        insight = record.agent_insights.get(name)
        if isinstance(insight, dict) and insight.get("summary"):
            parts.append(f"[{name.upper()}]\n{insight['summary']}")
    return "\n\n".join(parts) if parts else "(no prior analysis available)"


class BaseAgent(abc.ABC):
    """One stateless unit of work backed by a single LLM call."""

    phase: Phase

    def __init__(self, name: str, gateway: LLMGateway) -> None:
        self.name = name
        self.gateway = gateway

    @abc.abstractmethod
    def build_system_prompt(self) -> str:
        ...

    @abc.abstractmethod
    def build_user_prompt(self, ctx: AgentContext) -> str:
        ...

    def parse_response(self, raw: str, ctx: AgentContext) -> AgentOutput:
        """Default parse: JSON with ``summary``/``points`` if present, else free text."""
        data = extract_json(raw)
        if data is not None:
            summary = str(data.get("summary") or data.get("analysis") or raw.strip())
            points = [str(p) for p in data.get("points") or data.get("key_points") or []]
            extra = {k: v for k, v in data.items() if k not in ("summary", "points", "key_points")}
            return AgentOutput(agent_name=self.name, summary=summary, points=points, data=extra)
        return AgentOutput(agent_name=self.name, summary=raw.strip(), points=bullet_points(raw))

    async def analyze(self, ctx: AgentContext) -> AgentOutput:
        provider = ctx.settings.ai_provider or self.gateway.default_provider
        response = await self.gateway.call(
            provider=provider,
            system_prompt=self.build_system_prompt(),
            user_prompt=self.build_user_prompt(ctx),
            model=ctx.settings.ai_model,
            max_tokens=ctx.settings.max_tokens_for(self.phase),
        )
        output = self.parse_response(response.content, ctx)
        output.model = response.model
        output.provider = response.provider
        output.token_usage = response.token_usage
        output.latency_ms = response.latency_ms
        logger.info(
            "%s analysed %s in %dms (%s/%s)",
            self.name, ctx.ticker, response.latency_ms, response.provider, response.model,
        )
        return output

    def persist(self, store: WorkflowStore, ctx: AgentContext, output: AgentOutput) -> bool:
        """Write this agent's own insight entry. False means a lost race."""
        if not store.merge_field(ctx.run_id, f"agent_insights.{self.name}", output.to_insight()):
            return False
        store.append_to_array(
            ctx.run_id,
            "messages",
            {
                "agent": self.name,
                "type": "analysis",
                "message": output.summary[:500],
                "timestamp": output.timestamp.isoformat(),
            },
        )
        return True
