"""Wire envelopes exchanged between agents, the coordinator and the invoker.

Field names on the wire are camelCase; the Python side uses snake_case.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import StrEnum

from tradeflow.models.run import ErrorType

COORDINATOR_FUNCTION = "analysis-coordinator"


class CompletionType(StrEnum):
    NORMAL = "normal"
    LAST_IN_PHASE = "last_in_phase"
    FALLBACK_INVOCATION_FAILED = "fallback_invocation_failed"
    AGENT_ERROR = "agent_error"


@dataclass(frozen=True)
class RetryEnvelope:
    """Watchdog bookkeeping carried in the call payload.

    ``attempt`` is zero-based: the original invocation is attempt 0, so an
    agent is invoked at most ``max_retries + 1`` times.
    """

    function_name: str
    attempt: int = 0
    max_retries: int = 3
    timeout_ms: int = 180_000
    original_start_time: datetime | None = None

    @classmethod
    def first(cls, function_name: str, max_retries: int, timeout_ms: int) -> RetryEnvelope:
        return cls(
            function_name=function_name,
            attempt=0,
            max_retries=max_retries,
            timeout_ms=timeout_ms,
            original_start_time=datetime.now(timezone.utc),
        )

    @property
    def can_retry(self) -> bool:
        return self.attempt < self.max_retries

    def next_attempt(self) -> RetryEnvelope:
        return replace(self, attempt=self.attempt + 1)

    def to_dict(self) -> dict:
        return {
            "attempt": self.attempt,
            "maxRetries": self.max_retries,
            "timeoutMs": self.timeout_ms,
            "originalStartTime": (
                self.original_start_time.isoformat() if self.original_start_time else None
            ),
            "functionName": self.function_name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> RetryEnvelope:
        started = data.get("originalStartTime")
        return cls(
            function_name=data.get("functionName", ""),
            attempt=int(data.get("attempt", 0)),
            max_retries=int(data.get("maxRetries", 3)),
            timeout_ms=int(data.get("timeoutMs", 180_000)),
            original_start_time=datetime.fromisoformat(started) if started else None,
        )


@dataclass(frozen=True)
class AgentTask:
    """Payload for invoking one agent of one run."""

    analysis_id: str
    ticker: str
    user_id: str
    phase: str
    agent: str
    debate_round: int | None = None
    retry: RetryEnvelope | None = None

    @property
    def attempt(self) -> int:
        return self.retry.attempt if self.retry else 0

    def with_retry(self, retry: RetryEnvelope) -> AgentTask:
        return replace(self, retry=retry)

    def to_payload(self) -> dict:
        payload: dict = {
            "analysisId": self.analysis_id,
            "ticker": self.ticker,
            "userId": self.user_id,
            "phase": self.phase,
            "agent": self.agent,
        }
        if self.debate_round is not None:
            payload["debateRound"] = self.debate_round
        if self.retry is not None:
            payload["_retry"] = self.retry.to_dict()
        return payload

    @classmethod
    def from_payload(cls, payload: dict) -> AgentTask:
        retry = payload.get("_retry")
        debate_round = payload.get("debateRound")
        return cls(
            analysis_id=payload["analysisId"],
            ticker=payload.get("ticker", ""),
            user_id=payload.get("userId", ""),
            phase=payload["phase"],
            agent=payload["agent"],
            debate_round=int(debate_round) if debate_round is not None else None,
            retry=RetryEnvelope.from_dict(retry) if retry else None,
        )


@dataclass(frozen=True)
class AgentSignal:
    """Completion callback consumed by the coordinator."""

    analysis_id: str
    ticker: str
    user_id: str
    phase: str
    agent: str
    completion_type: CompletionType
    error: str | None = None
    error_type: ErrorType | None = None
    failed_to_invoke: str | None = None

    def to_payload(self) -> dict:
        payload: dict = {
            "analysisId": self.analysis_id,
            "ticker": self.ticker,
            "userId": self.user_id,
            "phase": self.phase,
            "agent": self.agent,
            "completionType": self.completion_type.value,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.error_type is not None:
            payload["errorType"] = self.error_type.value
        if self.failed_to_invoke is not None:
            payload["failedToInvoke"] = self.failed_to_invoke
        return payload

    @classmethod
    def from_payload(cls, payload: dict) -> AgentSignal:
        error_type = payload.get("errorType")
        return cls(
            analysis_id=payload["analysisId"],
            ticker=payload.get("ticker", ""),
            user_id=payload.get("userId", ""),
            phase=payload["phase"],
            agent=payload["agent"],
            completion_type=CompletionType(payload["completionType"]),
            error=payload.get("error"),
            error_type=ErrorType(error_type) if error_type else None,
            failed_to_invoke=payload.get("failedToInvoke"),
        )
