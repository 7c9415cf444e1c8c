from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger(__name__)

# Status codes that will not get better by retrying.
_FATAL_STATUS = {400, 401, 403, 404}

# (name, base url, default model, requests per minute, timeout seconds)
_HOSTED_PROVIDERS = (
    ("openai", "https://api.openai.com/v1", "gpt-4o-mini", 60, 60),
    ("anthropic", "https://api.anthropic.com/v1", "claude-sonnet-4-5-20250929", 60, 60),
    ("deepseek", "https://api.deepseek.com/v1", "deepseek-chat", 60, 120),
    ("groq", "https://api.groq.com/openai/v1", "llama-3.3-70b-versatile", 30, 15),
)


@dataclass
class LLMResponse:
    content: str
    model: str
    provider: str
    token_usage: dict  # {"prompt_tokens": N, "completion_tokens": M, "total_tokens": T}
    latency_ms: int
    finish_reason: str = "stop"


@dataclass
class ProviderConfig:
    name: str
    base_url: str
    api_key: str
    default_model: str
    rpm_limit: int = 60
    timeout_seconds: int = 60
    max_retries: int = 3


@dataclass
class _RateLimiter:
    """Simple sliding window rate limiter."""

    rpm_limit: int
    _timestamps: list[float] = field(default_factory=list)

    async def acquire(self) -> None:
        now = time.monotonic()
        self._timestamps = [t for t in self._timestamps if now - t < 60]
        if len(self._timestamps) >= self.rpm_limit:
            wait = 60 - (now - self._timestamps[0])
            if wait > 0:
                logger.info("Rate limit: waiting %.1fs", wait)
                await asyncio.sleep(wait)
        self._timestamps.append(time.monotonic())


def describe_http_error(error: Exception) -> str:
    """Turn a transport error into text the error classifier understands."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429:
            return "rate limit exceeded (HTTP 429)"
        if status in (401, 403):
            return f"invalid API key (HTTP {status})"
        if status in (408, 504):
            return f"provider timed out (HTTP {status})"
        return f"provider returned HTTP {status}"
    if isinstance(error, httpx.TimeoutException):
        return f"request timed out ({type(error).__name__})"
    return f"network error: {error}"


class LLMGateway:
    """Multi-provider LLM gateway.

    Providers use the OpenAI-compatible chat completions format, with
    Anthropic's Messages API handled transparently. Each call is rate
    limited per provider and retried with exponential backoff; the final
    failure is a single RuntimeError whose message carries the cause.
    """

    def __init__(self, default_provider: str = "", backoff_base: float = 1.0) -> None:
        self._providers: dict[str, ProviderConfig] = {}
        self._limiters: dict[str, _RateLimiter] = {}
        self._client: httpx.AsyncClient | None = None
        self._default_provider = default_provider
        self._backoff_base = backoff_base

    def register_provider(self, config: ProviderConfig) -> None:
        self._providers[config.name] = config
        self._limiters[config.name] = _RateLimiter(rpm_limit=config.rpm_limit)

    @property
    def providers(self) -> list[str]:
        return list(self._providers)

    @property
    def default_provider(self) -> str:
        if self._default_provider in self._providers:
            return self._default_provider
        if self._providers:
            return next(iter(self._providers))
        raise ValueError("No LLM providers configured")

    async def start(self) -> None:
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(120.0))

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def call(
        self,
        provider: str,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
        max_tokens: int = 1200,
        temperature: float = 0.3,
    ) -> LLMResponse:
        if provider not in self._providers:
            raise ValueError(f"Unknown provider: {provider}")

        config = self._providers[provider]
        limiter = self._limiters[provider]
        target_model = model or config.default_model

        if not self._client:
            await self.start()

        await limiter.acquire()

        is_anthropic = provider == "anthropic"
        url, headers, body = self._build_request(
            config, is_anthropic, target_model, system_prompt, user_prompt, max_tokens, temperature
        )

        last_error: Exception | None = None
        for attempt in range(config.max_retries):
            try:
                started = time.monotonic()
                response = await self._client.post(
                    url, json=body, headers=headers, timeout=config.timeout_seconds
                )
                response.raise_for_status()
                latency_ms = int((time.monotonic() - started) * 1000)
                return self._parse(response.json(), provider, target_model, latency_ms, is_anthropic)
            except (httpx.HTTPStatusError, httpx.RequestError) as e:
                last_error = e
                if isinstance(e, httpx.HTTPStatusError) and e.response.status_code in _FATAL_STATUS:
                    break
                if attempt < config.max_retries - 1:
                    wait = self._backoff_base * 2**attempt  # 1s, 2s, 4s
                    logger.warning(
                        "Provider %s attempt %d failed: %s. Retrying in %.1fs",
                        provider,
                        attempt + 1,
                        describe_http_error(e),
                        wait,
                    )
                    await asyncio.sleep(wait)

        raise RuntimeError(
            f"Provider {provider} failed after {config.max_retries} retries: "
            f"{describe_http_error(last_error)}"
        )

    @staticmethod
    def _build_request(
        config: ProviderConfig,
        is_anthropic: bool,
        model: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> tuple[str, dict, dict]:
        """Anthropic's Messages API takes the system prompt as a field, not a message."""
        body: dict = {"model": model, "max_tokens": max_tokens, "temperature": temperature}
        if is_anthropic:
            body["system"] = system_prompt
            body["messages"] = [{"role": "user", "content": user_prompt}]
            headers = {"x-api-key": config.api_key, "anthropic-version": "2023-06-01"}
            return f"{config.base_url}/messages", headers, body

        body["messages"] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        return f"{config.base_url}/chat/completions", {"Authorization": f"Bearer {config.api_key}"}, body

    @staticmethod
    def _parse(
        data: dict, provider: str, target_model: str, latency_ms: int, is_anthropic: bool
    ) -> LLMResponse:
        usage = data.get("usage", {})
        if is_anthropic:
            content = "".join(
                block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
            )
            return LLMResponse(
                content=content,
                model=data.get("model", target_model),
                provider=provider,
                token_usage={
                    "prompt_tokens": usage.get("input_tokens", 0),
                    "completion_tokens": usage.get("output_tokens", 0),
                    "total_tokens": usage.get("input_tokens", 0) + usage.get("output_tokens", 0),
                },
                latency_ms=latency_ms,
                finish_reason=data.get("stop_reason", "end_turn"),
            )

        choice = data["choices"][0]
        return LLMResponse(
            content=choice["message"]["content"],
            model=data.get("model", target_model),
            provider=provider,
            token_usage={
                "prompt_tokens": usage.get("prompt_tokens", 0),
                "completion_tokens": usage.get("completion_tokens", 0),
                "total_tokens": usage.get("total_tokens", 0),
            },
            latency_ms=latency_ms,
            finish_reason=choice.get("finish_reason", "stop"),
        )

    @classmethod
    def from_config(cls, config) -> LLMGateway:
        """Create gateway from AppConfig, registering every provider with a key set."""
        gw = cls(default_provider=config.default_ai_provider)
        for name, base_url, model, rpm, timeout in _HOSTED_PROVIDERS:
            api_key = getattr(config, f"{name}_api_key")
            if api_key:
                gw.register_provider(
                    ProviderConfig(
                        name=name,
                        base_url=base_url,
                        api_key=api_key,
                        default_model=model,
                        rpm_limit=rpm,
                        timeout_seconds=timeout,
                    )
                )

        logger.info("LLM gateway providers: %s", ", ".join(gw.providers) or "none")
        return gw
