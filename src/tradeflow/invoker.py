"""Invoke agents and the coordinator by logical function name.

``RemoteInvoker`` POSTs the JSON envelope to ``{base_url}/functions/{name}``
and retries transport failures with exponential backoff. ``LocalInvoker``
schedules registered handlers on the running event loop, which is how the
``simulate`` command and the tests run a whole pipeline in one process.
"""

from __future__ import annotations

import abc
import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[dict]]


@dataclass
class InvokeResult:
    ok: bool
    error: str | None = None
    data: dict = field(default_factory=dict)


class BaseInvoker(abc.ABC):
    @abc.abstractmethod
    async def invoke(self, function_name: str, payload: dict) -> InvokeResult:
        """Send ``payload`` to the named function."""

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass


class RemoteInvoker(BaseInvoker):
    def __init__(
        self,
        base_url: str,
        *,
        token_provider: Callable[[], str] | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._client = client

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token_provider is not None:
            headers["Authorization"] = f"Bearer {self._token_provider()}"
        return headers

    async def invoke(self, function_name: str, payload: dict) -> InvokeResult:
        """POST the payload; only transport-level failures are retried."""
        if not self._client:
            await self.start()

        url = f"{self._base_url}/functions/{function_name}"
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                response = await self._client.post(url, json=payload, headers=self._headers())
                response.raise_for_status()
                data = response.json() if response.content else {}
                return InvokeResult(ok=True, data=data if isinstance(data, dict) else {})
            except (httpx.HTTPStatusError, httpx.RequestError) as e:
                last_error = e
                if attempt < self._max_retries - 1:
                    wait = self._backoff_base * 2**attempt  # 1s, 2s, 4s
                    logger.warning(
                        "Invoke %s attempt %d failed: %s. Retrying in %.1fs",
                        function_name,
                        attempt + 1,
                        e,
                        wait,
                    )
                    await asyncio.sleep(wait)

        logger.error(
            "Invoke %s failed after %d attempts: %s", function_name, self._max_retries, last_error
        )
        return InvokeResult(
            ok=False,
            error=f"network error invoking {function_name} after {self._max_retries} attempts: {last_error}",
        )


class LocalInvoker(BaseInvoker):
    """Fire-and-forget dispatch to in-process handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}
        self._tasks: set[asyncio.Task] = set()
        self.calls: list[tuple[str, dict]] = []

    def register(self, function_name: str, handler: Handler) -> None:
        self._handlers[function_name] = handler

    async def invoke(self, function_name: str, payload: dict) -> InvokeResult:
        self.calls.append((function_name, copy.deepcopy(payload)))
        handler = self._handlers.get(function_name)
        if handler is None:
            return InvokeResult(ok=False, error=f"network error: no handler for {function_name}")
        task = asyncio.create_task(handler(copy.deepcopy(payload)), name=function_name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return InvokeResult(ok=True)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Handler %s raised", task.get_name(), exc_info=task.exception())

    def calls_to(self, function_name: str) -> list[dict]:
        return [payload for name, payload in self.calls if name == function_name]

    async def drain(self) -> None:
        """Wait until every scheduled handler (and whatever it scheduled) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
