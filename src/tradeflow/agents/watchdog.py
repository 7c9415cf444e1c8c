"""Lease scheduler for in-flight agent attempts.

Every attempt holds one lease keyed by (run, phase, agent, attempt). The
lease is a deadline timer on the running event loop; clearing it on
completion is all the agent code has to do. When a deadline passes first
the expiry callback decides whether to retry or give up.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from tradeflow.models.envelope import AgentTask

logger = logging.getLogger(__name__)

LeaseKey = tuple[str, str, str, int]
ExpiryHandler = Callable[[AgentTask], Awaitable[None]]


def lease_key(task: AgentTask) -> LeaseKey:
    return (task.analysis_id, task.phase, task.agent, task.attempt)


class Watchdog:
    def __init__(self, on_expired: ExpiryHandler) -> None:
        self._on_expired = on_expired
        self._timers: dict[LeaseKey, asyncio.TimerHandle] = {}
        self._firing: set[asyncio.Task] = set()

    def arm(self, task: AgentTask, timeout_s: float) -> LeaseKey:
        key = lease_key(task)
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(timeout_s, self._fire, key, task)
        logger.debug("Armed %.1fs lease for %s", timeout_s, key)
        return key

    def clear(self, task: AgentTask) -> bool:
        handle = self._timers.pop(lease_key(task), None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def _fire(self, key: LeaseKey, task: AgentTask) -> None:
        if self._timers.pop(key, None) is None:
            return
        logger.warning(
            "Lease expired for %s/%s of %s (attempt %d)",
            task.phase, task.agent, task.analysis_id, task.attempt,
        )
        fut = asyncio.ensure_future(self._on_expired(task))
        self._firing.add(fut)
        fut.add_done_callback(self._on_done)

    def _on_done(self, fut: asyncio.Task) -> None:
        self._firing.discard(fut)
        if not fut.cancelled() and fut.exception() is not None:
            logger.error("Lease expiry handler raised", exc_info=fut.exception())

    @property
    def active_leases(self) -> list[LeaseKey]:
        return list(self._timers)

    @property
    def busy(self) -> bool:
        return bool(self._timers or self._firing)

    async def shutdown(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for fut in list(self._firing):
            fut.cancel()
        await asyncio.gather(*list(self._firing), return_exceptions=True)
        self._firing.clear()
