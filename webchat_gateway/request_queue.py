"""Per-provider admission queue with requests-per-minute limiting.

Requests over the limit wait in FIFO order instead of being rejected.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, TypeVar

from webchat_gateway.models import QueuedTask

logger = logging.getLogger(__name__)

T = TypeVar("T")

WINDOW_SECONDS = 60.0
TIMER_SLACK_SECONDS = 0.1


class RequestAdmissionQueue:
    def __init__(
        self,
        window_seconds: float = WINDOW_SECONDS,
        timer_slack: float = TIMER_SLACK_SECONDS,
    ):
        self.window_seconds = window_seconds
        self.timer_slack = timer_slack
        self._limits: Dict[str, int] = {}
        self._queues: Dict[str, Deque[QueuedTask]] = {}
        self._processing: Dict[str, int] = {}
        self._timestamps: Dict[str, List[float]] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def set_limit(self, provider_id: str, max_per_minute: int) -> None:
        """Set the ceiling for ``provider_id``; zero or less means unlimited."""
        self._limits[provider_id] = max_per_minute
        if provider_id in self._queues:
            self._pump(provider_id)

    def get_limit(self, provider_id: str) -> int:
        return self._limits.get(provider_id, 0)

    async def enqueue(
        self, provider_id: str, action: Callable[[], Awaitable[T]]
    ) -> T:
        if self.get_limit(provider_id) <= 0:
            return await action()

        loop = asyncio.get_running_loop()
        task = QueuedTask(
            id=str(uuid.uuid4()), execute=action, future=loop.create_future()
        )
        self._queues.setdefault(provider_id, deque()).append(task)
        self._pump(provider_id)

        try:
            return await task.future
        except asyncio.CancelledError:
            if task.runner is not None and not task.runner.done():
                task.runner.cancel()
            raise

    def _prune(self, provider_id: str, now: float) -> List[float]:
        recent = [
            ts
            for ts in self._timestamps.get(provider_id, [])
            if now - ts < self.window_seconds
        ]
        self._timestamps[provider_id] = recent
        return recent

    def _pump(self, provider_id: str) -> None:
        queue = self._queues.get(provider_id)
        while queue:
            head = queue[0]
            if head.future.done():
                # Caller went away while waiting.
                queue.popleft()
                continue

            limit = self.get_limit(provider_id)
            now = time.monotonic()
            recent = self._prune(provider_id, now)

            if limit > 0 and len(recent) >= limit:
                self._arm_timer(provider_id, recent[0] + self.window_seconds - now)
                return

            queue.popleft()
            recent.append(now)
            self._start(provider_id, head)

    def _arm_timer(self, provider_id: str, wait: float) -> None:
        if provider_id in self._timers:
            return
        delay = max(wait, 0.0) + self.timer_slack
        logger.info(
            "Rate limit reached for %s, %d queued, retrying in %.1fs",
            provider_id,
            len(self._queues.get(provider_id, ())),
            delay,
        )
        loop = asyncio.get_running_loop()
        self._timers[provider_id] = loop.call_later(
            delay, self._on_timer, provider_id
        )

    def _on_timer(self, provider_id: str) -> None:
        self._timers.pop(provider_id, None)
        self._pump(provider_id)

    def _start(self, provider_id: str, task: QueuedTask) -> None:
        self._processing[provider_id] = self._processing.get(provider_id, 0) + 1
        task.runner = asyncio.ensure_future(self._run(provider_id, task))

    async def _run(self, provider_id: str, task: QueuedTask) -> None:
        try:
            result: Any = await task.execute()
        except asyncio.CancelledError:
            if not task.future.done():
                task.future.cancel()
            raise
        except Exception as exc:
            if not task.future.done():
                task.future.set_exception(exc)
        else:
            if not task.future.done():
                task.future.set_result(result)
        finally:
            self._processing[provider_id] = max(
                0, self._processing.get(provider_id, 1) - 1
            )
            self._pump(provider_id)

    def get_status(self) -> List[Dict[str, object]]:
        now = time.monotonic()
        provider_ids = list(dict.fromkeys([*self._limits, *self._queues]))
        return [
            {
                "providerId": provider_id,
                "queued": len(self._queues.get(provider_id, ())),
                "processing": self._processing.get(provider_id, 0),
                "maxPerMinute": self.get_limit(provider_id),
                "requestsInWindow": len(self._prune(provider_id, now)),
            }
            for provider_id in provider_ids
        ]

    def close(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
