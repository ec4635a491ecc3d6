"""
Request coalescing for cache-miss thundering herd protection.

When N coroutines miss the cache for the same key at once, only the first one
starts the producer; every caller awaits the same in-flight task and receives
the same value or the same exception.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from crm_core.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class InFlightFetch:
    """Tracks an in-progress producer call."""
    task: asyncio.Task
    waiter_count: int = 0
    started_at: float = field(default=0.0)


class FetchGate:
    """
    At most one concurrent fetch per key.

    Pattern:
    - First caller for a key starts the producer in a task owned by the gate
    - Every caller, the first included, awaits that task through
      ``asyncio.shield``: a cancelled caller never cancels the shared fetch
      or the other callers
    - On completion the key is released before waiters are woken, so a
      failed fetch never blocks the key
    - Failures are not retried here; they reach every waiter

    Usage:
        gate = FetchGate()
        result = await gate.run("organizations:ab12", lambda: api.query(desc))
    """

    def __init__(self) -> None:
        self._in_flight: dict[str, InFlightFetch] = {}
        self._started = 0
        self._coalesced = 0

    async def run(self, key: str, producer: Callable[[], Awaitable[Any]]) -> Any:
        """Join the in-flight fetch for ``key`` or start a new one."""
        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            in_flight.waiter_count += 1
            self._coalesced += 1
            logger.debug("Coalescing fetch", key=key, waiters=in_flight.waiter_count)
        else:
            loop = asyncio.get_running_loop()
            task = loop.create_task(producer(), name=f"fetch:{key}")
            in_flight = InFlightFetch(task=task, started_at=loop.time())
            self._in_flight[key] = in_flight
            self._started += 1
            # Registered before any shield so the key is released first
            task.add_done_callback(lambda t: self._finish(key, in_flight))
            logger.debug("Initiating fetch", key=key)

        return await asyncio.shield(in_flight.task)

    def _finish(self, key: str, in_flight: InFlightFetch) -> None:
        if self._in_flight.get(key) is in_flight:
            del self._in_flight[key]
        task = in_flight.task
        if task.cancelled():
            return
        # Retrieving the exception keeps an unjoined failure quiet at GC time
        error = task.exception()
        if error is not None:
            logger.warning("Fetch failed", key=key, error=str(error))

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight fetches."""
        return len(self._in_flight)

    def stats(self) -> dict[str, Any]:
        """Get gate statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight),
            "fetches_started": self._started,
            "fetches_coalesced": self._coalesced,
        }
