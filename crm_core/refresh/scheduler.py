"""
Periodic background refresh with overlap protection.

One timer task per scheduler. Each tick starts the refresh callback unless the
previous run is still in flight, in which case the tick is skipped (never
queued or replayed). Stopping cancels future ticks only; a run already in
flight completes and its owner decides whether to apply its result.
"""

import asyncio
import inspect
import weakref
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from crm_core.utils.logging import get_logger

logger = get_logger(__name__)

RefreshCallback = Callable[[], Awaitable[object]]


@dataclass(frozen=True)
class RefreshConfig:
    """Timer settings; changed only through ``reconfigure``."""
    interval_seconds: float
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")


class RefreshScheduler:
    """
    Stopped -> start() -> Running -> stop() -> Stopped.

    ``reconfigure`` while running restarts the timer with the new interval.
    Lifecycle misuse (start twice, reconfigure while stopped) is corrected and
    logged rather than raised.

    A bound-method callback is held weakly so the scheduler never keeps its
    owner alive; if the owner is collected the scheduler stops itself.
    """

    def __init__(
        self,
        callback: RefreshCallback,
        interval_seconds: float = 300.0,
        name: str = "refresh",
    ):
        if inspect.ismethod(callback):
            self._callback_ref = weakref.WeakMethod(callback)
        else:
            self._callback_ref = lambda: callback
        self.name = name
        self._config = RefreshConfig(interval_seconds=interval_seconds, enabled=False)

        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Task] = None
        self._generation = 0

        self.ticks = 0
        self.runs = 0
        self.skipped_ticks = 0
        self.failures = 0

    @property
    def config(self) -> RefreshConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._timer is not None

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def start(self, interval_seconds: Optional[float] = None) -> None:
        """Start ticking every ``interval_seconds`` (first tick after one interval)."""
        if self.is_running:
            logger.warning("Refresh scheduler already running, ignoring start", scheduler=self.name)
            return

        interval = self._config.interval_seconds if interval_seconds is None else interval_seconds
        self._config = RefreshConfig(interval_seconds=interval, enabled=True)
        self._generation += 1
        self._timer = asyncio.get_running_loop().create_task(
            self._tick_loop(self._generation, interval),
            name=f"{self.name}-timer",
        )
        logger.info("Refresh scheduler started", scheduler=self.name, interval=interval)

    def stop(self) -> None:
        """Cancel future ticks. Safe to call any number of times."""
        self._config = RefreshConfig(interval_seconds=self._config.interval_seconds, enabled=False)
        if self._timer is None:
            return

        # Bumping the generation makes a tick already woken by the loop bail out
        self._generation += 1
        self._timer.cancel()
        self._timer = None
        logger.info("Refresh scheduler stopped", scheduler=self.name)

    def reconfigure(self, interval_seconds: float, enabled: Optional[bool] = None) -> None:
        """Replace the interval; restarts the timer when running."""
        enabled = self._config.enabled if enabled is None else enabled
        new_config = RefreshConfig(interval_seconds=interval_seconds, enabled=enabled)

        if not self.is_running:
            if enabled:
                logger.warning(
                    "Reconfigure on stopped scheduler, recording interval only",
                    scheduler=self.name,
                    interval=interval_seconds,
                )
            self._config = RefreshConfig(interval_seconds=interval_seconds, enabled=False)
            return

        self.stop()
        if new_config.enabled:
            self.start(new_config.interval_seconds)
        else:
            self._config = RefreshConfig(interval_seconds=interval_seconds, enabled=False)

    async def wait_idle(self) -> None:
        """Wait for the in-flight run, if any, to finish."""
        task = self._in_flight
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _tick_loop(self, generation: int, interval: float) -> None:
        """Main timer loop."""
        try:
            while True:
                await asyncio.sleep(interval)
                if generation != self._generation:
                    return
                self._tick()
        except asyncio.CancelledError:
            pass

    def _tick(self) -> None:
        self.ticks += 1
        if self.in_flight:
            self.skipped_ticks += 1
            logger.debug("Refresh tick skipped, previous run in flight", scheduler=self.name)
            return

        callback = self._callback_ref()
        if callback is None:
            logger.info("Refresh owner collected, stopping scheduler", scheduler=self.name)
            self.stop()
            return

        self.runs += 1
        self._in_flight = asyncio.get_running_loop().create_task(
            self._run(callback),
            name=f"{self.name}-run",
        )

    async def _run(self, callback: RefreshCallback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error("Refresh run failed", scheduler=self.name, error=str(e))
