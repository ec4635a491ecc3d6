"""
Tests for the background refresh scheduler.
"""

import asyncio
import gc

import pytest

from crm_core.refresh import RefreshConfig, RefreshScheduler


class TestRefreshScheduler:
    """Test start/stop/reconfigure and overlap protection."""

    async def test_tick_skipped_while_run_in_flight(self):
        """A slow run causes ticks to be skipped, not queued."""
        release = asyncio.Event()
        calls = 0

        async def slow_refresh():
            nonlocal calls
            calls += 1
            await release.wait()

        scheduler = RefreshScheduler(slow_refresh, interval_seconds=0.01)
        scheduler.start()
        await asyncio.sleep(0.1)

        assert calls == 1
        assert scheduler.in_flight
        assert scheduler.skipped_ticks >= 1

        release.set()
        await asyncio.sleep(0.1)
        scheduler.stop()
        await scheduler.wait_idle()
        assert calls >= 2
        assert scheduler.runs == calls

    async def test_overlong_run_skips_exactly_one_tick(self):
        """A run longer than one interval skips the next tick; the one after starts a run."""
        loop = asyncio.get_running_loop()
        interval = 0.1
        starts = []

        async def long_refresh():
            starts.append(loop.time() - began)
            await asyncio.sleep(interval * 1.4)

        scheduler = RefreshScheduler(long_refresh, interval_seconds=interval)
        began = loop.time()
        scheduler.start()
        await asyncio.sleep(interval * 3.5)
        scheduler.stop()
        await scheduler.wait_idle()

        assert len(starts) == 2
        assert interval * 0.9 <= starts[0] < interval * 1.6
        assert interval * 2.8 <= starts[1] < interval * 3.5
        assert scheduler.runs == 2
        assert scheduler.skipped_ticks == 1

    async def test_no_callback_after_stop(self):
        """Stopping before the first tick means the callback never runs."""
        calls = 0

        async def refresh():
            nonlocal calls
            calls += 1

        scheduler = RefreshScheduler(refresh, interval_seconds=0.01)
        scheduler.start()
        scheduler.stop()
        await asyncio.sleep(0.05)
        assert calls == 0
        assert not scheduler.is_running

    async def test_stop_is_idempotent(self):
        """Stopping twice leaves the same state as stopping once."""
        async def refresh():
            pass

        scheduler = RefreshScheduler(refresh, interval_seconds=1)
        scheduler.stop()
        scheduler.start()
        scheduler.stop()
        state = (scheduler.is_running, scheduler.config)
        scheduler.stop()
        assert (scheduler.is_running, scheduler.config) == state
        assert scheduler.config.enabled is False

    async def test_stop_lets_in_flight_run_finish(self):
        """Work already started completes after stop."""
        release = asyncio.Event()
        finished = False

        async def refresh():
            nonlocal finished
            await release.wait()
            finished = True

        scheduler = RefreshScheduler(refresh, interval_seconds=0.01)
        scheduler.start()
        while not scheduler.in_flight:
            await asyncio.sleep(0.005)

        scheduler.stop()
        release.set()
        await scheduler.wait_idle()
        assert finished

    async def test_start_twice_is_ignored(self):
        """A second start keeps the running timer and interval."""
        async def refresh():
            pass

        scheduler = RefreshScheduler(refresh, interval_seconds=5)
        scheduler.start()
        scheduler.start(1)
        assert scheduler.is_running
        assert scheduler.config.interval_seconds == 5
        scheduler.stop()

    async def test_reconfigure_while_running_restarts(self):
        """The new interval takes effect immediately."""
        calls = 0

        async def refresh():
            nonlocal calls
            calls += 1

        scheduler = RefreshScheduler(refresh, interval_seconds=60)
        scheduler.start()
        scheduler.reconfigure(0.01)
        assert scheduler.is_running
        assert scheduler.config == RefreshConfig(interval_seconds=0.01, enabled=True)

        await asyncio.sleep(0.1)
        scheduler.stop()
        assert calls >= 1

    async def test_reconfigure_disable_stops(self):
        """Reconfiguring with enabled=False stops the timer."""
        async def refresh():
            pass

        scheduler = RefreshScheduler(refresh, interval_seconds=60)
        scheduler.start()
        scheduler.reconfigure(30, enabled=False)
        assert not scheduler.is_running
        assert scheduler.config.interval_seconds == 30

    def test_reconfigure_while_stopped_records_interval(self):
        """Reconfigure on a stopped scheduler only records the interval."""
        async def refresh():
            pass

        scheduler = RefreshScheduler(refresh, interval_seconds=60)
        scheduler.reconfigure(5)
        assert not scheduler.is_running
        assert scheduler.config.interval_seconds == 5

    async def test_failures_are_counted_and_ticking_continues(self):
        """A failing run is logged and the next tick still runs."""
        async def broken():
            raise RuntimeError("boom")

        scheduler = RefreshScheduler(broken, interval_seconds=0.01)
        scheduler.start()
        await asyncio.sleep(0.1)
        scheduler.stop()
        await scheduler.wait_idle()
        assert scheduler.failures >= 2
        assert scheduler.failures == scheduler.runs

    async def test_does_not_keep_owner_alive(self):
        """A collected owner stops its scheduler."""
        class Owner:
            async def refresh(self):
                pass

        owner = Owner()
        scheduler = RefreshScheduler(owner.refresh, interval_seconds=0.01)
        scheduler.start()
        del owner
        gc.collect()

        await asyncio.sleep(0.05)
        assert not scheduler.is_running
        assert scheduler.runs == 0

    def test_invalid_interval(self):
        """Intervals must be positive."""
        with pytest.raises(ValueError):
            RefreshConfig(interval_seconds=0)
