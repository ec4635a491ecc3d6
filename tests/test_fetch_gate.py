"""
Tests for fetch coalescing.
"""

import asyncio

import pytest

from crm_core.cache.gate import FetchGate


class TestFetchGate:
    """Test at-most-one-in-flight-per-key semantics."""

    async def test_concurrent_callers_share_one_fetch(self):
        """The producer runs once and every caller gets the same value."""
        gate = FetchGate()
        release = asyncio.Event()
        calls = 0

        async def producer():
            nonlocal calls
            calls += 1
            await release.wait()
            return {"rows": 3}

        tasks = [asyncio.create_task(gate.run("k", producer)) for _ in range(5)]
        await asyncio.sleep(0)
        assert gate.is_in_flight("k")

        release.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert all(r is results[0] for r in results)
        assert not gate.is_in_flight("k")
        assert gate.stats()["fetches_started"] == 1
        assert gate.stats()["fetches_coalesced"] == 4

    async def test_failure_reaches_every_waiter(self):
        """All callers observe the same exception."""
        gate = FetchGate()
        release = asyncio.Event()

        async def producer():
            await release.wait()
            raise RuntimeError("backend down")

        tasks = [asyncio.create_task(gate.run("k", producer)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, RuntimeError) for r in results)
        assert all(r is results[0] for r in results)

    async def test_failed_fetch_releases_key(self):
        """A failure does not block the key; the next call fetches again."""
        gate = FetchGate()
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("first call fails")
            return "ok"

        with pytest.raises(RuntimeError):
            await gate.run("k", flaky)
        assert not gate.is_in_flight("k")
        assert await gate.run("k", flaky) == "ok"
        assert calls == 2

    async def test_sequential_calls_are_not_coalesced(self):
        """Once a fetch completes, a later call runs the producer again."""
        gate = FetchGate()
        calls = 0

        async def producer():
            nonlocal calls
            calls += 1
            return calls

        assert await gate.run("k", producer) == 1
        assert await gate.run("k", producer) == 2

    async def test_different_keys_run_independently(self):
        """Coalescing is per key."""
        gate = FetchGate()
        release = asyncio.Event()
        seen = []

        async def producer(name):
            seen.append(name)
            await release.wait()
            return name

        a = asyncio.create_task(gate.run("a", lambda: producer("a")))
        b = asyncio.create_task(gate.run("b", lambda: producer("b")))
        await asyncio.sleep(0)
        assert gate.active_requests == 2

        release.set()
        assert await asyncio.gather(a, b) == ["a", "b"]
        assert sorted(seen) == ["a", "b"]

    async def test_cancelled_waiter_does_not_cancel_fetch(self):
        """Cancelling a joiner leaves the shared fetch running."""
        gate = FetchGate()
        release = asyncio.Event()

        async def producer():
            await release.wait()
            return 42

        first = asyncio.create_task(gate.run("k", producer))
        await asyncio.sleep(0)
        joiner = asyncio.create_task(gate.run("k", producer))
        await asyncio.sleep(0)

        joiner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await joiner

        release.set()
        assert await first == 42

    async def test_cancelled_originator_does_not_cancel_joiners(self):
        """The first caller's cancellation leaves the fetch running for the others."""
        gate = FetchGate()
        release = asyncio.Event()
        calls = 0

        async def producer():
            nonlocal calls
            calls += 1
            await release.wait()
            return {"rows": 7}

        originator = asyncio.create_task(gate.run("k", producer))
        await asyncio.sleep(0)
        joiner = asyncio.create_task(gate.run("k", producer))
        await asyncio.sleep(0)

        originator.cancel()
        with pytest.raises(asyncio.CancelledError):
            await originator
        assert gate.is_in_flight("k")

        release.set()
        assert await joiner == {"rows": 7}
        assert calls == 1
        assert not gate.is_in_flight("k")

    async def test_unjoined_failure_releases_key(self):
        """A fetch whose only caller was cancelled still releases its key on failure."""
        gate = FetchGate()
        release = asyncio.Event()

        async def producer():
            await release.wait()
            raise RuntimeError("backend down")

        caller = asyncio.create_task(gate.run("k", producer))
        await asyncio.sleep(0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        release.set()
        for _ in range(5):
            await asyncio.sleep(0)
        assert not gate.is_in_flight("k")
