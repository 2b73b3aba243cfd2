import asyncio

import pytest

from smarthealth.models.narrative import CachedNarrative, GuardedAIOutput
from smarthealth.models.source import SourceTag
from smarthealth.services.narrative_cache import NarrativeCache, fingerprint
from smarthealth.services.single_flight import SingleFlight


def _entry(kind="lab-trend-narrative", status="ok", text="Narrative."):
    output = GuardedAIOutput(text=text, disclaimer="d", status=status)
    return CachedNarrative(kind=kind, fingerprint="fp", output=output)


class TestFingerprint:
    def test_key_order_does_not_matter(self):
        assert fingerprint("k", {"a": 1, "b": [1, 2]}) == fingerprint("k", {"b": [1, 2], "a": 1})

    def test_kind_namespaces_key(self):
        assert fingerprint("a", {"x": 1}) != fingerprint("b", {"x": 1})
        assert fingerprint("a", {"x": 1}).startswith("a:")

    def test_value_change_changes_key(self):
        assert fingerprint("k", {"x": 1}) != fingerprint("k", {"x": 2})

    def test_models_are_encoded(self):
        tag = SourceTag(system_name="Epic")
        assert fingerprint("k", {"s": tag}) == fingerprint("k", {"s": {"system_name": "Epic", "system_id": "", "fetched_at": ""}})


class TestSingleFlight:
    async def test_concurrent_calls_share_one_task(self):
        flight = SingleFlight()
        calls = 0
        release = asyncio.Event()

        async def work():
            nonlocal calls
            calls += 1
            await release.wait()
            return "done"

        waiters = [asyncio.create_task(flight.do("key", work)) for _ in range(5)]
        await asyncio.sleep(0)
        assert flight.in_flight("key")
        release.set()
        results = await asyncio.gather(*waiters)

        assert results == ["done"] * 5
        assert calls == 1
        assert len(flight) == 0

    async def test_error_propagates_and_is_forgotten(self):
        flight = SingleFlight()

        async def fail():
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            await flight.do("key", fail)
        assert not flight.in_flight("key")

    async def test_cancelled_waiter_does_not_cancel_work(self):
        flight = SingleFlight()
        finished = asyncio.Event()
        release = asyncio.Event()

        async def work():
            await release.wait()
            finished.set()
            return 1

        waiter = asyncio.create_task(flight.do("key", work))
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        release.set()
        await asyncio.wait_for(finished.wait(), timeout=1)
        assert finished.is_set()


class TestNarrativeCache:
    async def test_miss_then_hit(self):
        cache = NarrativeCache()
        calls = 0

        async def factory():
            nonlocal calls
            calls += 1
            return _entry()

        first = await cache.get_or_create("k", factory)
        second = await cache.get_or_create("k", factory)

        assert first == second
        assert calls == 1
        assert cache.hits == 1
        assert cache.misses == 1
        assert len(cache) == 1

    async def test_concurrent_misses_generate_once(self):
        cache = NarrativeCache()
        calls = 0

        async def factory():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return _entry()

        results = await asyncio.gather(*(cache.get_or_create("k", factory) for _ in range(10)))

        assert calls == 1
        assert all(r == results[0] for r in results)
        assert len(cache) == 1

    async def test_timed_out_caller_still_populates_cache(self):
        cache = NarrativeCache()
        release = asyncio.Event()

        async def factory():
            await release.wait()
            return _entry(text="Late but complete.")

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(cache.get_or_create("k", factory), timeout=0.01)

        release.set()
        for _ in range(20):
            if cache.peek("k") is not None:
                break
            await asyncio.sleep(0.01)

        assert cache.peek("k").output.text == "Late but complete."

    @pytest.mark.parametrize("status", ["unavailable", "declined"])
    async def test_failure_outputs_not_cached(self, status):
        cache = NarrativeCache()
        calls = 0

        async def factory():
            nonlocal calls
            calls += 1
            return _entry(status=status)

        await cache.get_or_create("k", factory)
        await cache.get_or_create("k", factory)

        assert calls == 2
        assert len(cache) == 0

    async def test_fallback_outputs_are_cached(self):
        cache = NarrativeCache()

        async def factory():
            return _entry(status="fallback")

        await cache.get_or_create("k", factory)
        assert cache.peek("k") is not None

    async def test_invalidate_and_clear(self):
        cache = NarrativeCache()

        async def factory():
            return _entry()

        await cache.get_or_create("a", factory)
        await cache.get_or_create("b", factory)

        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        assert cache.clear() == 1
        assert len(cache) == 0
