"""
Unit tests for the single-flight generation cache.
"""

import asyncio
import threading

import pytest

from aves.cache import GenerationCache, InMemoryCacheStore, exercise_cache_key
from aves.cache.generation_cache import CONTENT_UNAVAILABLE
from aves.core.errors import ExternalServiceError, RateLimitError

KEY = exercise_cache_key("contextual_fill", ["term-pico"], difficulty=1)


@pytest.fixture
def delays():
    """Backoff delays requested by the cache."""
    return []


@pytest.fixture
def cache(clock, delays):
    async def fake_sleep(seconds):
        delays.append(seconds)

    return GenerationCache(InMemoryCacheStore(), clock=clock, sleep=fake_sleep)


class Generator:
    """Scripted generator: each call pops the next outcome."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class TestHitsAndMisses:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, cache, contextual_fill_payload):
        generate = Generator(contextual_fill_payload)

        first = await cache.get_or_generate(KEY, generate)
        second = await cache.get_or_generate(KEY, generate)

        assert first.hit is False
        assert second.hit is True
        assert second.payload == first.payload
        assert generate.calls == 1

        stats = cache.stats()
        assert (stats.hits, stats.misses, stats.generations) == (1, 1, 1)
        assert stats.size == 1
        assert stats.hit_rate == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_expired_entry_is_regenerated(self, cache, clock, contextual_fill_payload):
        generate = Generator(contextual_fill_payload)

        await cache.get_or_generate(KEY, generate)
        clock.advance(days=6, hours=23)
        assert (await cache.get_or_generate(KEY, generate)).hit is True

        clock.advance(hours=1)
        result = await cache.get_or_generate(KEY, generate)

        assert result.hit is False
        assert generate.calls == 2

    @pytest.mark.asyncio
    async def test_returned_payload_is_a_copy(self, cache, contextual_fill_payload):
        generate = Generator(contextual_fill_payload)

        first = await cache.get_or_generate(KEY, generate)
        first.payload["options"].clear()

        second = await cache.get_or_generate(KEY, generate)
        assert len(second.payload["options"]) == 4


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_misses_generate_once(self, cache, contextual_fill_payload):
        release = asyncio.Event()
        calls = 0

        async def generate():
            nonlocal calls
            calls += 1
            await release.wait()
            return contextual_fill_payload

        tasks = [asyncio.create_task(cache.get_or_generate(KEY, generate)) for _ in range(10)]
        await asyncio.sleep(0)

        assert cache.is_in_flight(KEY)
        release.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert sum(r.coalesced for r in results) == 9
        assert all(r.payload == results[0].payload for r in results)
        assert not cache.is_in_flight(KEY)

        stats = cache.stats()
        assert stats.generations == 1
        assert stats.coalesced == 9
        assert stats.in_flight == 0

    @pytest.mark.asyncio
    async def test_leader_failure_reaches_waiters(self, clock):
        cache = GenerationCache(InMemoryCacheStore(), max_attempts=1, clock=clock)
        release = asyncio.Event()
        calls = 0

        async def generate():
            nonlocal calls
            calls += 1
            await release.wait()
            raise ExternalServiceError("upstream down")

        tasks = [asyncio.create_task(cache.get_or_generate(KEY, generate)) for _ in range(3)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert calls == 1
        assert all(isinstance(r, ExternalServiceError) for r in results)
        assert not cache.is_in_flight(KEY)
        assert len(cache.store) == 0

    @pytest.mark.asyncio
    async def test_waiter_takes_over_when_leader_is_cancelled(self, cache, contextual_fill_payload):
        started = asyncio.Event()

        async def stuck():
            started.set()
            await asyncio.sleep(3600)

        leader = asyncio.create_task(cache.get_or_generate(KEY, stuck))
        await started.wait()
        waiter = asyncio.create_task(cache.get_or_generate(KEY, Generator(contextual_fill_payload)))
        await asyncio.sleep(0)

        leader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leader
        result = await waiter

        assert result.hit is False
        assert result.coalesced is False
        assert result.payload["correct_answer"] == "el pico"

    def test_callers_on_separate_event_loops_share_one_generation(self, clock, contextual_fill_payload):
        cache = GenerationCache(InMemoryCacheStore(), clock=clock)
        barrier = threading.Barrier(4)
        calls = 0
        calls_lock = threading.Lock()
        results = []

        async def generate():
            nonlocal calls
            with calls_lock:
                calls += 1
            await asyncio.sleep(0.05)
            return contextual_fill_payload

        def worker():
            barrier.wait()
            results.append(asyncio.run(cache.get_or_generate(KEY, generate)))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert calls == 1
        assert len(results) == 4
        assert all(r.payload["correct_answer"] == "el pico" for r in results)
        assert not cache.is_in_flight(KEY)
        assert cache.stats().generations == 1

    @pytest.mark.asyncio
    async def test_distinct_keys_do_not_coalesce(self, cache, contextual_fill_payload):
        generate = Generator(contextual_fill_payload)
        other = exercise_cache_key("contextual_fill", ["term-ala"], difficulty=1)

        await asyncio.gather(cache.get_or_generate(KEY, generate), cache.get_or_generate(other, generate))

        assert generate.calls == 2


class TestRetries:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, cache, delays, contextual_fill_payload):
        generate = Generator(
            ExternalServiceError("503"),
            {"type": "contextual_fill", "instructions": "x"},  # fails validation
            contextual_fill_payload,
        )

        result = await cache.get_or_generate(KEY, generate)

        assert result.payload["correct_answer"] == "el pico"
        assert generate.calls == 3
        assert delays == [1.0, 2.0]
        assert cache.stats().generations == 3

    @pytest.mark.asyncio
    async def test_exhaustion_caches_nothing(self, cache, delays):
        last = ExternalServiceError("still down")
        generate = Generator(ExternalServiceError("down"), ExternalServiceError("down"), last)

        with pytest.raises(ExternalServiceError) as exc_info:
            await cache.get_or_generate(KEY, generate)

        assert exc_info.value.message == CONTENT_UNAVAILABLE
        assert exc_info.value.__cause__ is last
        assert exc_info.value.details["attempts"] == 3
        assert len(cache.store) == 0
        assert not cache.is_in_flight(KEY)
        assert cache.stats().failures == 1
        assert delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_unexpected_generator_errors_are_retried_and_wrapped(self, cache, delays):
        generate = Generator(ConnectionError("socket reset"))

        with pytest.raises(ExternalServiceError) as exc_info:
            await cache.get_or_generate(KEY, generate)

        assert exc_info.value.message == CONTENT_UNAVAILABLE
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert generate.calls == 3
        assert delays == [1.0, 2.0]
        assert len(cache.store) == 0
        assert not cache.is_in_flight(KEY)

    @pytest.mark.asyncio
    async def test_next_call_after_failure_generates_again(self, cache, contextual_fill_payload):
        failing = Generator(ExternalServiceError("down"))
        with pytest.raises(ExternalServiceError):
            await cache.get_or_generate(KEY, failing)

        result = await cache.get_or_generate(KEY, Generator(contextual_fill_payload))
        assert result.hit is False

    @pytest.mark.asyncio
    async def test_rate_limit_is_not_retried(self, cache, delays):
        generate = Generator(RateLimitError("slow down", retry_after=30))

        with pytest.raises(RateLimitError) as exc_info:
            await cache.get_or_generate(KEY, generate)

        assert exc_info.value.retry_after == 30
        assert generate.calls == 1
        assert delays == []
        assert not cache.is_in_flight(KEY)

    @pytest.mark.asyncio
    async def test_timeout_releases_key(self, clock, contextual_fill_payload):
        cache = GenerationCache(InMemoryCacheStore(), timeout_seconds=0.01, max_attempts=2, clock=clock, sleep=_no_sleep)

        async def hang():
            await asyncio.sleep(3600)

        with pytest.raises(ExternalServiceError) as exc_info:
            await cache.get_or_generate(KEY, hang)

        assert isinstance(exc_info.value.__cause__, asyncio.TimeoutError)
        assert not cache.is_in_flight(KEY)
        assert (await cache.get_or_generate(KEY, Generator(contextual_fill_payload))).hit is False

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, clock, delays):
        async def fake_sleep(seconds):
            delays.append(seconds)

        cache = GenerationCache(
            InMemoryCacheStore(),
            max_attempts=7,
            backoff_base_seconds=1.0,
            backoff_max_seconds=16.0,
            clock=clock,
            sleep=fake_sleep,
        )

        with pytest.raises(ExternalServiceError):
            await cache.get_or_generate(KEY, Generator(ExternalServiceError("down")))

        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 16.0]


async def _no_sleep(seconds):
    return None


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_invalidate(self, cache, contextual_fill_payload):
        generate = Generator(contextual_fill_payload)
        await cache.get_or_generate(KEY, generate)

        assert cache.invalidate(KEY) is True
        assert cache.invalidate(KEY) is False
        assert (await cache.get_or_generate(KEY, generate)).hit is False
        assert generate.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_prefix(self, cache, contextual_fill_payload):
        generate = Generator(contextual_fill_payload)
        for term in ("term-pico", "term-ala"):
            await cache.get_or_generate(exercise_cache_key("contextual_fill", [term]), generate)
        await cache.get_or_generate("other:abc", generate)

        assert cache.invalidate_prefix("contextual_fill:") == 2
        assert len(cache.store) == 1

    @pytest.mark.asyncio
    async def test_lru_eviction_is_counted(self, clock, contextual_fill_payload):
        cache = GenerationCache(InMemoryCacheStore(max_entries=2), clock=clock)
        generate = Generator(contextual_fill_payload)

        for key in ("a:1", "b:2", "c:3"):
            await cache.get_or_generate(key, generate)

        stats = cache.stats()
        assert stats.evictions == 1
        assert stats.size == 2
        assert (await cache.get_or_generate("a:1", generate)).hit is False

    @pytest.mark.asyncio
    async def test_clean_expired_and_clear(self, cache, clock, contextual_fill_payload):
        generate = Generator(contextual_fill_payload)
        await cache.get_or_generate("a:1", generate)
        clock.advance(days=8)
        await cache.get_or_generate("b:2", generate)

        assert cache.clean_expired() == 1
        assert cache.clear() == 1
        assert len(cache.store) == 0

    def test_stats_dict(self, cache):
        data = cache.stats().to_dict()
        assert data["hit_rate"] == 0.0
        assert set(data) >= {"hits", "misses", "coalesced", "generations", "failures", "evictions"}
