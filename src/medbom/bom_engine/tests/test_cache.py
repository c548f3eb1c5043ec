import threading
import time

import pytest

from medbom.bom_engine.services.cache import CacheKey, SingleFlightCache, configuration_fingerprint


def test_hit_after_first_computation():
    cache = SingleFlightCache()
    calls = []

    def compute():
        calls.append(1)
        return "bom"

    assert cache.get_or_compute("k", compute) == ("bom", False)
    assert cache.get_or_compute("k", compute) == ("bom", True)
    assert len(calls) == 1
    assert (cache.hits, cache.misses) == (1, 1)


def test_concurrent_misses_run_a_single_computation():
    cache = SingleFlightCache()
    started = threading.Event()
    release = threading.Event()
    calls = []
    results = []

    def compute():
        calls.append(threading.get_ident())
        started.set()
        release.wait(5)
        return 42

    def worker():
        results.append(cache.get_or_compute("k", compute))

    leader = threading.Thread(target=worker)
    leader.start()
    assert started.wait(5)
    followers = [threading.Thread(target=worker) for _ in range(4)]
    for t in followers:
        t.start()
    time.sleep(0.05)
    release.set()
    for t in [leader, *followers]:
        t.join(5)

    assert len(calls) == 1
    assert sorted(results, key=lambda r: r[1]) == [(42, False)] + [(42, True)] * 4
    assert cache.misses == 1


def test_failures_are_not_cached():
    cache = SingleFlightCache()
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("catalog unavailable")
        return "ok"

    with pytest.raises(RuntimeError):
        cache.get_or_compute("k", flaky)
    assert cache.get("k") is None

    assert cache.get_or_compute("k", flaky) == ("ok", False)
    assert len(attempts) == 2


def test_least_recently_used_entry_is_evicted():
    cache = SingleFlightCache(max_entries=2)
    cache.get_or_compute("a", lambda: 1)
    cache.get_or_compute("b", lambda: 2)
    cache.get("a")
    cache.get_or_compute("c", lambda: 3)

    assert len(cache) == 2
    assert cache.get("a") == 1
    assert cache.get("b") is None
    assert cache.get("c") == 3

    cache.clear()
    assert len(cache) == 0


def test_configuration_fingerprint_ignores_key_order():
    first = configuration_fingerprint({"voltage": 120, "length_ft": 4}, "plan-1")
    second = configuration_fingerprint({"length_ft": 4, "voltage": 120}, "plan-1")

    assert first == second
    assert first != configuration_fingerprint({"voltage": 120, "length_ft": 4}, "plan-2")
    assert CacheKey("FIXTURE-48", first, "v1") != CacheKey("FIXTURE-48", first, "v2")
