import threading
import time

from vulnradar.rate_limit import InMemoryRateLimiter


def test_allows_until_limit_then_refuses():
    limiter = InMemoryRateLimiter()
    results = [limiter.check("demo:1.2.3.4", 3, 60) for _ in range(4)]
    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert 0 < results[-1].retry_after_seconds <= 60


def test_window_reopens_after_expiry():
    limiter = InMemoryRateLimiter()
    assert limiter.check("k", 1, 1).allowed
    assert not limiter.check("k", 1, 1).allowed
    time.sleep(1.2)
    assert limiter.check("k", 1, 1).allowed


def test_keys_are_independent():
    limiter = InMemoryRateLimiter()
    assert limiter.check("a", 1, 60).allowed
    assert limiter.check("b", 1, 60).allowed
    assert not limiter.check("a", 1, 60).allowed
    assert not limiter.check("b", 1, 60).allowed


def test_expired_client_windows_are_evicted():
    limiter = InMemoryRateLimiter()
    for index in range(500):
        limiter.check(f"demo:10.0.{index // 256}.{index % 256}", 5, 1)
    time.sleep(1.2)
    limiter.check("demo:fresh", 5, 60)
    time.sleep(0.3)
    assert len(limiter._storage.storage) <= 1


def test_concurrent_checks_never_exceed_limit():
    limiter = InMemoryRateLimiter()
    allowed = []

    def worker():
        for _ in range(50):
            if limiter.check("shared", 100, 3600).allowed:
                allowed.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(allowed) == 100
