"""Tests for the upload rate limiter."""
import concurrent.futures
import time

from design_guard.guard import RateLimiter


def test_rate_limiter_thread_safety():
    """Concurrent requests from one client never exceed the limit."""
    limiter = RateLimiter(max_requests=5, window=1)

    with concurrent.futures.ThreadPoolExecutor(max_workers=10) as executor:
        futures = [executor.submit(limiter.check, "client") for _ in range(20)]
        results = [f.result() for f in futures]

    assert sum(results) == 5, f"Expected exactly 5 allowed requests, got {sum(results)}"


def test_rate_limiter_per_client_isolation():
    limiter = RateLimiter(max_requests=2, window=60)

    assert limiter.check("client_a")
    assert limiter.check("client_a")
    assert not limiter.check("client_a")
    assert limiter.check("client_b"), "Client B should not be affected by client A"


def test_rate_limiter_window_expiry():
    limiter = RateLimiter(max_requests=2, window=0.3)
    assert limiter.check("client")
    assert limiter.check("client")
    assert not limiter.check("client")

    time.sleep(0.4)
    assert limiter.check("client"), "Request after window expiry should be allowed"


def test_rate_limiter_evicts_idle_clients():
    limiter = RateLimiter(max_requests=1, window=0.1, max_clients=50)
    for i in range(50):
        limiter.check(f"client_{i}")

    time.sleep(0.3)
    limiter.check("late_client")

    assert list(limiter.requests) == ["late_client"]
