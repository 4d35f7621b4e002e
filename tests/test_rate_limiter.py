"""Tests for per-key token-bucket admission control."""

import threading

import pytest

from innosistemas.service.rate_limit import (
    BucketPolicy,
    RateLimiter,
    StripedBucketMap,
    TrafficClass,
)


@pytest.fixture
def limiter(clock):
    return RateLimiter(
        BucketPolicy(100, 100, 60),
        BucketPolicy(10, 10, 60),
        clock=clock,
    )


class TestAdmission:
    def test_exactly_capacity_requests_admitted(self, limiter):
        """C consecutive requests pass and the next one is refused."""
        results = [limiter.allow_request("user:a") for _ in range(100)]

        assert all(results)
        assert limiter.allow_request("user:a") is False

    def test_auth_capacity_is_separate(self, limiter):
        results = [limiter.allow_auth_request("ip:1.2.3.4") for _ in range(10)]

        assert all(results)
        assert limiter.allow_auth_request("ip:1.2.3.4") is False

    def test_cost_consumes_multiple_tokens(self, limiter):
        assert limiter.allow_request("user:a", 40)
        assert limiter.available_tokens("user:a") == 60

    def test_cost_above_capacity_is_refused(self, limiter):
        assert limiter.allow_request("user:a", 101) is False
        assert limiter.available_tokens("user:a") == 100

    def test_non_positive_cost_rejected(self, limiter):
        with pytest.raises(ValueError):
            limiter.allow_request("user:a", 0)

    def test_rejection_keeps_tokens(self, limiter):
        """A refused request does not drain what is left."""
        limiter.allow_request("user:a", 95)
        assert limiter.allow_request("user:a", 10) is False
        assert limiter.available_tokens("user:a") == 5


class TestRefill:
    def test_refill_after_elapsed_time(self, limiter, clock):
        for _ in range(100):
            limiter.allow_request("user:a")
        assert limiter.allow_request("user:a") is False

        clock.advance(0.9)  # 100 tokens / 60s -> one and a half tokens
        assert limiter.allow_request("user:a") is True
        assert limiter.allow_request("user:a") is False

    def test_refill_never_exceeds_capacity(self, limiter, clock):
        limiter.allow_request("user:a", 50)
        clock.advance(3600)
        assert limiter.available_tokens("user:a") == 100

    def test_partial_refill_is_fractional(self, limiter, clock):
        limiter.allow_auth_request("ip:x", 10)
        clock.advance(3)  # 10 / 60s -> half a token
        assert limiter.available_tokens("ip:x", TrafficClass.AUTH) == 0
        clock.advance(4.5)
        assert limiter.available_tokens("ip:x", TrafficClass.AUTH) == 1


class TestIndependence:
    def test_classes_are_independent(self, limiter):
        """Exhausting auth for a key leaves its general bucket untouched."""
        for _ in range(10):
            limiter.allow_auth_request("user:a")
        assert limiter.allow_auth_request("user:a") is False

        assert limiter.allow_request("user:a") is True
        assert limiter.available_tokens("user:a") == 99

    def test_keys_are_independent(self, limiter):
        """Draining one key never affects another."""
        for _ in range(100):
            limiter.allow_request("user:a")
        assert limiter.allow_request("user:a") is False

        assert limiter.allow_request("user:b") is True


class TestInspection:
    def test_available_tokens_for_unseen_key(self, limiter):
        assert limiter.available_tokens("user:new") == 100
        assert limiter.available_tokens("user:new", TrafficClass.AUTH) == 10

    def test_available_tokens_does_not_create_bucket(self, limiter):
        limiter.available_tokens("user:new")
        assert len(limiter.buckets) == 0

    def test_stats_reports_key_and_tokens(self, limiter):
        limiter.allow_request("user:a", 40)
        stats = limiter.stats("user:a")

        assert "user:a" in stats
        assert "tokens=60" in stats
        assert "capacity=100" in stats

    def test_stats_sentinel_for_unseen_key(self, limiter):
        assert limiter.stats("user:none") == "No data for key: user:none"
        assert limiter.stats(None) == "No data for key: None"

    def test_is_enabled(self, limiter):
        assert limiter.is_enabled is True


class TestReset:
    def test_reset_restores_capacity(self, limiter):
        for _ in range(100):
            limiter.allow_request("user:a")
        limiter.allow_auth_request("user:a")

        limiter.reset("user:a")

        assert limiter.available_tokens("user:a") == 100
        assert limiter.available_tokens("user:a", TrafficClass.AUTH) == 10
        assert limiter.allow_request("user:a") is True

    def test_reset_tolerates_unknown_and_empty_keys(self, limiter):
        limiter.reset("user:unknown")
        limiter.reset("")
        limiter.reset(None)

    def test_clear_all(self, limiter):
        limiter.allow_request("user:a", 50)
        limiter.allow_request("user:b", 50)

        limiter.clear_all()

        assert len(limiter.buckets) == 0
        assert limiter.available_tokens("user:a") == 100


class TestDisabled:
    def test_disabled_admits_without_consuming(self, clock):
        limiter = RateLimiter(
            BucketPolicy(1, 1, 60), BucketPolicy(1, 1, 60), enabled=False, clock=clock
        )
        for _ in range(5):
            assert limiter.allow_request("user:a") is True
            assert limiter.allow_auth_request("user:a") is True

        assert limiter.available_tokens("user:a") == 1
        assert limiter.is_enabled is False


class TestPruning:
    def test_prune_drops_only_full_buckets(self, limiter, clock):
        limiter.allow_request("user:a", 10)
        limiter.allow_request("user:b", 1)
        clock.advance(0.9)  # user:b is back to full, user:a is not

        assert limiter.prune_full_buckets() == 1
        assert limiter.stats("user:b") == "No data for key: user:b"
        assert limiter.available_tokens("user:a") == 91

    def test_pruned_key_behaves_as_unseen(self, limiter, clock):
        limiter.allow_request("user:a", 5)
        clock.advance(60)
        limiter.prune_full_buckets()

        assert limiter.allow_request("user:a", 100) is True

    def test_interval_pruning_runs_from_admit_path(self, clock):
        limiter = RateLimiter(
            BucketPolicy(5, 5, 5),
            BucketPolicy(5, 5, 5),
            clock=clock,
            prune_interval_seconds=30,
        )
        limiter.allow_request("user:a")
        clock.advance(31)
        limiter.allow_request("user:b")

        assert limiter.stats("user:a") == "No data for key: user:a"
        assert "tokens=4" in limiter.stats("user:b")


class TestLifecycle:
    def test_close_clears_and_refuses_use(self, limiter):
        limiter.allow_request("user:a")
        limiter.close()

        assert len(limiter.buckets) == 0
        with pytest.raises(RuntimeError):
            limiter.allow_request("user:a")

    def test_injected_bucket_map_is_used(self, clock):
        buckets = StripedBucketMap(stripes=4)
        limiter = RateLimiter(
            BucketPolicy(3, 3, 60), BucketPolicy(3, 3, 60), buckets=buckets, clock=clock
        )
        limiter.allow_request("user:a")
        assert len(buckets) == 1


class TestPolicyValidation:
    @pytest.mark.parametrize(
        "capacity,refill,period",
        [(0, 1, 1), (1, 0, 1), (1, 1, 0)],
    )
    def test_invalid_policy_rejected(self, capacity, refill, period):
        with pytest.raises(ValueError):
            BucketPolicy(capacity, refill, period)

    def test_refill_rate(self):
        assert BucketPolicy(100, 100, 60).refill_rate == pytest.approx(100 / 60)


class TestConcurrency:
    def test_concurrent_consumers_never_overspend(self, clock):
        """Many threads hitting one key admit exactly capacity requests."""
        limiter = RateLimiter(BucketPolicy(500, 1, 3600), BucketPolicy(1, 1, 60), clock=clock)
        admitted = []
        errors = []
        lock = threading.Lock()

        def worker():
            try:
                local = sum(1 for _ in range(100) if limiter.allow_request("user:shared"))
                with lock:
                    admitted.append(local)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert sum(admitted) == 500
        assert limiter.available_tokens("user:shared") == 0

    def test_concurrent_distinct_keys(self, clock):
        """Independent keys each get their full allowance under contention."""
        limiter = RateLimiter(BucketPolicy(50, 1, 3600), BucketPolicy(1, 1, 60), clock=clock)
        results = {}
        errors = []

        def worker(key):
            try:
                results[key] = sum(1 for _ in range(60) if limiter.allow_request(key))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(f"user:{i}",)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert all(count == 50 for count in results.values())
        assert len(results) == 20
