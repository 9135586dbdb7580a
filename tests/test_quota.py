# tests/test_quota.py
from concurrent.futures import ThreadPoolExecutor

import pytest

from tenantrag.db.kv_store import KeyValueStore, MemoryStore
from tenantrag.errors import QuotaExceededError, RateLimitedError, StoreUnavailableError
from tenantrag.models import PlanLimits
from tenantrag.quota.ledger import QuotaLedger, hour_key, minute_key, month_key


def _limits(per_minute=10, per_hour=100, per_month=1000):
    return PlanLimits(
        api_calls_per_month=per_month,
        sections_per_tenant=10,
        tokens_per_request=2000,
        requests_per_minute=per_minute,
        requests_per_hour=per_hour,
    )


class UnavailableStore(KeyValueStore):
    """Every call fails the way an unreachable Redis does."""

    def _fail(self, *args, **kwargs):
        raise StoreUnavailableError("connection refused")

    get = set = delete = incr = expire = _fail

    def ping(self):
        return False


class TestKeys:

    def test_key_formats(self, clock):
        now = clock()

        assert minute_key("t1", now) == f"ratelimit:t1:minute:{int(now) // 60}"
        assert hour_key("t1", now) == f"ratelimit:t1:hour:{int(now) // 3600}"
        assert month_key("t1", now) == "usage:t1:month:2023-11"


class TestAdmission:

    def test_minute_window(self, kv_store, clock):
        ledger = QuotaLedger(kv_store, clock=clock)
        limits = _limits(per_minute=3)

        decisions = [ledger.admit("t1", limits) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert decisions[-1].reason == "minute"
        assert decisions[-1].retry_after == 60
        assert decisions[0].remaining_minute == 2

    def test_concurrent_admissions_exact(self, kv_store, clock):
        """requests_per_minute + 1 simultaneous requests: exactly the limit pass."""
        ledger = QuotaLedger(kv_store, clock=clock)
        limits = _limits(per_minute=10)

        with ThreadPoolExecutor(max_workers=11) as executor:
            decisions = list(executor.map(lambda _: ledger.admit("t1", limits), range(11)))

        assert sum(d.allowed for d in decisions) == 10

    def test_window_rolls_over(self, kv_store, clock):
        ledger = QuotaLedger(kv_store, clock=clock)
        limits = _limits(per_minute=1)

        assert ledger.admit("t1", limits).allowed
        assert not ledger.admit("t1", limits).allowed

        clock.advance(60)

        assert ledger.admit("t1", limits).allowed

    def test_hour_window(self, kv_store, clock):
        ledger = QuotaLedger(kv_store, clock=clock)
        limits = _limits(per_minute=100, per_hour=3)

        decisions = [ledger.admit("t1", limits) for _ in range(4)]

        assert decisions[-1].reason == "hour"
        assert decisions[-1].retry_after == 3600
        with pytest.raises(RateLimitedError):
            decisions[-1].raise_for_denial()

    def test_month_quota(self, kv_store, clock):
        ledger = QuotaLedger(kv_store, clock=clock)
        limits = _limits(per_minute=100, per_hour=100, per_month=2)

        decisions = [ledger.admit("t1", limits) for _ in range(3)]

        denied = decisions[-1]
        assert denied.reason == "month"
        assert denied.used == 2
        assert denied.retry_after is None

        with pytest.raises(QuotaExceededError) as exc_info:
            denied.raise_for_denial()

        assert exc_info.value.limit == 2

    def test_denied_month_request_not_counted(self, kv_store, clock):
        ledger = QuotaLedger(kv_store, clock=clock)
        limits = _limits(per_minute=100, per_hour=100, per_month=1)

        ledger.admit("t1", limits)
        ledger.admit("t1", limits)
        ledger.admit("t1", limits)

        assert kv_store.get(month_key("t1", clock())) == "1"

    def test_ttl_set_once(self, kv_store, clock):
        """A later increment never extends a live bucket."""
        ledger = QuotaLedger(kv_store, clock=clock)
        key = minute_key("t1", clock())

        ledger.admit("t1", _limits())
        assert kv_store.ttl(key) == pytest.approx(60)

        clock.advance(10)
        ledger.admit("t1", _limits())

        assert kv_store.ttl(key) == pytest.approx(50)

    def test_month_bucket_expiry(self, kv_store, clock):
        ledger = QuotaLedger(kv_store, clock=clock)

        ledger.admit("t1", _limits())

        assert kv_store.ttl(month_key("t1", clock())) == pytest.approx(60 * 24 * 3600)

    def test_tenants_counted_separately(self, kv_store, clock):
        ledger = QuotaLedger(kv_store, clock=clock)
        limits = _limits(per_minute=1)

        assert ledger.admit("t1", limits).allowed
        assert ledger.admit("t2", limits).allowed
        assert not ledger.admit("t1", limits).allowed

    def test_store_outage_fails_open(self, clock):
        ledger = QuotaLedger(UnavailableStore(), clock=clock)

        admission = ledger.admit("t1", _limits(per_minute=1))

        assert admission.allowed
        admission.raise_for_denial()


class TestUsage:

    def test_usage_reports_counters(self, kv_store, clock):
        ledger = QuotaLedger(kv_store, clock=clock)
        limits = _limits()

        for _ in range(3):
            ledger.admit("t1", limits)

        usage = ledger.usage("t1", limits)

        assert usage["requests_this_minute"] == 3
        assert usage["requests_this_hour"] == 3
        assert usage["calls_this_month"] == 3
        assert usage["requests_per_minute"] == 10

    def test_usage_with_store_outage(self, clock):
        usage = QuotaLedger(UnavailableStore(), clock=clock).usage("t1", _limits())

        assert usage["calls_this_month"] is None
        assert usage["api_calls_per_month"] == 1000


class TestMemoryStore:

    def test_lazy_expiry(self, clock):
        store = MemoryStore(clock=clock)
        store.set("k", "v", ttl=5)

        clock.advance(4)
        assert store.get("k") == "v"

        clock.advance(1)
        assert store.get("k") is None

    def test_incr_keeps_expiry(self, clock):
        store = MemoryStore(clock=clock)

        assert store.incr_with_expiry("c", 30) == 1
        clock.advance(20)
        assert store.incr_with_expiry("c", 30) == 2

        clock.advance(10)
        assert store.get("c") is None

    def test_unread_keys_are_swept(self, clock):
        store = MemoryStore(clock=clock, sweep_every=3)
        store.set("old", "v", ttl=5)
        clock.advance(10)

        store.set("a", "1")
        store.set("b", "2")

        # "old" was never read again, the third write swept it
        assert len(store) == 2

    def test_stale_buckets_self_clean(self, clock):
        """A day of one request per minute leaves only a handful of keys."""
        store = MemoryStore(clock=clock)
        ledger = QuotaLedger(store, clock=clock)
        limits = _limits(per_minute=5, per_hour=100, per_month=10_000)

        for _ in range(24 * 60):
            assert ledger.admit("t1", limits).allowed
            clock.advance(60)

        assert len(store) < 40


class TestStoreInterface:

    def test_incomplete_backend_cannot_be_built(self):

        class GetOnlyStore(KeyValueStore):
            def get(self, key):
                return None

        with pytest.raises(TypeError):
            GetOnlyStore()
