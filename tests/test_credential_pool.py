from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from credential_pool import Credential, CredentialPool, Deferred, ExternalScope, Reservation
from error_policy import DuplicateRegistrationError, JobCancelled, NoCredentialAvailable, QuotaOverflowError


def _pool(clock, *caps):
    pool = CredentialPool(window_s=3600, clock=clock)
    for i, cap in enumerate(caps):
        pool.register_credential(Credential(f"cred-{i}", f"secret-{i}", "biz-1", hourly_capacity=cap))
    return pool


class TestRegistration:
    def test_duplicate_credential_is_rejected(self, clock):
        pool = _pool(clock, 100)
        with pytest.raises(DuplicateRegistrationError):
            pool.register_credential(Credential("cred-0", "other", "biz-1", hourly_capacity=50))

    def test_missing_secret_is_rejected(self, clock):
        pool = CredentialPool(clock=clock)
        with pytest.raises(ValueError):
            pool.register_credential(Credential("cred-x", "", "biz-1"))

    def test_duplicate_scope_is_rejected(self, clock):
        pool = _pool(clock, 100)
        pool.register_external_scope(ExternalScope("act_1", "biz-1"))
        with pytest.raises(DuplicateRegistrationError):
            pool.register_external_scope(ExternalScope("act_1", "biz-1"))

    def test_public_view_hides_secret(self, clock):
        pool = _pool(clock, 100)
        assert "secret" not in pool.get_credential("cred-0").public()


class TestReserve:
    def test_picks_credential_with_most_headroom_and_commits(self, clock):
        pool = _pool(clock, 100, 100)
        first = pool.reserve(30)
        assert isinstance(first, Reservation)
        second = pool.reserve(30)
        assert second.credential.credential_id != first.credential.credential_id
        consumed = {row["credential_id"]: row["consumed"] for row in pool.snapshot()}
        assert consumed == {"cred-0": 30, "cred-1": 30}

    def test_defers_until_window_reset_when_exhausted(self, clock):
        pool = _pool(clock, 10)
        assert isinstance(pool.reserve(10), Reservation)
        deferred = pool.reserve(1)
        assert isinstance(deferred, Deferred)
        assert deferred.retry_at == clock.now + timedelta(seconds=3600)

    def test_request_larger_than_any_capacity_overflows(self, clock):
        pool = _pool(clock, 10, 20)
        with pytest.raises(QuotaOverflowError):
            pool.reserve(21)

    def test_suspended_credential_is_never_selected(self, clock):
        pool = _pool(clock, 100, 100)
        pool.set_status("cred-0", "suspended")
        for _ in range(3):
            assert pool.reserve(10).credential.credential_id == "cred-1"
        pool.set_status("cred-1", "suspended")
        with pytest.raises(NoCredentialAvailable):
            pool.reserve(1)

    def test_registered_scope_routes_to_owning_business(self, clock):
        pool = _pool(clock, 100)
        pool.register_credential(Credential("cred-b", "secret-b", "biz-2", hourly_capacity=5))
        pool.register_external_scope(ExternalScope("act_2", "biz-2"))
        assert pool.reserve(5, scope_id="act_2").credential.credential_id == "cred-b"
        assert isinstance(pool.reserve(1, scope_id="act_2"), Deferred)
        # Unregistered scopes may use any active credential.
        assert pool.reserve(1, scope_id="act_9").credential.credential_id == "cred-0"

    def test_pinned_credential(self, clock):
        pool = _pool(clock, 100, 500)
        assert pool.reserve(5, credential_id="cred-0").credential.credential_id == "cred-0"
        with pytest.raises(NoCredentialAvailable):
            pool.reserve(5, credential_id="missing")

    def test_window_rolls_over(self, clock):
        pool = _pool(clock, 10)
        pool.reserve(10)
        clock.advance(3601)
        assert isinstance(pool.reserve(10), Reservation)

    def test_concurrent_reservations_never_exceed_capacity(self, clock):
        pool = _pool(clock, 100)
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            r = pool.reserve(7)
            with lock:
                results.append(r)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        granted = [r for r in results if isinstance(r, Reservation)]
        assert len(granted) == 14
        assert pool.snapshot()[0]["consumed"] == 98
        assert pool.snapshot()[0]["consumed"] <= 100


class TestRecordUsage:
    def test_unused_reserved_calls_are_released(self, clock):
        pool = _pool(clock, 100)
        r = pool.reserve(50)
        pool.record_usage(r.credential, 20, reservation=r)
        assert pool.snapshot()[0]["consumed"] == 20

    def test_usage_beyond_capacity_is_capped_and_raises(self, clock):
        pool = _pool(clock, 100)
        r = pool.reserve(90)
        with pytest.raises(QuotaOverflowError):
            pool.record_usage(r.credential, 120, reservation=r)
        assert pool.snapshot()[0]["consumed"] == 100

    def test_direct_usage_without_reservation(self, clock):
        pool = _pool(clock, 100)
        pool.record_usage(pool.get_credential("cred-0"), 15)
        assert pool.snapshot()[0]["headroom"] == 85


class TestAcquire:
    def test_waits_for_reset_then_grants(self, clock):
        pool = _pool(clock, 10)
        pool.reserve(10)
        r = pool.acquire(5, sleep=clock.sleep)
        assert isinstance(r, Reservation)
        assert sum(clock.sleeps) >= 3600

    def test_cancellation_while_waiting(self, clock):
        pool = _pool(clock, 10)
        pool.reserve(10)
        with pytest.raises(JobCancelled):
            pool.acquire(5, sleep=clock.sleep, is_cancelled=lambda: len(clock.sleeps) >= 2)


class TestPlatformUsage:
    def test_reported_percentage_raises_consumed(self, clock):
        pool = _pool(clock, 200)
        pool.observe_platform_usage("cred-0", 50)
        assert pool.snapshot()[0]["consumed"] == 100

    def test_lower_report_never_lowers_local_count(self, clock):
        pool = _pool(clock, 200)
        pool.reserve(150)
        pool.observe_platform_usage("cred-0", 10)
        assert pool.snapshot()[0]["consumed"] == 150

    def test_regain_access_blocks_until_platform_time(self, clock):
        pool = _pool(clock, 200)
        pool.observe_platform_usage("cred-0", 100, regain_access_s=7200)
        deferred = pool.reserve(1)
        assert isinstance(deferred, Deferred)
        assert deferred.retry_at >= clock.now + timedelta(seconds=7200)
