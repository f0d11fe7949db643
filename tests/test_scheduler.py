"""Tests for the periodic, activity and proactive refresh triggers.

Timings are scaled down to milliseconds; the monotonic clock used for the
activity threshold is driven by hand.
"""

import asyncio
import time

import httpx
import pytest

from rundeklar.config import SchedulerTimings
from rundeklar.service.refresh import RefreshOutcome
from rundeklar.service.scheduler import ActivityKind, RefreshScheduler
from rundeklar.storage.models import Principal

PRINCIPAL = Principal(id="club-1", email="a@x", role="admin", tenant_id="default")


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class CountingCoordinator:
    """Stands in for the coordinator; optionally fails every call."""

    def __init__(self, error=None):
        self.calls = 0
        self.error = error

    async def refresh(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return RefreshOutcome.SUCCESS


@pytest.fixture
def far_future_refresh(authority, make_token):
    def _ok(request):
        token = make_token(time.time() + 24 * 3600)
        return httpx.Response(200, json={"accessToken": token, "refreshToken": "R-next"})

    authority.always("POST", "/auth/refresh", _ok)


def _timings(**overrides):
    values = dict(periodic=3600, activity_threshold=3600, debounce=3600, proactive=3600)
    values.update(overrides)
    return SchedulerTimings(**values)


class TestLifecycle:
    async def test_start_and_stop(self, coordinator, store):
        scheduler = RefreshScheduler(coordinator, store, _timings())

        scheduler.start(PRINCIPAL)
        assert scheduler.running

        scheduler.stop()
        assert not scheduler.running

    async def test_stop_is_idempotent(self, coordinator, store):
        scheduler = RefreshScheduler(coordinator, store, _timings())
        scheduler.stop()
        scheduler.start(PRINCIPAL)
        scheduler.stop()
        scheduler.stop()

        assert not scheduler.running

    async def test_aclose_waits_for_tasks(self, coordinator, store):
        scheduler = RefreshScheduler(coordinator, store, _timings())
        scheduler.start(PRINCIPAL)

        await scheduler.aclose()

        assert not scheduler.running


class TestPeriodic:
    async def test_periodic_trigger_refreshes_until_stopped(
        self, authority, store, coordinator, far_future_refresh
    ):
        store.set_pair("A1", "R1")
        scheduler = RefreshScheduler(coordinator, store, _timings(periodic=0.02))

        scheduler.start(PRINCIPAL)
        await asyncio.sleep(0.09)
        scheduler.stop()
        # Let a refresh that was already on the wire land
        await asyncio.sleep(0.01)
        fired = authority.count("/auth/refresh")
        await asyncio.sleep(0.05)

        assert fired >= 2
        assert authority.count("/auth/refresh") == fired

    async def test_trigger_failures_do_not_stop_the_loop(self, store):
        failing = CountingCoordinator(error=RuntimeError("boom"))
        scheduler = RefreshScheduler(failing, store, _timings(periodic=0.01))

        scheduler.start(PRINCIPAL)
        await asyncio.sleep(0.06)
        await scheduler.aclose()

        assert failing.calls >= 2


class TestActivity:
    async def test_activity_ignored_when_not_running(self, store):
        scheduler = RefreshScheduler(CountingCoordinator(), store, _timings(activity_threshold=0))

        assert scheduler.record_activity(ActivityKind.KEY_DOWN) is False

    async def test_activity_within_threshold_is_ignored(self, store):
        clock = ManualClock()
        counting = CountingCoordinator()
        scheduler = RefreshScheduler(
            counting, store, _timings(activity_threshold=300, debounce=0.01), clock=clock
        )
        scheduler.start(PRINCIPAL)

        clock.now += 299
        assert scheduler.record_activity(ActivityKind.POINTER_DOWN) is False
        await asyncio.sleep(0.03)

        assert counting.calls == 0
        scheduler.stop()

    async def test_burst_of_activity_triggers_one_debounced_refresh(self, store):
        clock = ManualClock()
        counting = CountingCoordinator()
        scheduler = RefreshScheduler(
            counting, store, _timings(activity_threshold=300, debounce=0.02), clock=clock
        )
        scheduler.start(PRINCIPAL)
        clock.now += 301

        for kind in (ActivityKind.POINTER_DOWN, ActivityKind.SCROLL, ActivityKind.TOUCH_START):
            assert scheduler.record_activity(kind) is True
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.05)

        assert counting.calls == 1
        # The threshold now runs from the refresh that just fired
        assert scheduler.record_activity(ActivityKind.KEY_DOWN) is False
        scheduler.stop()

    async def test_stop_cancels_pending_debounce(self, store):
        clock = ManualClock()
        counting = CountingCoordinator()
        scheduler = RefreshScheduler(
            counting, store, _timings(activity_threshold=1, debounce=0.02), clock=clock
        )
        scheduler.start(PRINCIPAL)
        clock.now += 5

        assert scheduler.record_activity() is True
        scheduler.stop()
        await asyncio.sleep(0.05)

        assert counting.calls == 0


class TestProactive:
    async def test_expiring_token_is_refreshed(self, authority, store, coordinator, make_token, far_future_refresh):
        store.set_pair(make_token(time.time() + 600), "R1")
        scheduler = RefreshScheduler(coordinator, store, _timings(proactive=0.01))

        scheduler.start(PRINCIPAL)
        await asyncio.sleep(0.05)
        scheduler.stop()

        # The replacement token is far from expiry, so the check goes quiet
        assert authority.count("/auth/refresh") == 1
        assert store.get_refresh() == "R-next"

    async def test_fresh_token_is_left_alone(self, authority, store, coordinator, make_token):
        store.set_pair(make_token(time.time() + 2 * 3600), "R1")
        scheduler = RefreshScheduler(coordinator, store, _timings(proactive=0.01))

        scheduler.start(PRINCIPAL)
        await asyncio.sleep(0.05)
        scheduler.stop()

        assert authority.count("/auth/refresh") == 0

    async def test_malformed_token_refreshes_immediately(self, authority, store, coordinator, far_future_refresh):
        store.set_pair("not-a-jwt", "R1")
        scheduler = RefreshScheduler(coordinator, store, _timings(proactive=0.01))

        scheduler.start(PRINCIPAL)
        await asyncio.sleep(0.05)
        scheduler.stop()

        assert authority.count("/auth/refresh") == 1

    async def test_missing_token_is_skipped(self, store):
        counting = CountingCoordinator()
        scheduler = RefreshScheduler(counting, store, _timings(proactive=0.01))

        scheduler.start(PRINCIPAL)
        await asyncio.sleep(0.05)
        scheduler.stop()

        assert counting.calls == 0
