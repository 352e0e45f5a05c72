"""
Tests for the expiry sweeper: expiry, warnings, overlap protection and
failure isolation.
"""

import threading
import time
from datetime import timedelta

import pytest

from conftest import DEVICE, NOW, PROVIDER_DEVICE, WriteCounter
from timerlock.errors import StoreFailure
from timerlock.models import CommitmentStatus, LifecycleEvent
from timerlock.safety import FAILURE_POLICY, Action, CallSite, ErrorKind
from timerlock.sweeper import IntervalTrigger, ManualTrigger, hours_until


def _due(make_active, **kwargs):
    """Active commitment that ended one minute ago."""
    return make_active(days=1, start=NOW - timedelta(days=1, minutes=1), **kwargs)


def _ending_in(make_active, hours, **kwargs):
    return make_active(days=1, start=NOW + timedelta(hours=hours) - timedelta(days=1), **kwargs)


# ── Phase A: expiry ────────────────────────────────────────────────────

def test_expiry_scenario(sweeper, make_active, provider, notifier, store):
    c = _due(make_active, ref="ref-1")
    report = sweeper.run()
    assert provider.remove_calls == [(PROVIDER_DEVICE, "ref-1")]
    assert store.get(c.id).status is CommitmentStatus.EXPIRED
    assert notifier.completions == [c.id]
    assert report.expired == 1


def test_expiry_proceeds_when_removal_fails(sweeper, make_active, provider, store):
    c = _due(make_active)
    provider.remove_error = ErrorKind.TRANSIENT
    report = sweeper.run()
    assert store.get(c.id).status is CommitmentStatus.EXPIRED
    assert report.removal_failures == 1

    # never retried: the commitment is no longer active
    sweeper.run()
    assert len(provider.remove_calls) == 1


def test_removal_policy_can_defer_to_next_sweep(sweeper, make_active, provider, store, monkeypatch):
    monkeypatch.setitem(FAILURE_POLICY, CallSite.REMOVE_ON_EXPIRY, Action.RETRY_NEXT_RUN)
    c = _due(make_active)
    provider.remove_error = ErrorKind.TRANSIENT
    report = sweeper.run()
    assert report.removal_failures == 1
    assert store.get(c.id).status is CommitmentStatus.ACTIVE

    provider.remove_error = None
    sweeper.run()
    assert store.get(c.id).status is CommitmentStatus.EXPIRED
    assert len(provider.remove_calls) == 2


def test_completion_notice_failure_not_retried(sweeper, make_active, notifier, store):
    c = _due(make_active)
    notifier.fail = True
    report = sweeper.run()
    assert store.get(c.id).status is CommitmentStatus.EXPIRED
    assert report.completion_notice_failures == 1
    sweeper.run()
    assert notifier.completions == [c.id]


def test_status_write_failure_marks_failed(sweeper, make_active, store, monkeypatch):
    c = _due(make_active)
    real_transition = store.transition

    def flaky(commitment_id, event):
        if event is LifecycleEvent.TIMER_ELAPSED:
            raise StoreFailure("disk full")
        return real_transition(commitment_id, event)

    monkeypatch.setattr(store, "transition", flaky)
    report = sweeper.run()
    assert store.get(c.id).status is CommitmentStatus.FAILED
    assert report.failed == 1


def test_one_bad_item_does_not_abort_batch(sweeper, make_active, devices, store, monkeypatch):
    first = _due(make_active)
    second = _due(make_active, device_id="device-2")
    real_get = devices.get_device

    def broken(device_id, user_id):
        if device_id == first.device_id:
            raise RuntimeError("registry unavailable")
        return real_get(device_id, user_id)

    monkeypatch.setattr(devices, "get_device", broken)
    report = sweeper.run()
    assert store.get(first.id).status is CommitmentStatus.EXPIRED
    assert store.get(second.id).status is CommitmentStatus.EXPIRED
    assert report.expired == 2


def test_failed_expiry_query_does_not_stop_warnings(sweeper, make_active, notifier, store, monkeypatch):
    c = _ending_in(make_active, 10)

    def unavailable(now):
        raise StoreFailure("Failed to read due commitments: database is locked")

    monkeypatch.setattr(store, "find_due", unavailable)
    report = sweeper.run()
    assert report.aborted_phases == ["expire_due"]
    assert notifier.warnings == [(c.id, 10)]
    assert report.warnings_sent == 1


def test_failed_reap_query_does_not_stop_expiry(sweeper, make_active, store, monkeypatch):
    c = _due(make_active)

    def unavailable(created_before):
        raise StoreFailure("Failed to read stale pending commitments: disk I/O error")

    monkeypatch.setattr(store, "find_stale_pending", unavailable)
    report = sweeper.run()
    assert report.aborted_phases == ["reap_stale_pending"]
    assert store.get(c.id).status is CommitmentStatus.EXPIRED


def test_stuck_removal_is_bounded(sweeper, make_active, provider, store):
    sweeper.provider_timeout = 0.2
    provider.remove_gate = threading.Event()
    c = _due(make_active)
    start = time.monotonic()
    report = sweeper.run()
    provider.remove_gate.set()
    assert time.monotonic() - start < 2
    assert report.removal_failures == 1
    assert store.get(c.id).status is CommitmentStatus.EXPIRED


# ── Phase B: warnings ──────────────────────────────────────────────────

def test_warning_scenario(sweeper, make_active, notifier, store):
    c = _ending_in(make_active, 10)
    sweeper.run()
    assert notifier.warnings == [(c.id, 10)]
    assert store.get(c.id).warning_sent is True

    sweeper.run()
    assert notifier.warnings == [(c.id, 10)]


def test_warning_hours_round_up():
    assert hours_until(NOW + timedelta(hours=9, minutes=1), NOW) == 10
    assert hours_until(NOW + timedelta(minutes=5), NOW) == 1


def test_warning_retried_after_notifier_failure(sweeper, make_active, notifier, store):
    c = _ending_in(make_active, 10)
    notifier.fail = True
    report = sweeper.run()
    assert report.warning_failures == 1
    assert store.get(c.id).warning_sent is False

    notifier.fail = False
    sweeper.run()
    assert store.get(c.id).warning_sent is True
    assert len(notifier.warnings) == 2


def test_dropped_warning_is_not_retried(sweeper, make_active, notifier, store, monkeypatch):
    monkeypatch.setitem(FAILURE_POLICY, CallSite.NOTIFY_WARNING, Action.LOG_AND_CONTINUE)
    c = _ending_in(make_active, 10)
    notifier.fail = True
    report = sweeper.run()
    assert report.warning_failures == 1
    assert report.warnings_sent == 0
    assert store.get(c.id).warning_sent is True

    sweeper.run()
    assert len(notifier.warnings) == 1


def test_no_warning_outside_window(sweeper, make_active, notifier):
    make_active(days=3)
    sweeper.run()
    assert notifier.warnings == []


# ── Idempotence and overlap ────────────────────────────────────────────

def test_nothing_due_means_no_side_effects(sweeper, make_active, engine, provider, notifier):
    make_active(days=30)
    writes = WriteCounter(engine)
    sweeper.run()
    assert writes.count == 0
    assert provider.remove_calls == []
    assert notifier.completions == [] and notifier.warnings == []


def test_concurrent_sweeps_remove_once(sweeper, make_active, provider):
    _due(make_active)
    provider.remove_gate = threading.Event()
    first = threading.Thread(target=sweeper.run)
    first.start()
    assert provider.remove_started.wait(timeout=2)

    assert sweeper.run() is None

    provider.remove_gate.set()
    first.join(timeout=5)
    assert len(provider.remove_calls) == 1
    assert sweeper.get_stats()["skipped_triggers"] == 1


def test_stale_pending_rows_reaped(sweeper, store, clock):
    pending = store.create_pending(
        user_id="user-1", device_id=DEVICE, subscription_tier="1month",
        commitment_days=7, provider_device_id=PROVIDER_DEVICE,
    )
    sweeper.run()
    assert store.get(pending.id) is not None

    clock.advance(minutes=11)
    report = sweeper.run()
    assert report.orphans_reaped == 1
    assert store.get(pending.id) is None


# ── Triggers and stats ─────────────────────────────────────────────────

def test_manual_trigger_drives_sweeper(sweeper, make_active, store):
    c = _due(make_active)
    trigger = ManualTrigger()
    sweeper.start(trigger)
    trigger.fire()
    assert store.get(c.id).status is CommitmentStatus.EXPIRED
    sweeper.stop()
    with pytest.raises(RuntimeError):
        trigger.fire()


def test_interval_trigger_fires_after_delay():
    fired = threading.Event()
    trigger = IntervalTrigger(interval=60, initial_delay=0.05)
    trigger.start(fired.set)
    try:
        assert fired.wait(timeout=2)
    finally:
        trigger.stop()


def test_stats(sweeper, make_active):
    _due(make_active)
    make_active(device_id="device-2", days=30)
    sweeper.run()
    stats = sweeper.get_stats()
    counts = {row["status"]: row["count"] for row in stats["stats"]}
    assert counts == {"active": 1, "expired": 1}
    assert stats["last_run"]["expired"] == 1
    assert stats["running"] is False
