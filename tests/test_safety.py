"""
Tests for safety mechanisms: sweep guard, failure policy and bounded calls.
"""

import threading
import time

from timerlock.safety import (
    FAILURE_POLICY,
    Action,
    CallOutcome,
    CallSite,
    ErrorKind,
    SweepGuard,
    action_for,
    bounded_call,
)


# ── Sweep Guard Tests ──────────────────────────────────────────────────

def test_guard_single_slot():
    guard = SweepGuard()
    assert guard.try_acquire() is True
    assert guard.running is True
    assert guard.try_acquire() is False
    assert guard.skipped == 1


def test_guard_release():
    guard = SweepGuard()
    guard.try_acquire()
    guard.release()
    assert guard.running is False
    assert guard.try_acquire() is True


def test_guards_are_independent():
    a, b = SweepGuard(), SweepGuard()
    assert a.try_acquire() is True
    assert b.try_acquire() is True


# ── Failure Policy Tests ───────────────────────────────────────────────

def test_every_site_has_a_policy():
    assert set(FAILURE_POLICY) == set(CallSite)


def test_action_for_success_is_none():
    assert action_for(CallSite.DEPLOY, CallOutcome.success("x")) is None


def test_action_for_failures():
    failed = CallOutcome.failure(ErrorKind.TIMEOUT, "slow")
    assert action_for(CallSite.DEPLOY, failed) is Action.ABORT_AND_ROLLBACK
    assert action_for(CallSite.REMOVE_ON_EXPIRY, failed) is Action.LOG_AND_CONTINUE
    assert action_for(CallSite.NOTIFY_WARNING, failed) is Action.RETRY_NEXT_RUN
    assert action_for(CallSite.NOTIFY_COMPLETION, failed) is Action.LOG_AND_CONTINUE


# ── Bounded Call Tests ─────────────────────────────────────────────────

def test_bounded_call_passes_outcome_through():
    outcome = bounded_call(lambda: CallOutcome.failure(ErrorKind.REJECTED, "nope"), timeout=1)
    assert outcome.error is ErrorKind.REJECTED


def test_bounded_call_wraps_plain_values():
    outcome = bounded_call(lambda x: x * 2, 21, timeout=1)
    assert outcome.ok
    assert outcome.value == 42


def test_bounded_call_timeout():
    start = time.monotonic()
    outcome = bounded_call(time.sleep, 1.0, timeout=0.1, label="sleepy")
    assert outcome.error is ErrorKind.TIMEOUT
    assert time.monotonic() - start < 0.9


def test_bounded_call_exception():
    def boom():
        raise ConnectionError("reset by peer")

    outcome = bounded_call(boom, timeout=1)
    assert outcome.error is ErrorKind.UNEXPECTED
    assert "reset by peer" in outcome.detail


def test_bounded_call_hands_late_result_to_handler():
    late = []
    finished = threading.Event()

    def slow():
        time.sleep(0.3)
        return CallOutcome.success("deployed")

    def handler(outcome):
        late.append(outcome)
        finished.set()

    outcome = bounded_call(slow, timeout=0.05, label="slow", on_late=handler)
    assert outcome.error is ErrorKind.TIMEOUT
    assert finished.wait(timeout=2)
    assert late[0].ok
    assert late[0].value == "deployed"


def test_bounded_call_late_exception_reaches_handler():
    late = []
    finished = threading.Event()

    def slow_boom():
        time.sleep(0.2)
        raise ConnectionError("reset by peer")

    def handler(outcome):
        late.append(outcome)
        finished.set()

    bounded_call(slow_boom, timeout=0.05, on_late=handler)
    assert finished.wait(timeout=2)
    assert late[0].error is ErrorKind.UNEXPECTED


def test_bounded_call_on_time_skips_late_handler():
    late = []
    outcome = bounded_call(lambda: CallOutcome.success(1), timeout=1, on_late=late.append)
    assert outcome.ok
    time.sleep(0.05)
    assert late == []
