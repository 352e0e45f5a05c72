"""
Safety mechanisms around unattended work and external calls.

1. Sweep Guard: single-slot, non-blocking guard so sweeps never overlap
2. Call Outcomes: every external call returns a CallOutcome instead of raising
3. Failure Policy: per call site, what each ErrorKind means for the caller
4. Bounded Calls: every external call runs under its own deadline
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

logger = logging.getLogger("safety")

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════════
# 1. SWEEP GUARD: no overlapping sweeps
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SweepGuard:
    """
    Compare-and-set guard owned by one sweeper.

    ``try_acquire`` never blocks: if a sweep is already running the caller
    gets False and must drop the trigger. Nothing is queued.
    """

    _slot: threading.Lock = field(default_factory=threading.Lock)
    _skipped: int = field(default=0)

    def try_acquire(self) -> bool:
        if self._slot.acquire(blocking=False):
            return True
        self._skipped += 1
        return False

    def release(self) -> None:
        self._slot.release()

    @property
    def running(self) -> bool:
        return self._slot.locked()

    @property
    def skipped(self) -> int:
        return self._skipped


# ═══════════════════════════════════════════════════════════════════════
# 2. CALL OUTCOMES
# ═══════════════════════════════════════════════════════════════════════

class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    TRANSIENT = "transient"          # network error, 5xx, rate limit
    DEVICE_UNENROLLED = "device_unenrolled"  # provider no longer knows the device
    REJECTED = "rejected"            # other 4xx
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class CallOutcome(Generic[T]):
    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T = None) -> "CallOutcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, detail: str = "") -> "CallOutcome[T]":
        return cls(error=kind, detail=detail)


# ═══════════════════════════════════════════════════════════════════════
# 3. FAILURE POLICY
# ═══════════════════════════════════════════════════════════════════════

class CallSite(str, Enum):
    DEPLOY = "deploy"                  # create path
    REMOVE_ON_EXPIRY = "remove_on_expiry"
    REMOVE_ON_TERMINATE = "remove_on_terminate"
    QUERY_STATUS = "query_status"
    NOTIFY_COMPLETION = "notify_completion"
    NOTIFY_WARNING = "notify_warning"


class Action(str, Enum):
    ABORT_AND_ROLLBACK = "abort_and_rollback"
    LOG_AND_CONTINUE = "log_and_continue"
    RETRY_NEXT_RUN = "retry_next_run"


FAILURE_POLICY: dict[CallSite, Action] = {
    CallSite.DEPLOY: Action.ABORT_AND_ROLLBACK,
    # Removal is never retried: the endpoint is not assumed idempotent.
    CallSite.REMOVE_ON_EXPIRY: Action.LOG_AND_CONTINUE,
    CallSite.REMOVE_ON_TERMINATE: Action.LOG_AND_CONTINUE,
    CallSite.QUERY_STATUS: Action.LOG_AND_CONTINUE,
    CallSite.NOTIFY_COMPLETION: Action.LOG_AND_CONTINUE,
    CallSite.NOTIFY_WARNING: Action.RETRY_NEXT_RUN,
}

# Errors at the deploy site that a plain retry can fix.
RETRYABLE_KINDS = frozenset({ErrorKind.TIMEOUT, ErrorKind.TRANSIENT, ErrorKind.UNEXPECTED})


def action_for(site: CallSite, outcome: CallOutcome) -> Optional[Action]:
    """
    None for a successful call, otherwise the policy action for the site.

    Callers branch on the action where the table offers a choice. The
    sweeper's removal and notification sites choose between
    ``retry_next_run`` and ``log_and_continue``; the deploy site only aborts.
    """
    if outcome.ok:
        return None
    action = FAILURE_POLICY[site]
    log = logger.error if action is Action.ABORT_AND_ROLLBACK else logger.warning
    log(f"POLICY | site={site.value} error={outcome.error.value} action={action.value} detail={outcome.detail}")
    return action


# ═══════════════════════════════════════════════════════════════════════
# 4. BOUNDED CALLS
# ═══════════════════════════════════════════════════════════════════════

# A stuck call keeps its worker thread; the caller moves on at the deadline.
_executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="bounded-call")


def bounded_call(
    fn: Callable[..., CallOutcome[T]],
    *args: Any,
    timeout: float,
    label: str = "",
    on_late: Optional[Callable[[CallOutcome[T]], None]] = None,
    **kwargs: Any,
) -> CallOutcome[T]:
    """
    Run ``fn`` with its own deadline and normalise the result.

    ``fn`` is expected to return a CallOutcome. A deadline miss becomes
    ErrorKind.TIMEOUT and any exception becomes ErrorKind.UNEXPECTED.

    A call that already started cannot be stopped. If ``on_late`` is given
    it receives the outcome of such a call once it finishes, on the worker
    thread, so side effects the caller has given up on can be undone.
    """
    future = _executor.submit(fn, *args, **kwargs)
    try:
        future.exception(timeout=timeout)
    except FutureTimeout:
        logger.warning(f"BOUNDED_CALL | {label} timed out after {timeout}s")
        if not future.cancel() and on_late is not None:
            future.add_done_callback(lambda f: _deliver_late(f, on_late, label))
        return CallOutcome.failure(ErrorKind.TIMEOUT, f"{label} exceeded {timeout}s")
    return _settle(future, label)


def _settle(future: Future, label: str) -> CallOutcome:
    try:
        result = future.result()
    except Exception as e:
        logger.warning(f"BOUNDED_CALL | {label} raised {type(e).__name__}: {e}")
        return CallOutcome.failure(ErrorKind.UNEXPECTED, f"{type(e).__name__}: {e}")
    if isinstance(result, CallOutcome):
        return result
    return CallOutcome.success(result)


def _deliver_late(future: Future, on_late: Callable[[CallOutcome], None], label: str) -> None:
    outcome = _settle(future, label)
    logger.warning(f"BOUNDED_CALL | {label} finished after its deadline ok={outcome.ok}")
    try:
        on_late(outcome)
    except Exception:
        logger.exception(f"BOUNDED_CALL | late handler for {label} failed")
