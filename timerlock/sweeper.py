"""
Expiry sweeper: the recurring scan that ends due commitments and warns
users about commitments that are about to end.

Each run: idle -> running -> idle. A trigger that fires while a run is in
progress is dropped. Within a run:

    reap stale pending rows
    Phase A  expire every deployed active commitment with end <= now
    Phase B  warn every deployed active commitment ending within the window

Phases and items are processed independently. A failing phase or item
is logged and the run moves on; nothing propagates out of a run.
"""

from __future__ import annotations

import logging
import math
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Optional

from .collaborators import DeviceRegistry, UserDirectory
from .errors import StoreFailure
from .models import Commitment, LifecycleEvent, SweepReport
from .notifier import Notifier, deliver_completion, deliver_warning
from .provider import ProviderGateway
from .safety import Action, CallSite, SweepGuard, action_for, bounded_call
from .store import CommitmentStore, utcnow

logger = logging.getLogger("sweeper")

HOUR = timedelta(hours=1)


# ── Triggers ───────────────────────────────────────────────────────────

class PeriodicTrigger(ABC):
    @abstractmethod
    def start(self, callback: Callable[[], object]) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...


class IntervalTrigger(PeriodicTrigger):
    """Fires once after ``initial_delay`` and then every ``interval`` seconds.

    Each fire runs the callback on its own thread, so a slow run never
    delays the next tick; the sweeper's guard drops overlapping runs.
    """

    def __init__(self, interval: float, initial_delay: float = 5.0):
        self.interval = interval
        self.initial_delay = initial_delay
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self, callback: Callable[[], object]) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, args=(callback,), name="sweep-trigger", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _loop(self, callback: Callable[[], object]) -> None:
        delay = self.initial_delay
        while not self._stop.wait(delay):
            threading.Thread(target=callback, name="sweep-run", daemon=True).start()
            delay = self.interval


class ManualTrigger(PeriodicTrigger):
    """Trigger driven by the caller instead of the wall clock."""

    def __init__(self):
        self._callback: Optional[Callable[[], object]] = None

    def start(self, callback: Callable[[], object]) -> None:
        self._callback = callback

    def stop(self) -> None:
        self._callback = None

    def fire(self):
        if self._callback is None:
            raise RuntimeError("trigger not started")
        return self._callback()


# ── Sweeper ────────────────────────────────────────────────────────────

class ExpirySweeper:
    def __init__(
        self,
        store: CommitmentStore,
        provider: ProviderGateway,
        notifier: Notifier,
        devices: DeviceRegistry,
        users: UserDirectory,
        *,
        warning_window: timedelta = timedelta(hours=24),
        pending_grace: timedelta = timedelta(minutes=10),
        provider_timeout: float = 15.0,
        notifier_timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.provider = provider
        self.notifier = notifier
        self.devices = devices
        self.users = users
        self.warning_window = warning_window
        self.pending_grace = pending_grace
        self.provider_timeout = provider_timeout
        self.notifier_timeout = notifier_timeout
        self._clock = clock
        self._guard = SweepGuard()
        self._trigger: Optional[PeriodicTrigger] = None
        self.last_report: Optional[SweepReport] = None

    # ── Process supervisor entry points ────────────────────────────────

    def start(self, trigger: PeriodicTrigger) -> None:
        logger.info("SWEEP | starting timer sweeper")
        self._trigger = trigger
        trigger.start(self.run)

    def stop(self) -> None:
        if self._trigger is not None:
            self._trigger.stop()
            self._trigger = None

    def get_stats(self) -> dict:
        try:
            by_status = self.store.stats()
        except StoreFailure as e:
            logger.error(f"STATS | failed: {e}")
            return {"success": False, "error": str(e)}
        return {
            "success": True,
            "stats": by_status,
            "running": self._guard.running,
            "skipped_triggers": self._guard.skipped,
            "last_run": self.last_report.model_dump(mode="json") if self.last_report else None,
        }

    # ── Run ────────────────────────────────────────────────────────────

    def run(self) -> Optional[SweepReport]:
        """One sweep. Returns None if another sweep was already running."""
        if not self._guard.try_acquire():
            logger.info("SWEEP | already running, skipping")
            return None
        try:
            now = self._clock()
            report = SweepReport(started_at=now)
            # A failing phase does not stop the phases after it.
            for phase in (self.reap_stale_pending, self.expire_due, self.send_warnings):
                try:
                    phase(now, report)
                except Exception:
                    report.aborted_phases.append(phase.__name__)
                    logger.exception(f"SWEEP | phase {phase.__name__} aborted")
            report.finished_at = self._clock()
            self.last_report = report
            logger.info(
                f"SWEEP | done expired={report.expired} failed={report.failed} "
                f"removal_failures={report.removal_failures} warnings={report.warnings_sent} "
                f"reaped={report.orphans_reaped} aborted={report.aborted_phases}"
            )
            return report
        finally:
            self._guard.release()

    def reap_stale_pending(self, now: datetime, report: SweepReport) -> None:
        for c in self.store.find_stale_pending(now - self.pending_grace):
            try:
                if self.store.delete_pending(c.id):
                    report.orphans_reaped += 1
                    logger.warning(f"REAP | stale pending commitment id={c.id} device={c.device_id} removed")
            except StoreFailure as e:
                logger.error(f"REAP | failed id={c.id} error={e}")

    # ── Phase A ────────────────────────────────────────────────────────

    def expire_due(self, now: datetime, report: SweepReport) -> None:
        due = self.store.find_due(now)
        if not due:
            logger.debug("SWEEP | no expired timers found")
            return
        logger.info(f"SWEEP | found {len(due)} expired timer commitments")
        for commitment in due:
            try:
                self._expire_one(commitment, report)
            except Exception:
                logger.exception(f"EXPIRE | unexpected error id={commitment.id}")

    def _expire_one(self, c: Commitment, report: SweepReport) -> None:
        if c.enforcement_ref:
            removal = bounded_call(
                self.provider.remove_restriction,
                c.provider_device_id,
                c.enforcement_ref,
                timeout=self.provider_timeout,
                label=f"remove:{c.id}",
            )
            action = action_for(CallSite.REMOVE_ON_EXPIRY, removal)
            if action is Action.RETRY_NEXT_RUN:
                report.removal_failures += 1
                logger.warning(f"EXPIRE | id={c.id} removal failed, left active for the next sweep")
                return
            if action is not None:
                report.removal_failures += 1
                logger.critical(
                    f"EXPIRE | ORPHANED_PROFILE id={c.enforcement_ref} device={c.provider_device_id} "
                    f"commitment={c.id} needs manual removal"
                )

        try:
            expired = self.store.transition(c.id, LifecycleEvent.TIMER_ELAPSED)
        except StoreFailure as e:
            logger.error(f"EXPIRE | status write failed id={c.id} error={e}")
            self._mark_failed(c, report)
            return

        if not expired:
            logger.info(f"EXPIRE | id={c.id} no longer active, skipped")
            return
        report.expired += 1
        logger.info(f"EXPIRE | id={c.id} device={c.device_id} -> expired")

        notice = deliver_completion(self.notifier, self.devices, self.users, c, timeout=self.notifier_timeout)
        if action_for(CallSite.NOTIFY_COMPLETION, notice) is not None:
            report.completion_notice_failures += 1

    def _mark_failed(self, c: Commitment, report: SweepReport) -> None:
        try:
            if self.store.transition(c.id, LifecycleEvent.EXPIRY_WRITE_FAILED):
                report.failed += 1
                logger.critical(f"EXPIRE | id={c.id} marked failed for manual review")
        except StoreFailure as e:
            logger.critical(f"EXPIRE | id={c.id} could not be marked failed: {e}")

    # ── Phase B ────────────────────────────────────────────────────────

    def send_warnings(self, now: datetime, report: SweepReport) -> None:
        upcoming = self.store.find_needing_warning(now, self.warning_window)
        if not upcoming:
            logger.debug("SWEEP | no timers need expiration warnings")
            return
        logger.info(f"SWEEP | sending expiration warnings for {len(upcoming)} timers")
        for commitment in upcoming:
            try:
                self._warn_one(commitment, now, report)
            except Exception:
                logger.exception(f"WARN_NOTICE | unexpected error id={commitment.id}")

    def _warn_one(self, c: Commitment, now: datetime, report: SweepReport) -> None:
        hours_remaining = hours_until(c.commitment_end, now)
        notice = deliver_warning(
            self.notifier, self.devices, self.users, c, hours_remaining, timeout=self.notifier_timeout
        )
        action = action_for(CallSite.NOTIFY_WARNING, notice)
        if action is Action.RETRY_NEXT_RUN:
            report.warning_failures += 1
            return
        if action is not None:
            # Given up on: flag it so the warning is not attempted again.
            report.warning_failures += 1
            self.store.mark_warning_sent(c.id)
            return
        if self.store.mark_warning_sent(c.id):
            report.warnings_sent += 1
            logger.info(f"WARN_NOTICE | id={c.id} hours_remaining={hours_remaining}")


def hours_until(end: datetime, now: datetime) -> int:
    return math.ceil((end - now) / HOUR)
