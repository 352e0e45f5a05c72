"""
Shared fixtures: a file-backed SQLite store, a controllable clock, and
recording fakes for the provider, notifier and collaborators.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event

from timerlock.collaborators import InMemoryDevices, InMemorySubscriptions, InMemoryUsers
from timerlock.database import init_db, make_engine, make_session_factory
from timerlock.models import DeviceRecord, ProviderDeviceStatus, Recipient
from timerlock.notifier import Notifier
from timerlock.orchestrator import CommitmentOrchestrator
from timerlock.provider import Deployment, ProviderGateway
from timerlock.safety import CallOutcome, ErrorKind
from timerlock.store import CommitmentStore
from timerlock.sweeper import ExpirySweeper

USER = "user-1"
DEVICE = "device-1"
PROVIDER_DEVICE = "jamf-1"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeProvider(ProviderGateway):
    def __init__(self):
        self.deploy_calls: list[tuple[str, str]] = []
        self.remove_calls: list[tuple[str, str]] = []
        self.status_calls: list[str] = []
        self.deploy_error: ErrorKind | None = None
        self.deploy_raises: Exception | None = None
        self.deploy_delay = 0.0
        self.remove_error: ErrorKind | None = None
        self.status_error: ErrorKind | None = None
        self.remove_gate: threading.Event | None = None
        self.remove_started = threading.Event()
        self._lock = threading.Lock()
        self._next = 0

    def enroll(self, device_name, owner_email):
        return CallOutcome.failure(ErrorKind.REJECTED, "not used")

    def deploy_restriction(self, device_handle, commitment):
        with self._lock:
            self.deploy_calls.append((device_handle, commitment.id))
            self._next += 1
            n = self._next
        if self.deploy_delay:
            time.sleep(self.deploy_delay)
        if self.deploy_raises is not None:
            raise self.deploy_raises
        if self.deploy_error is not None:
            return CallOutcome.failure(self.deploy_error, "fake failure")
        return CallOutcome.success(Deployment(profile_id=f"ref-{n}", deployment_id=f"dep-{n}"))

    def remove_restriction(self, device_handle, enforcement_ref):
        with self._lock:
            self.remove_calls.append((device_handle, enforcement_ref))
        self.remove_started.set()
        if self.remove_gate is not None:
            self.remove_gate.wait(timeout=5)
        if self.remove_error is not None:
            return CallOutcome.failure(self.remove_error, "fake failure")
        return CallOutcome.success(None)

    def query_status(self, device_handle):
        self.status_calls.append(device_handle)
        if self.status_error is not None:
            return CallOutcome.failure(self.status_error, "fake failure")
        return CallOutcome.success(ProviderDeviceStatus(online=True, compliant=True, last_seen=NOW))


class FakeNotifier(Notifier):
    def __init__(self):
        self.completions: list[str] = []
        self.warnings: list[tuple[str, int]] = []
        self.fail = False

    def send_completion(self, recipient, commitment, device_name):
        self.completions.append(commitment.id)
        if self.fail:
            return CallOutcome.failure(ErrorKind.TRANSIENT, "smtp down")
        return CallOutcome.success(None)

    def send_warning(self, recipient, commitment, device_name, hours_remaining):
        self.warnings.append((commitment.id, hours_remaining))
        if self.fail:
            return CallOutcome.failure(ErrorKind.TRANSIENT, "smtp down")
        return CallOutcome.success(None)


class WriteCounter:
    """Counts INSERT/UPDATE/DELETE statements sent to the database."""

    def __init__(self, engine):
        self.count = 0
        event.listen(engine, "before_cursor_execute", self._on_execute)

    def _on_execute(self, conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(("INSERT", "UPDATE", "DELETE")):
            self.count += 1


# ── Fixtures ───────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'timerlock.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine, clock) -> CommitmentStore:
    return CommitmentStore(make_session_factory(engine), clock=clock)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def subscriptions() -> InMemorySubscriptions:
    return InMemorySubscriptions({USER: "monthly"})


@pytest.fixture
def devices() -> InMemoryDevices:
    registry = InMemoryDevices()
    registry.add(DeviceRecord(device_id=DEVICE, user_id=USER, device_name="Sam's iPhone",
                              provider_device_id=PROVIDER_DEVICE))
    registry.add(DeviceRecord(device_id="device-2", user_id=USER, device_name="iPad",
                              provider_device_id="jamf-2"))
    registry.add(DeviceRecord(device_id="unenrolled", user_id=USER, device_name="Old phone"))
    return registry


@pytest.fixture
def users() -> InMemoryUsers:
    directory = InMemoryUsers()
    directory.add(USER, Recipient(email="sam@example.com", first_name="Sam"))
    return directory


@pytest.fixture
def orchestrator(store, provider, notifier, subscriptions, devices, users, clock) -> CommitmentOrchestrator:
    return CommitmentOrchestrator(
        store, provider, notifier, subscriptions, devices, users,
        provider_timeout=2.0, notifier_timeout=2.0, clock=clock,
    )


@pytest.fixture
def sweeper(store, provider, notifier, devices, users, clock) -> ExpirySweeper:
    return ExpirySweeper(
        store, provider, notifier, devices, users,
        provider_timeout=2.0, notifier_timeout=2.0, clock=clock,
    )


@pytest.fixture
def make_active(store):
    """Insert a deployed active commitment directly through the store."""

    def _make(device_id=DEVICE, days=30, start=None, ref="ref-1"):
        pending = store.create_pending(
            user_id=USER, device_id=device_id, subscription_tier="1month",
            commitment_days=days, provider_device_id=PROVIDER_DEVICE, start=start,
        )
        return store.activate(pending.id, ref, "dep-1")

    return _make
