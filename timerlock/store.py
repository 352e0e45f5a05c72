"""
Commitment store: the single source of truth for commitment state.

Uniqueness of the active commitment per device is a partial unique index,
so two racing creates cannot both succeed. Status changes are
compare-and-set updates guarded on ``status = 'active'``, which keeps the
status monotone no matter how many writers there are.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    TypeDecorator,
    delete,
    func,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .database import Base
from .errors import DuplicateActiveCommitment, StoreFailure
from .models import (
    LOCKED_CAPABILITIES,
    AuditAction,
    AuditRecord,
    Commitment,
    CommitmentStatus,
    LifecycleEvent,
    next_status,
)

logger = logging.getLogger("store")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to UTCDateTime column")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class CommitmentRow(Base):
    __tablename__ = "timer_commitments"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    device_id = Column(String(64), nullable=False, index=True)
    subscription_tier = Column(String(16), nullable=False)
    commitment_days = Column(Integer, nullable=False)
    commitment_start = Column(UTCDateTime, nullable=False)
    commitment_end = Column(UTCDateTime, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=CommitmentStatus.ACTIVE.value)
    enforcement_ref = Column(String(128), nullable=True)
    deployment_id = Column(String(128), nullable=True)
    provider_device_id = Column(String(128), nullable=True)
    warning_sent = Column(Boolean, nullable=False, default=False)
    locked_settings = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index(
            "uq_one_active_commitment_per_device",
            "device_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )


class AuditRow(Base):
    __tablename__ = "commitment_audit_log"

    id = Column(String(36), primary_key=True)
    commitment_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    action = Column(String(32), nullable=False)
    actor = Column(String(64), nullable=False)
    reason = Column(String(500), nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(256), nullable=True)
    ticket_id = Column(String(96), nullable=True)
    created_at = Column(UTCDateTime, nullable=False)


def _to_record(row: CommitmentRow) -> Commitment:
    return Commitment.model_validate(row)


class CommitmentStore:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self._sessions = session_factory
        self._clock = clock

    # ── Creation path ──────────────────────────────────────────────────

    def create_pending(
        self,
        *,
        user_id: str,
        device_id: str,
        subscription_tier: str,
        commitment_days: int,
        provider_device_id: str,
        start: Optional[datetime] = None,
    ) -> Commitment:
        """Insert an ``active`` row with no enforcement reference yet.

        Raises DuplicateActiveCommitment if the device already has one.
        """
        start = start or self._clock()
        end = start + timedelta(days=commitment_days)
        row = CommitmentRow(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_id=device_id,
            subscription_tier=subscription_tier,
            commitment_days=commitment_days,
            commitment_start=start,
            commitment_end=end,
            status=CommitmentStatus.ACTIVE.value,
            provider_device_id=provider_device_id,
            warning_sent=False,
            locked_settings=dict(LOCKED_CAPABILITIES),
            created_at=start,
            updated_at=start,
        )
        try:
            with self._sessions.begin() as session:
                session.add(row)
                session.flush()
                record = _to_record(row)
        except IntegrityError as e:
            logger.info(f"STORE | duplicate active commitment device={device_id}")
            raise DuplicateActiveCommitment(
                "Device already has an active timer commitment", device_id=device_id
            ) from e
        except SQLAlchemyError as e:
            raise StoreFailure(f"Failed to insert commitment: {e}") from e
        return record

    def activate(self, commitment_id: str, enforcement_ref: str, deployment_id: Optional[str]) -> Commitment:
        """Attach the enforcement reference to a pending row."""
        now = self._clock()
        try:
            with self._sessions.begin() as session:
                result = session.execute(
                    update(CommitmentRow)
                    .where(
                        CommitmentRow.id == commitment_id,
                        CommitmentRow.status == CommitmentStatus.ACTIVE.value,
                        CommitmentRow.enforcement_ref.is_(None),
                    )
                    .values(enforcement_ref=enforcement_ref, deployment_id=deployment_id, updated_at=now)
                )
                if result.rowcount != 1:
                    raise StoreFailure(f"Commitment {commitment_id} is not pending activation")
                row = session.get(CommitmentRow, commitment_id)
                return _to_record(row)
        except SQLAlchemyError as e:
            raise StoreFailure(f"Failed to activate commitment {commitment_id}: {e}") from e

    def delete_pending(self, commitment_id: str) -> bool:
        """Remove a row that never received an enforcement reference."""
        try:
            with self._sessions.begin() as session:
                result = session.execute(
                    delete(CommitmentRow).where(
                        CommitmentRow.id == commitment_id,
                        CommitmentRow.enforcement_ref.is_(None),
                    )
                )
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise StoreFailure(f"Failed to delete pending commitment {commitment_id}: {e}") from e

    # ── Reads ──────────────────────────────────────────────────────────

    @contextmanager
    def _reading(self, what: str) -> Iterator[Session]:
        try:
            with self._sessions() as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreFailure(f"Failed to read {what}: {e}") from e

    def get(self, commitment_id: str) -> Optional[Commitment]:
        with self._reading(f"commitment {commitment_id}") as session:
            row = session.get(CommitmentRow, commitment_id)
            return _to_record(row) if row else None

    def get_active_for_device(self, device_id: str) -> Optional[Commitment]:
        """The deployed active commitment for a device, if any."""
        with self._reading(f"active commitment for device {device_id}") as session:
            row = session.scalars(
                select(CommitmentRow).where(
                    CommitmentRow.device_id == device_id,
                    CommitmentRow.status == CommitmentStatus.ACTIVE.value,
                    CommitmentRow.enforcement_ref.is_not(None),
                )
            ).first()
            return _to_record(row) if row else None

    def find_due(self, now: datetime) -> list[Commitment]:
        """Deployed active commitments whose end time has passed."""
        with self._reading("due commitments") as session:
            rows = session.scalars(
                select(CommitmentRow)
                .where(
                    CommitmentRow.status == CommitmentStatus.ACTIVE.value,
                    CommitmentRow.enforcement_ref.is_not(None),
                    CommitmentRow.commitment_end <= now,
                )
                .order_by(CommitmentRow.commitment_end)
            ).all()
            return [_to_record(r) for r in rows]

    def find_needing_warning(self, now: datetime, window: timedelta) -> list[Commitment]:
        """Deployed active commitments ending within ``window`` that were not warned yet."""
        with self._reading("commitments needing a warning") as session:
            rows = session.scalars(
                select(CommitmentRow)
                .where(
                    CommitmentRow.status == CommitmentStatus.ACTIVE.value,
                    CommitmentRow.enforcement_ref.is_not(None),
                    CommitmentRow.warning_sent.is_(False),
                    CommitmentRow.commitment_end > now,
                    CommitmentRow.commitment_end <= now + window,
                )
                .order_by(CommitmentRow.commitment_end)
            ).all()
            return [_to_record(r) for r in rows]

    def find_stale_pending(self, created_before: datetime) -> list[Commitment]:
        """Pending rows left behind by a creation that never finished."""
        with self._reading("stale pending commitments") as session:
            rows = session.scalars(
                select(CommitmentRow).where(
                    CommitmentRow.status == CommitmentStatus.ACTIVE.value,
                    CommitmentRow.enforcement_ref.is_(None),
                    CommitmentRow.created_at < created_before,
                )
            ).all()
            return [_to_record(r) for r in rows]

    def history(self, user_id: str, page: int = 1, limit: int = 10) -> tuple[list[Commitment], int]:
        offset = (max(page, 1) - 1) * limit
        with self._reading(f"history for user {user_id}") as session:
            rows = session.scalars(
                select(CommitmentRow)
                .where(CommitmentRow.user_id == user_id)
                .order_by(CommitmentRow.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            total = session.scalar(
                select(func.count()).select_from(CommitmentRow).where(CommitmentRow.user_id == user_id)
            )
            return [_to_record(r) for r in rows], int(total or 0)

    def stats(self) -> list[dict]:
        with self._reading("commitment stats") as session:
            rows = session.execute(
                select(
                    CommitmentRow.status,
                    func.count(CommitmentRow.id),
                    func.avg(CommitmentRow.commitment_days),
                ).group_by(CommitmentRow.status)
            ).all()
            return [
                {
                    "status": status,
                    "count": int(count),
                    "avg_days": round(float(avg), 2) if avg is not None else None,
                }
                for status, count, avg in rows
            ]

    # ── Audit trail ────────────────────────────────────────────────────

    def record_audit(
        self,
        *,
        commitment_id: str,
        user_id: str,
        action: AuditAction,
        actor: str,
        reason: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        ticket_id: Optional[str] = None,
    ) -> AuditRecord:
        row = AuditRow(
            id=str(uuid.uuid4()),
            commitment_id=commitment_id,
            user_id=user_id,
            action=action.value,
            actor=actor,
            reason=reason,
            ip_address=ip_address,
            user_agent=user_agent,
            ticket_id=ticket_id,
            created_at=self._clock(),
        )
        try:
            with self._sessions.begin() as session:
                session.add(row)
                session.flush()
                return AuditRecord.model_validate(row)
        except SQLAlchemyError as e:
            raise StoreFailure(f"Failed to record {action.value} for {commitment_id}: {e}") from e

    def audit_trail(self, commitment_id: str) -> list[AuditRecord]:
        """Audit records for a commitment, oldest first."""
        with self._reading(f"audit trail for {commitment_id}") as session:
            rows = session.scalars(
                select(AuditRow)
                .where(AuditRow.commitment_id == commitment_id)
                .order_by(AuditRow.created_at)
            ).all()
            return [AuditRecord.model_validate(r) for r in rows]

    # ── Transitions ────────────────────────────────────────────────────

    def transition(self, commitment_id: str, event: LifecycleEvent) -> bool:
        """Apply a lifecycle event to an active commitment.

        Returns False if the commitment was no longer active. Raises
        StoreFailure if the write itself fails.
        """
        target = next_status(CommitmentStatus.ACTIVE, event)
        if target is None:
            raise ValueError(f"No transition from active on {event.value}")
        try:
            with self._sessions.begin() as session:
                result = session.execute(
                    update(CommitmentRow)
                    .where(
                        CommitmentRow.id == commitment_id,
                        CommitmentRow.status == CommitmentStatus.ACTIVE.value,
                    )
                    .values(status=target.value, updated_at=self._clock())
                )
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise StoreFailure(f"Failed to transition commitment {commitment_id}: {e}") from e

    def mark_warning_sent(self, commitment_id: str) -> bool:
        try:
            with self._sessions.begin() as session:
                result = session.execute(
                    update(CommitmentRow)
                    .where(
                        CommitmentRow.id == commitment_id,
                        CommitmentRow.status == CommitmentStatus.ACTIVE.value,
                        CommitmentRow.warning_sent.is_(False),
                    )
                    .values(warning_sent=True, updated_at=self._clock())
                )
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise StoreFailure(f"Failed to flag warning for {commitment_id}: {e}") from e
