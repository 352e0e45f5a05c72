"""
Data models and the commitment status machine.
"""

from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ── Enums ──────────────────────────────────────────────────────────────

class CommitmentStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    MANUALLY_EXPIRED = "manually_expired"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not CommitmentStatus.ACTIVE


class LifecycleEvent(str, Enum):
    TIMER_ELAPSED = "timer.elapsed"
    ADMIN_TERMINATE = "admin.terminate"
    EXPIRY_WRITE_FAILED = "expiry.write_failed"


class AuditAction(str, Enum):
    EMERGENCY_REQUEST = "emergency_request"
    ADMIN_TERMINATE = "admin_terminate"


# ── Valid status transitions ───────────────────────────────────────────

VALID_TRANSITIONS: dict[tuple[CommitmentStatus, LifecycleEvent], CommitmentStatus] = {
    (CommitmentStatus.ACTIVE, LifecycleEvent.TIMER_ELAPSED): CommitmentStatus.EXPIRED,
    (CommitmentStatus.ACTIVE, LifecycleEvent.ADMIN_TERMINATE): CommitmentStatus.MANUALLY_EXPIRED,
    (CommitmentStatus.ACTIVE, LifecycleEvent.EXPIRY_WRITE_FAILED): CommitmentStatus.FAILED,
}

# Terminal statuses have no outgoing transitions.

LOCKED_CAPABILITIES: dict[str, bool] = {
    "profile_removal": False,
    "factory_reset": False,
    "app_installation": False,
    "system_settings": False,
}


def next_status(current: CommitmentStatus, event: LifecycleEvent) -> CommitmentStatus | None:
    """Return the status reached from ``current`` on ``event``, or None if not allowed."""
    return VALID_TRANSITIONS.get((current, event))


# ── Domain records ─────────────────────────────────────────────────────

class Commitment(BaseModel):
    """A commitment as read from the store. Unknown status strings are rejected."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    user_id: str
    device_id: str
    subscription_tier: str
    commitment_days: int = Field(..., ge=1)
    commitment_start: datetime
    commitment_end: datetime
    status: CommitmentStatus
    enforcement_ref: Optional[str] = None
    deployment_id: Optional[str] = None
    provider_device_id: Optional[str] = None
    warning_sent: bool = False
    locked_settings: dict = Field(default_factory=lambda: dict(LOCKED_CAPABILITIES))
    created_at: datetime
    updated_at: datetime

    @property
    def is_deployed(self) -> bool:
        return self.enforcement_ref is not None


class TierLimits(BaseModel):
    tier: str
    max_days: int
    display_name: str


class DeviceRecord(BaseModel):
    device_id: str
    user_id: str
    device_name: str
    provider_device_id: Optional[str] = None

    @property
    def is_enrolled(self) -> bool:
        return bool(self.provider_device_id)


class AuditRecord(BaseModel):
    """One entry of a commitment's audit trail. Never updated once written."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    commitment_id: str
    user_id: str
    action: AuditAction
    actor: str
    reason: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    ticket_id: Optional[str] = None
    created_at: datetime


class Recipient(BaseModel):
    email: str
    first_name: str = ""


class ProviderDeviceStatus(BaseModel):
    online: bool
    compliant: bool
    last_seen: Optional[datetime] = None


class SweepReport(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    orphans_reaped: int = 0
    expired: int = 0
    failed: int = 0
    removal_failures: int = 0
    completion_notice_failures: int = 0
    warnings_sent: int = 0
    warning_failures: int = 0
    aborted_phases: list[str] = Field(default_factory=list)


# ── Request / Response schemas ─────────────────────────────────────────

class CreateCommitmentRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    commitment_days: int = Field(..., ge=1, le=365)
    confirm_understanding: Optional[bool] = None


class TerminateRequest(BaseModel):
    actor: str = Field(..., min_length=1, max_length=64)
    reason: str = Field(..., min_length=10, max_length=500)


class EmergencyCancelRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    reason: str = Field(..., min_length=10, max_length=500)
    confirm_emergency: bool


class AdminAuthorization(BaseModel):
    """Authorization for manual termination; never derived from creation input."""

    actor: str
    reason: str
    admin_key_verified: bool = False


class CommitmentView(BaseModel):
    commitment: Commitment
    seconds_remaining: int
    is_active: bool
    provider_status: Optional[ProviderDeviceStatus] = None
