"""
Commitment orchestrator: creation with compensating rollback, manual
termination, emergency cancellation requests, and the read operations
behind the HTTP layer.

Create guarantees: on success the commitment is active with its restriction
deployed; on failure no row for the attempt is left behind, and a deploy
that completes after its deadline is removed again.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Callable, Optional

from .collaborators import DeviceRegistry, SubscriptionDirectory, UserDirectory
from .errors import (
    CommitmentNotFound,
    ConfirmationRequired,
    DeviceNotEnrolled,
    DeviceNotFound,
    PolicyViolation,
    ProviderFailure,
    StoreFailure,
    SubscriptionRequired,
    Unauthorized,
    ValidationFailed,
)
from .models import (
    AdminAuthorization,
    AuditAction,
    AuditRecord,
    Commitment,
    CommitmentStatus,
    CommitmentView,
    LifecycleEvent,
)
from .notifier import Notifier, deliver_completion
from .policy import MAX_COMMITMENT_DAYS, MIN_COMMITMENT_DAYS, allows, limits_for_tier
from .provider import Deployment, ProviderGateway
from .safety import (
    RETRYABLE_KINDS,
    Action,
    CallOutcome,
    CallSite,
    ErrorKind,
    action_for,
    bounded_call,
)
from .store import CommitmentStore, utcnow

logger = logging.getLogger("orchestrator")

MIN_TERMINATION_REASON = 10
EMERGENCY_TICKET_PREFIX = "EMG"


@dataclass(frozen=True)
class TerminationResult:
    commitment: Commitment
    removal_failed: bool
    notified: bool


@dataclass(frozen=True)
class EmergencyTicket:
    ticket_id: str
    commitment_id: str
    audit: AuditRecord


class CommitmentOrchestrator:
    def __init__(
        self,
        store: CommitmentStore,
        provider: ProviderGateway,
        notifier: Notifier,
        subscriptions: SubscriptionDirectory,
        devices: DeviceRegistry,
        users: UserDirectory,
        *,
        provider_timeout: float = 15.0,
        notifier_timeout: float = 10.0,
        deploy_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.provider = provider
        self.notifier = notifier
        self.subscriptions = subscriptions
        self.devices = devices
        self.users = users
        self.provider_timeout = provider_timeout
        self.notifier_timeout = notifier_timeout
        self.deploy_timeout = deploy_timeout if deploy_timeout is not None else provider_timeout
        self._clock = clock

    # ── Create ─────────────────────────────────────────────────────────

    def create(
        self,
        device_id: str,
        user_id: str,
        commitment_days: int,
        confirm_understanding: Optional[bool],
    ) -> Commitment:
        if confirm_understanding is not True:
            raise ConfirmationRequired("Must confirm understanding of timer commitment")
        if (
            isinstance(commitment_days, bool)
            or not isinstance(commitment_days, int)
            or not MIN_COMMITMENT_DAYS <= commitment_days <= MAX_COMMITMENT_DAYS
        ):
            raise ValidationFailed(
                f"Commitment days must be between {MIN_COMMITMENT_DAYS} and {MAX_COMMITMENT_DAYS}"
            )

        tier = self.subscriptions.get_active_tier_for_user(user_id)
        if tier is None:
            raise SubscriptionRequired("Active subscription required for timer commitments")
        limits = limits_for_tier(tier)
        if not allows(limits.tier, commitment_days):
            logger.info(
                f"CREATE | REJECTED user={user_id} device={device_id} days={commitment_days} "
                f"tier={limits.tier} max={limits.max_days}"
            )
            raise PolicyViolation(
                f"Your {limits.display_name} subscription allows maximum {limits.max_days} day "
                f"commitments. Upgrade to commit for {commitment_days} days.",
                max_allowed=limits.max_days,
                subscription_tier=limits.display_name,
            )

        device = self.devices.get_device(device_id, user_id)
        if device is None:
            raise DeviceNotFound("Device not found", device_id=device_id)
        if not device.is_enrolled:
            raise DeviceNotEnrolled(
                "Device must be enrolled in MDM before creating timer commitments",
                action="enroll_device",
            )

        # Claims the device; a concurrent create for it fails here.
        pending = self.store.create_pending(
            user_id=user_id,
            device_id=device_id,
            subscription_tier=limits.tier,
            commitment_days=commitment_days,
            provider_device_id=device.provider_device_id,
            start=self._clock(),
        )
        logger.info(
            f"CREATE | pending id={pending.id} user={user_id} device={device_id} "
            f"days={commitment_days} end={pending.commitment_end.isoformat()}"
        )

        outcome = bounded_call(
            self.provider.deploy_restriction,
            device.provider_device_id,
            pending,
            timeout=self.deploy_timeout,
            label=f"deploy:{pending.id}",
            on_late=partial(self._undo_late_deploy, pending),
        )
        if action_for(CallSite.DEPLOY, outcome) is Action.ABORT_AND_ROLLBACK:
            self._rollback(pending)
            unenrolled = outcome.error is ErrorKind.DEVICE_UNENROLLED
            raise ProviderFailure(
                "Failed to activate timer commitment. Please try again or contact support.",
                retryable=outcome.error in RETRYABLE_KINDS,
                action="re_enroll_device" if unenrolled else (
                    "retry" if outcome.error in RETRYABLE_KINDS else "contact_support"
                ),
                error_kind=outcome.error.value,
                technical=outcome.detail,
            )

        deployment = outcome.value
        try:
            active = self.store.activate(pending.id, deployment.profile_id, deployment.deployment_id)
        except StoreFailure:
            logger.error(f"CREATE | activation write failed id={pending.id}; undoing deployment")
            removal = bounded_call(
                self.provider.remove_restriction,
                device.provider_device_id,
                deployment.profile_id,
                timeout=self.provider_timeout,
                label=f"undo_deploy:{pending.id}",
            )
            if not removal.ok:
                logger.critical(
                    f"CREATE | ORPHANED_PROFILE id={deployment.profile_id} "
                    f"device={device.provider_device_id} commitment={pending.id}"
                )
            self._rollback(pending)
            raise

        logger.info(
            f"CREATE | active id={active.id} device={device_id} ref={active.enforcement_ref} "
            f"until={active.commitment_end.isoformat()}"
        )
        return active

    def _rollback(self, pending: Commitment) -> None:
        try:
            deleted = self.store.delete_pending(pending.id)
        except StoreFailure as e:
            # The sweeper reaps the row once the pending grace period passes.
            logger.critical(f"ROLLBACK | delete failed id={pending.id} error={e}")
            return
        logger.info(f"ROLLBACK | id={pending.id} device={pending.device_id} deleted={deleted}")

    def _undo_late_deploy(self, pending: Commitment, late: CallOutcome[Deployment]) -> None:
        """Remove a restriction whose deploy finished after ``create`` gave up on it."""
        if not late.ok:
            return
        profile_id = late.value.profile_id
        logger.warning(
            f"CREATE | late deploy id={pending.id} profile={profile_id} "
            f"device={pending.provider_device_id}; removing"
        )
        try:
            removal = self.provider.remove_restriction(pending.provider_device_id, profile_id)
        except Exception as e:
            removal = CallOutcome.failure(ErrorKind.UNEXPECTED, f"{type(e).__name__}: {e}")
        if not removal.ok:
            logger.critical(
                f"CREATE | ORPHANED_PROFILE id={profile_id} device={pending.provider_device_id} "
                f"commitment={pending.id} error={removal.error.value} needs manual removal"
            )
            return
        logger.info(f"CREATE | late deploy undone id={pending.id} profile={profile_id}")

    # ── Manual termination ─────────────────────────────────────────────

    def manual_terminate(self, commitment_id: str, authorization: AdminAuthorization) -> TerminationResult:
        """
        End an active commitment early on an administrative path.

        The status is advanced even if the provider removal fails; the
        leftover profile is logged for manual follow-up.
        """
        if not authorization.admin_key_verified:
            raise Unauthorized("Manual termination requires administrative authorization")
        if len(authorization.reason.strip()) < MIN_TERMINATION_REASON:
            raise ValidationFailed("Detailed reason required")

        commitment = self.store.get(commitment_id)
        if commitment is None or commitment.status is not CommitmentStatus.ACTIVE or not commitment.is_deployed:
            raise CommitmentNotFound("No active timer commitment found", commitment_id=commitment_id)

        # Claim first so a concurrent sweep cannot also remove the profile.
        if not self.store.transition(commitment_id, LifecycleEvent.ADMIN_TERMINATE):
            raise CommitmentNotFound("No active timer commitment found", commitment_id=commitment_id)
        logger.warning(
            f"TERMINATE | id={commitment_id} device={commitment.device_id} "
            f"actor={authorization.actor} reason={authorization.reason!r}"
        )
        try:
            self.store.record_audit(
                commitment_id=commitment_id,
                user_id=commitment.user_id,
                action=AuditAction.ADMIN_TERMINATE,
                actor=authorization.actor,
                reason=authorization.reason,
            )
        except StoreFailure as e:
            # The status already advanced; the restriction must still come off.
            logger.error(f"TERMINATE | audit write failed id={commitment_id} error={e}")

        removal = bounded_call(
            self.provider.remove_restriction,
            commitment.provider_device_id,
            commitment.enforcement_ref,
            timeout=self.provider_timeout,
            label=f"remove:{commitment_id}",
        )
        removal_failed = action_for(CallSite.REMOVE_ON_TERMINATE, removal) is not None
        if removal_failed:
            logger.critical(
                f"TERMINATE | ORPHANED_PROFILE id={commitment.enforcement_ref} "
                f"device={commitment.provider_device_id} commitment={commitment_id} needs manual removal"
            )

        notice = deliver_completion(
            self.notifier, self.devices, self.users, commitment, timeout=self.notifier_timeout
        )
        action_for(CallSite.NOTIFY_COMPLETION, notice)

        return TerminationResult(
            commitment=self.store.get(commitment_id),
            removal_failed=removal_failed,
            notified=notice.ok,
        )

    # ── Emergency cancellation requests ────────────────────────────────

    def request_emergency_cancel(
        self,
        device_id: str,
        user_id: str,
        reason: str,
        confirm_emergency: bool,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> EmergencyTicket:
        """
        File a user's emergency cancellation request for manual review.

        The request is written to the audit trail and a ticket id is handed
        back. The commitment itself is left untouched; only an administrator
        can end it early.
        """
        if confirm_emergency is not True:
            raise ConfirmationRequired("Must confirm this is a genuine emergency")
        if len(reason.strip()) < MIN_TERMINATION_REASON:
            raise ValidationFailed("Detailed reason required")

        device = self.devices.get_device(device_id, user_id)
        if device is None:
            raise DeviceNotFound("Device not found", device_id=device_id)
        commitment = self.store.get_active_for_device(device_id)
        if commitment is None:
            raise CommitmentNotFound("No active timer commitment found", device_id=device_id)

        now = self._clock()
        ticket_id = f"{EMERGENCY_TICKET_PREFIX}-{commitment.id}-{int(now.timestamp() * 1000)}"
        audit = self.store.record_audit(
            commitment_id=commitment.id,
            user_id=user_id,
            action=AuditAction.EMERGENCY_REQUEST,
            actor=user_id,
            reason=reason,
            ip_address=ip_address,
            user_agent=user_agent or "unknown",
            ticket_id=ticket_id,
        )
        logger.warning(
            f"EMERGENCY | ticket={ticket_id} commitment={commitment.id} device={device_id} "
            f"user={user_id} ip={ip_address}"
        )
        return EmergencyTicket(ticket_id=ticket_id, commitment_id=commitment.id, audit=audit)

    def audit_trail(self, commitment_id: str) -> list[AuditRecord]:
        if self.store.get(commitment_id) is None:
            raise CommitmentNotFound("Timer commitment not found", commitment_id=commitment_id)
        return self.store.audit_trail(commitment_id)

    # ── Reads ──────────────────────────────────────────────────────────

    def get_active(self, device_id: str, user_id: str, *, with_provider_status: bool = True) -> Optional[CommitmentView]:
        device = self.devices.get_device(device_id, user_id)
        if device is None:
            raise DeviceNotFound("Device not found", device_id=device_id)
        commitment = self.store.get_active_for_device(device_id)
        if commitment is None:
            return None

        remaining = (commitment.commitment_end - self._clock()).total_seconds()
        provider_status = None
        if with_provider_status and commitment.provider_device_id:
            outcome = bounded_call(
                self.provider.query_status,
                commitment.provider_device_id,
                timeout=self.provider_timeout,
                label=f"status:{commitment.provider_device_id}",
            )
            if action_for(CallSite.QUERY_STATUS, outcome) is None:
                provider_status = outcome.value

        return CommitmentView(
            commitment=commitment,
            seconds_remaining=max(0, int(remaining)),
            is_active=remaining > 0,
            provider_status=provider_status,
        )

    def get_limits(self, user_id: str) -> dict:
        tier = self.subscriptions.get_active_tier_for_user(user_id)
        if tier is None:
            return {"max_days": 0, "subscription_tier": "none", "has_subscription": False}
        limits = limits_for_tier(tier)
        return {
            "max_days": limits.max_days,
            "subscription_tier": limits.display_name,
            "tier": limits.tier,
            "has_subscription": True,
        }

    def history(self, user_id: str, page: int = 1, limit: int = 10) -> dict:
        if page < 1 or not 1 <= limit <= 100:
            raise ValidationFailed("page must be >= 1 and limit between 1 and 100")
        rows, total = self.store.history(user_id, page=page, limit=limit)
        now = self._clock()
        timers = []
        for c in rows:
            computed = c.status
            if c.status is CommitmentStatus.ACTIVE and c.commitment_end <= now:
                computed = CommitmentStatus.EXPIRED
            timers.append({**c.model_dump(mode="json"), "computed_status": computed.value})
        return {
            "timers": timers,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if total else 0,
            },
        }
