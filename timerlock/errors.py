"""
Exception hierarchy for commitment operations.

Input errors are the caller's fault and never mutate state. Infrastructure
errors come from the store or the provider and carry enough structure for
the caller to decide whether to retry.
"""

from __future__ import annotations


class CommitmentError(Exception):
    kind = "commitment_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


# ── Input / policy errors ──────────────────────────────────────────────

class InputError(CommitmentError):
    kind = "input_error"


class ValidationFailed(InputError):
    kind = "validation_failed"


class ConfirmationRequired(InputError):
    kind = "confirmation_required"


class PolicyViolation(InputError):
    kind = "policy_violation"


class SubscriptionRequired(InputError):
    kind = "subscription_required"


class DeviceNotFound(InputError):
    kind = "device_not_found"


class DeviceNotEnrolled(InputError):
    kind = "device_not_enrolled"


class DuplicateActiveCommitment(InputError):
    kind = "duplicate_active_commitment"


class CommitmentNotFound(InputError):
    kind = "commitment_not_found"


class Unauthorized(InputError):
    kind = "unauthorized"


# ── Infrastructure errors ──────────────────────────────────────────────

class InfrastructureError(CommitmentError):
    kind = "infrastructure_error"


class ProviderFailure(InfrastructureError):
    """Provider call failed. ``action`` is "retry" or "re_enroll_device"."""

    kind = "provider_failure"

    def __init__(self, message: str, *, retryable: bool, action: str, **details):
        super().__init__(message, retryable=retryable, action=action, **details)
        self.retryable = retryable
        self.action = action


class StoreFailure(InfrastructureError):
    kind = "store_failure"
