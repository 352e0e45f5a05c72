"""
Provider gateway: deploys and removes restriction profiles on the
device-management provider (Jamf Now).

Every method returns a CallOutcome and never raises for remote failures.
No local transaction spans a provider call.

Credential setup (.env, gitignored):
  TIMERLOCK_PROVIDER_BASE_URL=https://api.jamfnow.com/v1
  TIMERLOCK_PROVIDER_API_KEY=...
  TIMERLOCK_PROVIDER_ORG_ID=...
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from .config import ProviderConfig
from .models import Commitment, ProviderDeviceStatus
from .safety import CallOutcome, ErrorKind

logger = logging.getLogger("provider")


@dataclass(frozen=True)
class Deployment:
    """Handles for a deployed restriction: the profile is the enforcement reference."""

    profile_id: str
    deployment_id: Optional[str] = None


@dataclass(frozen=True)
class Invitation:
    invitation_id: str
    enrollment_url: str
    invitation_code: str = ""


class ProviderGateway(ABC):
    """Contract consumed by the orchestrator and the sweeper."""

    @abstractmethod
    def enroll(self, device_name: str, owner_email: str) -> CallOutcome[Invitation]: ...

    @abstractmethod
    def deploy_restriction(self, device_handle: str, commitment: Commitment) -> CallOutcome[Deployment]:
        """Create the restriction profile and push it to the device. Not idempotent."""

    @abstractmethod
    def remove_restriction(self, device_handle: str, enforcement_ref: str) -> CallOutcome[None]:
        """Remove a profile. An already-removed profile counts as success."""

    @abstractmethod
    def query_status(self, device_handle: str) -> CallOutcome[ProviderDeviceStatus]:
        """Display-only status. Never used for lifecycle decisions."""


# ── Restriction profile payload ───────────────────────────────────────

def restriction_profile(device_handle: str, commitment: Commitment) -> dict:
    """The fields of the provider profile the lifecycle needs to embed."""
    return {
        "name": f"Timer Lock - {commitment.commitment_days} days",
        "description": (
            "Timer commitment restricting device modifications until "
            f"{commitment.commitment_end.isoformat()}"
        ),
        "external_id": commitment.id,
        "payloads": [
            {
                "type": "com.apple.applicationaccess",
                "settings": {
                    "allowUIConfigurationProfileInstallation": commitment.locked_settings.get("profile_removal", False),
                    "allowErase": commitment.locked_settings.get("factory_reset", False),
                    "allowAppInstallation": commitment.locked_settings.get("app_installation", False),
                    "allowUIAppInstallation": commitment.locked_settings.get("app_installation", False),
                    "allowAccountModification": commitment.locked_settings.get("system_settings", False),
                    "allowPasscodeModification": commitment.locked_settings.get("system_settings", False),
                },
            }
        ],
        "scope": {"devices": [device_handle]},
    }


# ── Jamf Now client ───────────────────────────────────────────────────

class JamfNowGateway(ProviderGateway):
    """httpx client for the Jamf Now API.

    Usage::

        gateway = JamfNowGateway(config.provider)
        outcome = gateway.deploy_restriction("jamf-123", commitment)
        if outcome.ok:
            outcome.value.profile_id
    """

    def __init__(self, config: ProviderConfig, client: Optional[httpx.Client] = None):
        self.config = config
        self._client = client or httpx.Client(
            base_url=config.base_url,
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
            },
            timeout=config.timeout_seconds,
        )

    def close(self) -> None:
        self._client.close()

    def enroll(self, device_name: str, owner_email: str) -> CallOutcome[Invitation]:
        outcome = self._request(
            "POST",
            "/device-invitations",
            json={"name": device_name, "email": owner_email, "organization_id": self.config.organization_id},
        )
        if not outcome.ok:
            return outcome
        data = outcome.value
        return CallOutcome.success(
            Invitation(
                invitation_id=str(data["id"]),
                enrollment_url=data.get("enrollment_url", ""),
                invitation_code=data.get("invitation_code", ""),
            )
        )

    def deploy_restriction(self, device_handle: str, commitment: Commitment) -> CallOutcome[Deployment]:
        created = self._request("POST", "/profiles", json=restriction_profile(device_handle, commitment))
        if not created.ok:
            return created
        profile_id = str(created.value["id"])
        logger.info(f"PROVIDER | profile created id={profile_id} commitment={commitment.id}")

        deployed = self._request(
            "POST", f"/devices/{device_handle}/profiles", json={"profile_id": profile_id}
        )
        if not deployed.ok:
            # Profile exists but never reached the device; drop it so a retry starts clean.
            cleanup = self._request("DELETE", f"/profiles/{profile_id}")
            if not cleanup.ok:
                logger.critical(
                    f"PROVIDER | ORPHANED_PROFILE id={profile_id} device={device_handle} "
                    f"commitment={commitment.id} error={cleanup.error.value}"
                )
            return deployed

        deployment_id = deployed.value.get("id") if isinstance(deployed.value, dict) else None
        logger.info(f"PROVIDER | profile deployed id={profile_id} device={device_handle}")
        return CallOutcome.success(
            Deployment(profile_id=profile_id, deployment_id=str(deployment_id) if deployment_id else None)
        )

    def remove_restriction(self, device_handle: str, enforcement_ref: str) -> CallOutcome[None]:
        outcome = self._request("DELETE", f"/devices/{device_handle}/profiles/{enforcement_ref}", missing_ok=True)
        if outcome.ok:
            logger.info(f"PROVIDER | profile removed id={enforcement_ref} device={device_handle}")
            return CallOutcome.success(None)
        return outcome

    def query_status(self, device_handle: str) -> CallOutcome[ProviderDeviceStatus]:
        device = self._request("GET", f"/devices/{device_handle}")
        if not device.ok:
            return device
        profiles = self._request("GET", f"/devices/{device_handle}/profiles")
        if not profiles.ok:
            return profiles

        last_seen = _parse_timestamp(device.value.get("last_seen_at"))
        window = timedelta(minutes=self.config.online_window_minutes)
        online = last_seen is not None and last_seen > datetime.now(timezone.utc) - window
        items = profiles.value if isinstance(profiles.value, list) else profiles.value.get("profiles", [])
        compliant = all(p.get("status") == "installed" for p in items)
        return CallOutcome.success(ProviderDeviceStatus(online=online, compliant=compliant, last_seen=last_seen))

    # ── Helpers ────────────────────────────────────────────────────────

    def _request(self, method: str, path: str, *, missing_ok: bool = False, **kwargs) -> CallOutcome:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"PROVIDER | {method} {path} timed out: {e}")
            return CallOutcome.failure(ErrorKind.TIMEOUT, str(e))
        except httpx.TransportError as e:
            logger.warning(f"PROVIDER | {method} {path} transport error: {e}")
            return CallOutcome.failure(ErrorKind.TRANSIENT, str(e))

        if resp.status_code == 404 and missing_ok:
            return CallOutcome.success(None)
        if resp.is_success:
            return CallOutcome.success(resp.json() if resp.content else None)

        kind = _classify(resp.status_code, path)
        logger.error(f"PROVIDER | {method} {path} status={resp.status_code} kind={kind.value} body={resp.text[:200]}")
        return CallOutcome.failure(kind, f"HTTP {resp.status_code}")


def _classify(status_code: int, path: str) -> ErrorKind:
    if status_code == 429 or status_code >= 500:
        return ErrorKind.TRANSIENT
    if status_code == 404 and path.startswith("/devices/"):
        return ErrorKind.DEVICE_UNENROLLED
    return ErrorKind.REJECTED


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        # epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
