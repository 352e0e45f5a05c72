"""
Interfaces to the billing, device registry and user collaborators, plus
in-memory implementations (swap for the real services in production).
"""

from __future__ import annotations

from typing import Optional, Protocol

from .models import DeviceRecord, Recipient
from .policy import tier_for_plan


class SubscriptionDirectory(Protocol):
    def get_active_tier_for_user(self, user_id: str) -> Optional[str]: ...


class DeviceRegistry(Protocol):
    def get_device(self, device_id: str, user_id: str) -> Optional[DeviceRecord]: ...


class UserDirectory(Protocol):
    def get_recipient(self, user_id: str) -> Optional[Recipient]: ...


class InMemorySubscriptions:
    """user_id -> billing plan type of the user's active or trialing subscription."""

    def __init__(self, plans: Optional[dict[str, str]] = None):
        self.plans: dict[str, str] = dict(plans or {})

    def get_active_tier_for_user(self, user_id: str) -> Optional[str]:
        plan = self.plans.get(user_id)
        return tier_for_plan(plan) if plan else None


class InMemoryDevices:
    def __init__(self):
        self.devices: dict[str, DeviceRecord] = {}

    def add(self, device: DeviceRecord) -> None:
        self.devices[device.device_id] = device

    def get_device(self, device_id: str, user_id: str) -> Optional[DeviceRecord]:
        device = self.devices.get(device_id)
        if device is None or device.user_id != user_id:
            return None
        return device


class InMemoryUsers:
    def __init__(self):
        self.users: dict[str, Recipient] = {}

    def add(self, user_id: str, recipient: Recipient) -> None:
        self.users[user_id] = recipient

    def get_recipient(self, user_id: str) -> Optional[Recipient]:
        return self.users.get(user_id)
