"""
Application configuration.

Load order (each layer overrides the previous):
  1. Defaults declared on the models below
  2. ``.env`` in the working directory (never overrides the real environment)
  3. Environment variables with the ``TIMERLOCK_*`` prefix

Entry point: ``load_config() -> AppConfig``
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, ClassVar, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator, model_validator


# ── Sub-config models ─────────────────────────────────────────────────

class DatabaseConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str = "sqlite:///timerlock.db"
    echo: bool = False


class ProviderConfig(BaseModel):
    """Device-management provider (Jamf Now) connection settings."""

    model_config = ConfigDict(frozen=True)

    base_url: str = "https://api.jamfnow.com/v1"
    api_key: str = ""
    organization_id: str = ""
    timeout_seconds: float = 15.0
    online_window_minutes: int = 15

    # create profile, deploy it, delete it again if the deploy fails
    DEPLOY_REQUESTS: ClassVar[int] = 3
    DEPLOY_MARGIN_SECONDS: ClassVar[float] = 5.0

    @property
    def deploy_deadline_seconds(self) -> float:
        """Deadline for one deploy, longer than all of its requests together."""
        return self.timeout_seconds * self.DEPLOY_REQUESTS + self.DEPLOY_MARGIN_SECONDS


class NotifierConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    use_tls: bool = True
    from_name: str = "Timer Commitments"
    from_email: str = "no-reply@example.com"
    frontend_url: str = "http://localhost:3000"
    timeout_seconds: float = 10.0


class SweepConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    interval_seconds: float = 300.0
    startup_delay_seconds: float = 5.0
    warning_window_hours: int = 24
    pending_grace_seconds: float = 600.0

    @field_validator("interval_seconds", "warning_window_hours")
    @classmethod
    def _positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v


class AdminConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_key: str = ""
    support_email: str = "support@example.com"


class AppConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    database: DatabaseConfig = DatabaseConfig()
    provider: ProviderConfig = ProviderConfig()
    notifier: NotifierConfig = NotifierConfig()
    sweep: SweepConfig = SweepConfig()
    admin: AdminConfig = AdminConfig()
    log_level: str = "INFO"
    run_sweeper: bool = True

    @model_validator(mode="after")
    def _grace_outlasts_deploy(self) -> "AppConfig":
        # The sweeper must not reap a row whose create is still deploying.
        deadline = self.provider.deploy_deadline_seconds
        if self.sweep.pending_grace_seconds <= deadline:
            raise ValueError(
                f"sweep.pending_grace_seconds ({self.sweep.pending_grace_seconds}) must exceed "
                f"the provider deploy deadline ({deadline}s)"
            )
        return self


# env var -> (section, key); section None means top level
_ENV_OVERRIDES: dict[str, tuple[Optional[str], str]] = {
    "TIMERLOCK_DATABASE_URL": ("database", "url"),
    "TIMERLOCK_PROVIDER_BASE_URL": ("provider", "base_url"),
    "TIMERLOCK_PROVIDER_API_KEY": ("provider", "api_key"),
    "TIMERLOCK_PROVIDER_ORG_ID": ("provider", "organization_id"),
    "TIMERLOCK_PROVIDER_TIMEOUT": ("provider", "timeout_seconds"),
    "TIMERLOCK_SMTP_HOST": ("notifier", "smtp_host"),
    "TIMERLOCK_SMTP_PORT": ("notifier", "smtp_port"),
    "TIMERLOCK_SMTP_USER": ("notifier", "smtp_user"),
    "TIMERLOCK_SMTP_PASSWORD": ("notifier", "smtp_password"),
    "TIMERLOCK_SMTP_TLS": ("notifier", "use_tls"),
    "TIMERLOCK_FROM_EMAIL": ("notifier", "from_email"),
    "TIMERLOCK_FROM_NAME": ("notifier", "from_name"),
    "TIMERLOCK_FRONTEND_URL": ("notifier", "frontend_url"),
    "TIMERLOCK_NOTIFIER_TIMEOUT": ("notifier", "timeout_seconds"),
    "TIMERLOCK_SWEEP_INTERVAL": ("sweep", "interval_seconds"),
    "TIMERLOCK_SWEEP_STARTUP_DELAY": ("sweep", "startup_delay_seconds"),
    "TIMERLOCK_WARNING_WINDOW_HOURS": ("sweep", "warning_window_hours"),
    "TIMERLOCK_PENDING_GRACE": ("sweep", "pending_grace_seconds"),
    "TIMERLOCK_ADMIN_API_KEY": ("admin", "api_key"),
    "TIMERLOCK_SUPPORT_EMAIL": ("admin", "support_email"),
    "TIMERLOCK_LOG_LEVEL": (None, "log_level"),
    "TIMERLOCK_RUN_SWEEPER": (None, "run_sweeper"),
}


def load_config(env_file: Optional[Path] = None) -> AppConfig:
    """Load ``.env`` (if present), apply ``TIMERLOCK_*`` overrides and validate.

    Raises:
        pydantic.ValidationError: If an override fails validation.
    """
    load_dotenv(dotenv_path=env_file or Path.cwd() / ".env", override=False)
    return AppConfig.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None:
            continue
        if section is None:
            raw[key] = value
        else:
            raw.setdefault(section, {})[key] = value
    return raw
