"""
Tests for configuration loading.
"""

import pytest
from pydantic import ValidationError

from timerlock.config import AppConfig, ProviderConfig, SweepConfig, load_config


def test_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = load_config()
    assert config.sweep.interval_seconds == 300
    assert config.sweep.warning_window_hours == 24
    assert config.admin.api_key == ""


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TIMERLOCK_SWEEP_INTERVAL", "60")
    monkeypatch.setenv("TIMERLOCK_DATABASE_URL", "sqlite:///other.db")
    monkeypatch.setenv("TIMERLOCK_RUN_SWEEPER", "false")
    config = load_config()
    assert config.sweep.interval_seconds == 60
    assert config.database.url == "sqlite:///other.db"
    assert config.run_sweeper is False


def test_dotenv_file(tmp_path, monkeypatch):
    monkeypatch.delenv("TIMERLOCK_ADMIN_API_KEY", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("TIMERLOCK_ADMIN_API_KEY=from-dotenv\n")
    config = load_config(env_file)
    assert config.admin.api_key == "from-dotenv"
    monkeypatch.delenv("TIMERLOCK_ADMIN_API_KEY", raising=False)


def test_invalid_interval(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TIMERLOCK_SWEEP_INTERVAL", "0")
    with pytest.raises(ValidationError):
        load_config()


def test_config_is_frozen():
    config = AppConfig()
    with pytest.raises(ValidationError):
        config.log_level = "DEBUG"


def test_deploy_deadline_covers_every_request():
    provider = ProviderConfig(timeout_seconds=15)
    assert provider.deploy_deadline_seconds > 3 * 15


def test_grace_shorter_than_deploy_rejected():
    with pytest.raises(ValidationError):
        AppConfig(provider=ProviderConfig(timeout_seconds=30), sweep=SweepConfig(pending_grace_seconds=60))


def test_grace_env_override_validated(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TIMERLOCK_PENDING_GRACE", "20")
    with pytest.raises(ValidationError):
        load_config()
