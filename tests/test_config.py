"""
Tests for engagesync/config.py - environment-driven settings.
"""
import pytest
from pydantic import ValidationError

from engagesync.config import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("PORT", "APP_PORT", "BATCH_SIZE", "BATCH_TIMEOUT_MS", "RESOLUTION_POLICY"):
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.app_port == 3000
        assert settings.batch_size == 100
        assert settings.batch_timeout_seconds == 60.0
        assert settings.resolution_policy == "precedence"
        assert settings.event_dedup_enabled is False

    def test_port_env_var(self, monkeypatch):
        monkeypatch.setenv("PORT", "8080")
        assert Settings(_env_file=None).app_port == 8080

    def test_batch_tuning(self, monkeypatch):
        monkeypatch.setenv("BATCH_SIZE", "10")
        monkeypatch.setenv("BATCH_TIMEOUT_MS", "1500")
        settings = Settings(_env_file=None)
        assert settings.batch_size == 10
        assert settings.batch_timeout_seconds == 1.5

    def test_zero_batch_size_rejected(self, monkeypatch):
        monkeypatch.setenv("BATCH_SIZE", "0")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_policy_normalized(self, monkeypatch):
        monkeypatch.setenv("RESOLUTION_POLICY", " Lead_Only ")
        assert Settings(_env_file=None).resolution_policy == "lead_only"

    def test_unknown_policy_rejected(self, monkeypatch):
        monkeypatch.setenv("RESOLUTION_POLICY", "contacts_first")
        with pytest.raises(ValidationError):
            Settings(_env_file=None)
