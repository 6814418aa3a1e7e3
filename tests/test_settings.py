import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.settings import Settings  # noqa: E402

_ENV_NAMES = (
    "DATABASE_URL",
    "LEDGER_BACKEND",
    "FORBID_MEMORY_DB",
    "REDIS_URL",
    "COUNTER_BACKEND",
    "TRIAL_POLICY_MODE",
    "PROMO_START",
    "PROMO_END",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_defaults_use_memory_backends_and_fixed_claim():
    cfg = _settings()
    assert cfg.LEDGER_BACKEND_EFFECTIVE == "memory"
    assert cfg.COUNTER_BACKEND_EFFECTIVE == "memory"
    assert cfg.TRIAL_POLICY_MODE == "fixed_claim"
    assert cfg.PROMO_START == datetime(2025, 12, 28, tzinfo=timezone.utc)
    assert cfg.PROMO_END == datetime(2026, 1, 15, tzinfo=timezone.utc)
    assert cfg.FIXED_TRIAL_CREDITS == 5
    assert cfg.MAX_ACCOUNTS_PER_FINGERPRINT == 1


def test_urls_select_persistent_backends():
    cfg = _settings(DATABASE_URL=" postgres://u:secret@db:5432/app ", REDIS_URL="redis://cache:6379/0")
    assert cfg.LEDGER_BACKEND_EFFECTIVE == "postgres"
    assert cfg.COUNTER_BACKEND_EFFECTIVE == "redis"
    summary = cfg.configuration_summary()
    assert "secret" not in summary["DATABASE_URL"]
    assert summary["DATABASE_URL"].startswith("***")


def test_environment_values_are_parsed(monkeypatch):
    monkeypatch.setenv("TRIAL_POLICY_MODE", "Promo-Auto-Grant")
    monkeypatch.setenv("PROMO_START", "2026-03-01T00:00:00Z")
    monkeypatch.setenv("PROMO_END", "2026-03-10")
    monkeypatch.setenv("LOG_LEVEL", "loud")
    cfg = _settings()
    assert cfg.TRIAL_POLICY_MODE == "promo_auto_grant"
    assert cfg.PROMO_START == datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert cfg.PROMO_END == datetime(2026, 3, 10, tzinfo=timezone.utc)
    assert cfg.LOG_LEVEL == "INFO"


@pytest.mark.parametrize(
    "overrides",
    [
        {"TRIAL_POLICY_MODE": "lottery"},
        {"PROMO_START": "2026-01-15T00:00:00Z", "PROMO_END": "2026-01-01T00:00:00Z"},
        {"LEDGER_BACKEND": "sqlite"},
        {"LEDGER_BACKEND": "postgres"},
        {"COUNTER_BACKEND": "redis"},
        {"FORBID_MEMORY_DB": True},
    ],
)
def test_invalid_configuration_is_rejected(overrides):
    with pytest.raises(RuntimeError):
        _settings(**overrides)
