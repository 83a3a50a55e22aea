from datetime import time

import pytest

from bitacora.config import ActiveSessionPolicy, load_config, parse_role_ids, parse_timezone
from bitacora.errors import ValidationError


@pytest.fixture
def env(monkeypatch):
    for name in (
        "TIMEZONE",
        "STELLAR_WINDOWS",
        "PING_EVERY_MIN",
        "PING_TIMEOUT_MIN",
        "BITACORA_ROLE_IDS",
        "ARCHIVE_WEEKDAY",
        "ARCHIVE_TIME",
        "ACTIVE_SESSION_POLICY",
        "NIGHTLY_BACKUP_UPLOAD",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DISCORD_TOKEN", "token")
    return monkeypatch


def test_load_config_defaults(env) -> None:
    config = load_config()

    assert config.defaults.timezone.key == "America/Mexico_City"
    assert len(config.defaults.windows) == 2
    assert config.defaults.ping_interval_minutes == 120
    assert config.defaults.ping_timeout_minutes == 5
    assert config.role_ids == frozenset()
    assert config.archive_weekday == 4
    assert config.archive_time == time(17, 0)
    assert config.active_session_policy is ActiveSessionPolicy.DRAIN_AND_RESTART
    assert config.nightly_backup_upload is False


def test_load_config_overrides(env) -> None:
    env.setenv("TIMEZONE", "Europe/Madrid")
    env.setenv("PING_EVERY_MIN", "60")
    env.setenv("BITACORA_ROLE_IDS", "1, 2")
    env.setenv("ACTIVE_SESSION_POLICY", "freeze")
    env.setenv("NIGHTLY_BACKUP_UPLOAD", "true")

    config = load_config()

    assert config.defaults.timezone.key == "Europe/Madrid"
    assert config.defaults.ping_interval_minutes == 60
    assert config.role_ids == frozenset({1, 2})
    assert config.active_session_policy is ActiveSessionPolicy.FREEZE
    assert config.nightly_backup_upload is True


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PING_EVERY_MIN", "0"),
        ("PING_TIMEOUT_MIN", "soon"),
        ("ARCHIVE_WEEKDAY", "7"),
        ("ARCHIVE_TIME", "5pm"),
        ("ACTIVE_SESSION_POLICY", "carry"),
        ("STELLAR_WINDOWS", "16-18"),
        ("TIMEZONE", "Mars/Olympus"),
    ],
)
def test_load_config_rejects_invalid_values(env, name: str, value: str) -> None:
    env.setenv(name, value)

    with pytest.raises(ValidationError):
        load_config()


def test_missing_token(env) -> None:
    env.delenv("DISCORD_TOKEN")

    with pytest.raises(ValidationError):
        load_config()


def test_parse_helpers() -> None:
    assert parse_timezone(" UTC ").key == "UTC"
    with pytest.raises(ValidationError):
        parse_role_ids("12,abc")
