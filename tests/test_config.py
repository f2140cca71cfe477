"""Tests for settings parsing and validation."""

import pytest

from gatekeeper.core.config import AccessListSettings, RateLimitSettings, load_settings
from gatekeeper.core.errors import ConfigurationError


def test_access_lists_parse_comma_separated_env(monkeypatch) -> None:
    monkeypatch.setenv("WHITELIST_INTERNAL_IPS", " 10.0.0.0/8 , 127.0.0.1,, ")
    monkeypatch.setenv("BLACKLIST_IPS", "203.0.113.0/24")

    lists = AccessListSettings()

    assert lists.whitelist_internal_ips == ["10.0.0.0/8", "127.0.0.1"]
    assert lists.blacklist_ips == ["203.0.113.0/24"]


def test_empty_blacklist_env_means_no_entries(monkeypatch) -> None:
    monkeypatch.setenv("BLACKLIST_IPS", "")

    assert AccessListSettings().blacklist_ips == []


def test_rate_limit_defaults() -> None:
    limits = RateLimitSettings()

    assert limits.window_ms == 60_000
    assert limits.per_ip_max == 200
    assert limits.per_user_max == 100


def test_env_overrides_limits(monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_PER_IP_MAX", "25")

    assert load_settings().rate_limit.per_ip_max == 25


@pytest.mark.parametrize(
    "name, value",
    [
        ("RATE_LIMIT_WINDOW_MS", "0"),
        ("RATE_LIMIT_PER_IP_MAX", "-1"),
        ("RATE_LIMIT_PER_USER_MAX", "lots"),
        ("ABUSE_THRESHOLD", "0"),
    ],
)
def test_invalid_threshold_is_configuration_error(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError) as exc_info:
        load_settings()

    assert exc_info.value.code == "invalid_configuration"


def test_progressive_duration_cannot_be_shorter(monkeypatch) -> None:
    monkeypatch.setenv("ABUSE_BLOCK_DURATION_MINUTES", "30")
    monkeypatch.setenv("ABUSE_PROGRESSIVE_BLOCK_DURATION_MINUTES", "10")

    with pytest.raises(ConfigurationError):
        load_settings()
