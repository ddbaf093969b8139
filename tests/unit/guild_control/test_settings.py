"""Tests for GuildControlSettings defaults, validation and env loading."""

from __future__ import annotations

import dataclasses

import pytest

from guild_control.settings import GuildControlSettings


def test_defaults_are_local_and_valid():
    settings = GuildControlSettings()

    assert settings.is_local
    assert settings.validate() == []
    assert settings.fly_org == "cordbot"
    assert settings.region == "sjc"
    assert settings.volume_size_gb == 1
    assert settings.poll_interval_seconds == 5
    assert settings.poll_max_attempts == 60


def test_settings_are_frozen():
    settings = GuildControlSettings()
    with pytest.raises(dataclasses.FrozenInstanceError):
        settings.environment = "production"


def test_non_local_requires_supabase_and_admin_token():
    errors = GuildControlSettings(environment="production").validate()

    assert "production: supabase_url is required" in errors
    assert "production: supabase_service_role_key is required" in errors
    assert "production: admin_token must be >= 32 characters" in errors


def test_non_local_complete_settings_validate():
    settings = GuildControlSettings(
        environment="staging",
        supabase_url="https://x.supabase.co",
        supabase_service_role_key="key",
        admin_token="z" * 32,
    )
    assert settings.validate() == []


@pytest.mark.parametrize(
    ("field", "value", "message"),
    [
        ("poll_interval_seconds", -1, "poll_interval_seconds must be >= 0"),
        ("poll_max_attempts", 0, "poll_max_attempts must be >= 1"),
        ("volume_size_gb", 0, "volume_size_gb must be >= 1"),
        ("free_tier_default_queries", -5, "free_tier_default_queries must be >= 0"),
    ],
)
def test_numeric_bounds(field, value, message):
    settings = GuildControlSettings(**{field: value})
    assert message in settings.validate()


def test_from_env_reads_overrides():
    settings = GuildControlSettings.from_env(
        {
            "ENVIRONMENT": "dev",
            "FLY_ORG": "acme",
            "FLY_REGION": "ams",
            "GUILD_IMAGE": "ghcr.io/acme/agent",
            "GUILD_IMAGE_VERSION": "2.1.0",
            "GUILD_VOLUME_SIZE_GB": "3",
            "READINESS_POLL_INTERVAL_SECONDS": "2.5",
            "READINESS_POLL_MAX_ATTEMPTS": "10",
            "FREE_TIER_DEFAULT_QUERIES": "50",
            "BASE_URL": "https://bots.example.com",
            "SUPABASE_URL": "https://x.supabase.co",
            "SUPABASE_SERVICE_ROLE_KEY": "key",
            "GUILD_CONTROL_ADMIN_TOKEN": "t" * 40,
        }
    )

    assert settings.environment == "dev"
    assert settings.fly_org == "acme"
    assert settings.region == "ams"
    assert settings.default_image == "ghcr.io/acme/agent"
    assert settings.default_version == "2.1.0"
    assert settings.volume_size_gb == 3
    assert settings.poll_interval_seconds == 2.5
    assert settings.poll_max_attempts == 10
    assert settings.free_tier_default_queries == 50
    assert settings.base_url == "https://bots.example.com"
    assert settings.validate() == []


def test_from_env_empty_uses_defaults():
    assert GuildControlSettings.from_env({}) == GuildControlSettings()


def test_from_env_reads_process_environment(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "staging")
    monkeypatch.setenv("FLY_REGION", "fra")

    settings = GuildControlSettings.from_env()

    assert settings.environment == "staging"
    assert settings.region == "fra"
