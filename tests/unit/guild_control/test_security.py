"""Tests for secret stores and the guild ownership guard."""

from __future__ import annotations

import pytest

from guild_control.errors import FailedPreconditionError, NotFoundError, PermissionDeniedError
from guild_control.inmemory import InMemoryGuildRepository
from guild_control.security import (
    FLY_API_TOKEN,
    REQUIRED_SECRETS,
    EnvSecretStore,
    SecretNotFoundError,
    StaticSecretStore,
    verify_ownership,
)


# ── Secret stores ───────────────────────────────────────────────────


def test_env_store_reads_and_strips():
    store = EnvSecretStore({FLY_API_TOKEN: "  fo1_token \n"})
    assert store.get_secret(FLY_API_TOKEN) == "fo1_token"


@pytest.mark.parametrize("value", [None, "", "   "])
def test_env_store_missing_or_blank(value):
    env = {} if value is None else {FLY_API_TOKEN: value}
    store = EnvSecretStore(env)

    with pytest.raises(SecretNotFoundError) as exc_info:
        store.get_secret(FLY_API_TOKEN)

    assert isinstance(exc_info.value, FailedPreconditionError)
    assert exc_info.value.name == FLY_API_TOKEN


def test_env_store_reads_live_environment(monkeypatch):
    store = EnvSecretStore()
    monkeypatch.setenv(FLY_API_TOKEN, "first")
    assert store.get_secret(FLY_API_TOKEN) == "first"

    monkeypatch.setenv(FLY_API_TOKEN, "rotated")
    assert store.get_secret(FLY_API_TOKEN) == "rotated"


def test_env_store_reports_missing_required():
    store = EnvSecretStore({FLY_API_TOKEN: "x"})
    assert store.missing() == [name for name in REQUIRED_SECRETS if name != FLY_API_TOKEN]


def test_repr_never_contains_values():
    env_store = EnvSecretStore({FLY_API_TOKEN: "super-secret"})
    static_store = StaticSecretStore({FLY_API_TOKEN: "super-secret"})

    assert "super-secret" not in repr(env_store)
    assert "super-secret" not in repr(static_store)
    assert FLY_API_TOKEN in repr(static_store)


def test_static_store_is_immutable_copy():
    source = {FLY_API_TOKEN: "a"}
    store = StaticSecretStore(source)
    source[FLY_API_TOKEN] = "b"

    assert store.get_secret(FLY_API_TOKEN) == "a"
    with pytest.raises(SecretNotFoundError):
        StaticSecretStore().get_secret(FLY_API_TOKEN)


# ── Ownership ───────────────────────────────────────────────────────


@pytest.fixture
def guilds():
    repo = InMemoryGuildRepository()
    repo.add_guild({"id": "g1", "owner_user_id": "user-1"})
    return repo


@pytest.mark.asyncio
async def test_owner_gets_guild(guilds):
    guild = await verify_ownership(guilds, "user-1", "g1")
    assert guild["id"] == "g1"


@pytest.mark.asyncio
async def test_missing_guild(guilds):
    with pytest.raises(NotFoundError, match="Guild not found"):
        await verify_ownership(guilds, "user-1", "nope")


@pytest.mark.asyncio
@pytest.mark.parametrize("user_id", ["user-2", ""])
async def test_other_user_denied(guilds, user_id):
    with pytest.raises(PermissionDeniedError, match="You do not own this guild"):
        await verify_ownership(guilds, user_id, "g1")


@pytest.mark.asyncio
async def test_guild_without_owner_denied():
    repo = InMemoryGuildRepository()
    repo.add_guild({"id": "g2"})

    with pytest.raises(PermissionDeniedError):
        await verify_ownership(repo, "user-1", "g2")
