"""Unit tests for the guild control plane app factory.

Tests:
  1. create_app() with local settings returns a working ASGI app
  2. Settings validation and unknown overrides fail fast
  3. InMemory collaborators selected for ENVIRONMENT=local
  4. Supabase/machines API/Stripe collaborators built for non-local environments
  5. Storage failures map to 502 without leaking details
  6. Request-ID generation and propagation
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from guild_control.billing import StripeBillingProvider
from guild_control.db import (
    SupabaseAuthError,
    SupabaseFreeTierCapacityStore,
    SupabaseGuildRepository,
    SupabaseIdentityProvider,
)
from guild_control.inmemory import InMemoryGuildRepository, InMemoryMachinePlatform
from guild_control.main import ERROR_STATUS, AppDependencies, create_app
from guild_control.providers import MachinesClient
from guild_control.security.secrets import EnvSecretStore
from guild_control.settings import GuildControlSettings


def _local_settings(**overrides) -> GuildControlSettings:
    defaults = {"environment": "local"}
    defaults.update(overrides)
    return GuildControlSettings(**defaults)


def _staging_settings(**overrides) -> GuildControlSettings:
    defaults = {
        "environment": "staging",
        "supabase_url": "https://test.supabase.co",
        "supabase_service_role_key": "test-key-not-real",
        "admin_token": "t" * 32,
    }
    defaults.update(overrides)
    return GuildControlSettings(**defaults)


# ── create_app ──────────────────────────────────────────────────


class TestCreateApp:
    def test_returns_fastapi_app(self):
        app = create_app(_local_settings(), configure_logs=False)
        assert app.title == "Guild Control Plane"

    def test_health_endpoint(self):
        client = TestClient(create_app(_local_settings(), configure_logs=False))
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "environment": "local"}

    def test_default_settings_are_local(self):
        app = create_app(configure_logs=False)
        assert app.state.settings.is_local

    def test_guild_routes_registered(self):
        app = create_app(_local_settings(), configure_logs=False)
        paths = {route.path for route in app.routes}
        assert "/api/v1/guilds/{guild_id}/provision" in paths
        assert "/api/v1/guilds/{guild_id}/provision/free" in paths
        assert "/api/v1/internal/guilds/{guild_id}/created" in paths
        assert "/api/v1/guilds/{guild_id}/restart" in paths
        assert "/api/v1/guilds/{guild_id}/repair" in paths
        assert "/api/v1/guilds/{guild_id}/deploy" in paths
        assert "/api/v1/admin/guilds/{guild_id}/deploy" in paths
        assert "/api/v1/guilds/{guild_id}" in paths
        assert "/api/v1/me" in paths
        assert "/api/v1/guilds/{guild_id}/status" in paths
        assert "/api/v1/guilds/{guild_id}/logs" in paths

    def test_unknown_override_rejected(self):
        with pytest.raises(ValueError, match="Unknown dependency overrides: sandbox"):
            create_app(_local_settings(), configure_logs=False, sandbox=object())


# ── Validation ──────────────────────────────────────────────────


class TestValidation:
    def test_staging_without_supabase_fails(self):
        with pytest.raises(ValueError, match="supabase_url is required"):
            create_app(_staging_settings(supabase_url=""), configure_logs=False)

    def test_short_admin_token_fails_outside_local(self):
        with pytest.raises(ValueError, match="admin_token must be >= 32 characters"):
            create_app(_staging_settings(admin_token="short"), configure_logs=False)

    def test_bad_poll_settings_fail(self):
        with pytest.raises(ValueError, match="poll_max_attempts must be >= 1"):
            create_app(_local_settings(poll_max_attempts=0), configure_logs=False)


# ── Dependency selection ────────────────────────────────────────


class TestDependencies:
    def test_local_uses_inmemory(self):
        app = create_app(_local_settings(), configure_logs=False)
        deps = app.state.deps
        assert isinstance(deps, AppDependencies)
        assert isinstance(deps.guilds, InMemoryGuildRepository)
        assert isinstance(deps.platform, InMemoryMachinePlatform)

    def test_staging_builds_remote_collaborators(self):
        app = create_app(_staging_settings(), configure_logs=False)
        deps = app.state.deps
        assert isinstance(deps.guilds, SupabaseGuildRepository)
        assert isinstance(deps.capacity, SupabaseFreeTierCapacityStore)
        assert isinstance(deps.identity, SupabaseIdentityProvider)
        assert isinstance(deps.billing, StripeBillingProvider)
        assert isinstance(deps.secrets, EnvSecretStore)
        assert isinstance(deps.platform, MachinesClient)

    def test_override_replaces_single_collaborator(self):
        platform = InMemoryMachinePlatform(initial_state="created")
        app = create_app(_staging_settings(), configure_logs=False, platform=platform)
        assert app.state.deps.platform is platform
        assert isinstance(app.state.deps.guilds, SupabaseGuildRepository)


# ── Error mapping ───────────────────────────────────────────────


class TestErrorMapping:
    def test_status_table(self):
        assert ERROR_STATUS["unauthenticated"] == 401
        assert ERROR_STATUS["permission_denied"] == 403
        assert ERROR_STATUS["not_found"] == 404
        assert ERROR_STATUS["failed_precondition"] == 409
        assert ERROR_STATUS["resource_exhausted"] == 429

    def test_storage_error_is_bad_gateway(self):
        guilds = InMemoryGuildRepository()
        guilds.get_guild = AsyncMock(
            side_effect=SupabaseAuthError(status_code=401, message="JWT expired"),
        )
        client = TestClient(create_app(_local_settings(), configure_logs=False, guilds=guilds))

        resp = client.get("/api/v1/guilds/g1/status", headers={"X-User-ID": "user-1"})

        assert resp.status_code == 502
        body = resp.json()
        assert body["code"] == "storage_error"
        assert "JWT" not in body["message"]


# ── Request ID ──────────────────────────────────────────────────


class TestRequestId:
    def test_generated_when_missing(self):
        client = TestClient(create_app(_local_settings(), configure_logs=False))
        resp = client.get("/health")
        assert len(resp.headers["X-Request-ID"]) == 36

    def test_malformed_incoming_id_replaced(self):
        client = TestClient(create_app(_local_settings(), configure_logs=False))
        resp = client.get("/health", headers={"X-Request-ID": "bad id with spaces"})
        assert resp.headers["X-Request-ID"] != "bad id with spaces"

    def test_well_formed_incoming_id_kept(self):
        client = TestClient(create_app(_local_settings(), configure_logs=False))
        resp = client.get("/health", headers={"X-Request-ID": "trace-0001-abcd"})
        assert resp.headers["X-Request-ID"] == "trace-0001-abcd"
