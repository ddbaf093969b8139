"""Guild control plane configuration settings.

GuildControlSettings is the single configuration object accepted by
create_app(). It is a plain frozen dataclass (not env-coupled) so tests can
inject config without touching os.environ. Secrets are not stored here;
they are resolved through the secret store when used.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from .provisioning.readiness import DEFAULT_MAX_ATTEMPTS, DEFAULT_POLL_INTERVAL_SECONDS
from .provisioning.tiers import DEFAULT_FREE_TIER_QUERIES
from .providers.machines_client import DEFAULT_API_URL, DEFAULT_ORG


@dataclass(frozen=True, slots=True)
class GuildControlSettings:
    """Configuration for the guild control plane.

    All fields have sensible defaults for local development.
    Non-local environments must supply supabase_url,
    supabase_service_role_key and admin_token.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Machines API ───────────────────────────────────────────────
    machines_api_url: str = DEFAULT_API_URL
    fly_org: str = DEFAULT_ORG
    default_image: str = "registry-1.docker.io/christianalfoni/cordbot-agent"
    default_version: str = "latest"
    region: str = "sjc"
    volume_size_gb: int = 1

    # ── Workload wiring ────────────────────────────────────────────
    service_url: str = "https://us-central1-claudebot-34c42.cloudfunctions.net"
    """Callback URL the guild workload reports usage to."""

    base_url: str = ""
    """Optional public base URL injected as BASE_URL."""

    # ── Readiness polling ──────────────────────────────────────────
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    poll_max_attempts: int = DEFAULT_MAX_ATTEMPTS

    # ── Free tier ──────────────────────────────────────────────────
    free_tier_default_queries: int = DEFAULT_FREE_TIER_QUERIES
    """Query quota when the capacity document carries no queries_per_slot."""

    # ── Supabase ───────────────────────────────────────────────────
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    """Service-role key for PostgREST and auth admin calls. Never log this."""

    # ── Admin / automation ─────────────────────────────────────────
    admin_token: str = ""
    """Shared token for internal triggers and admin deploys (X-Admin-Token)."""

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.poll_interval_seconds < 0:
            errors.append("poll_interval_seconds must be >= 0")
        if self.poll_max_attempts < 1:
            errors.append("poll_max_attempts must be >= 1")
        if self.volume_size_gb < 1:
            errors.append("volume_size_gb must be >= 1")
        if self.free_tier_default_queries < 0:
            errors.append("free_tier_default_queries must be >= 0")
        if not self.is_local:
            if not self.supabase_url:
                errors.append(f"{self.environment}: supabase_url is required")
            if not self.supabase_service_role_key:
                errors.append(
                    f"{self.environment}: supabase_service_role_key is required"
                )
            if not self.admin_token or len(self.admin_token) < 32:
                errors.append(
                    f"{self.environment}: admin_token must be >= 32 characters"
                )
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> GuildControlSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct GuildControlSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        defaults = cls()
        return cls(
            environment=env.get("ENVIRONMENT", defaults.environment),
            machines_api_url=env.get("MACHINES_API_URL", defaults.machines_api_url),
            fly_org=env.get("FLY_ORG", defaults.fly_org),
            default_image=env.get("GUILD_IMAGE", defaults.default_image),
            default_version=env.get("GUILD_IMAGE_VERSION", defaults.default_version),
            region=env.get("FLY_REGION", defaults.region),
            volume_size_gb=int(env.get("GUILD_VOLUME_SIZE_GB", defaults.volume_size_gb)),
            service_url=env.get("SERVICE_URL", defaults.service_url),
            base_url=env.get("BASE_URL", defaults.base_url),
            poll_interval_seconds=float(
                env.get("READINESS_POLL_INTERVAL_SECONDS", defaults.poll_interval_seconds)
            ),
            poll_max_attempts=int(
                env.get("READINESS_POLL_MAX_ATTEMPTS", defaults.poll_max_attempts)
            ),
            free_tier_default_queries=int(
                env.get("FREE_TIER_DEFAULT_QUERIES", defaults.free_tier_default_queries)
            ),
            supabase_url=env.get("SUPABASE_URL", ""),
            supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            admin_token=env.get("GUILD_CONTROL_ADMIN_TOKEN", ""),
        )
