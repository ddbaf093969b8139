"""Shared fixtures for guild_control tests."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from guild_control.inmemory import (
    InMemoryBillingProvider,
    InMemoryDeploymentRepository,
    InMemoryFreeTierCapacityStore,
    InMemoryGuildRepository,
    InMemoryIdentityProvider,
    InMemoryMachinePlatform,
    InMemorySubscriptionRepository,
    InMemoryUserRepository,
)
from guild_control.provisioning.orchestrator import GuildOrchestrator
from guild_control.security.secrets import (
    SHARED_ANTHROPIC_API_KEY,
    SHARED_DISCORD_BOT_TOKEN,
    StaticSecretStore,
)
from guild_control.settings import GuildControlSettings

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
DEFAULT_CAPACITY = {"max_slots": 5, "used_slots": 0, "queries_per_slot": 40}
SHARED_SECRETS = {
    SHARED_DISCORD_BOT_TOKEN: "bot-token",
    SHARED_ANTHROPIC_API_KEY: "api-key",
}


class GuildHarness:
    """Orchestrator wired to in-memory collaborators that tests can poke."""

    def __init__(
        self,
        *,
        capacity: dict | None = DEFAULT_CAPACITY,
        subscriptions: dict | None = None,
        secrets: dict | None = None,
        initial_state: str = "started",
    ) -> None:
        self.deployments = InMemoryDeploymentRepository()
        self.guilds = InMemoryGuildRepository(self.deployments)
        self.capacity = InMemoryFreeTierCapacityStore(capacity)
        self.subscriptions = InMemorySubscriptionRepository(subscriptions)
        self.users = InMemoryUserRepository()
        self.identity = InMemoryIdentityProvider()
        self.billing = InMemoryBillingProvider()
        self.platform = InMemoryMachinePlatform(initial_state=initial_state)
        self.secrets = StaticSecretStore(SHARED_SECRETS if secrets is None else secrets)
        self.settings = GuildControlSettings(poll_interval_seconds=0, poll_max_attempts=3)
        self.now = FIXED_NOW
        self.orchestrator = GuildOrchestrator(
            settings=self.settings,
            guilds=self.guilds,
            deployments=self.deployments,
            capacity=self.capacity,
            subscriptions=self.subscriptions,
            users=self.users,
            identity=self.identity,
            billing=self.billing,
            secrets=self.secrets,
            platform=self.platform,
            clock=lambda: FIXED_NOW,
        )

    def add_guild(self, guild_id: str = "guild123456789", **data) -> dict:
        return self.guilds.add_guild({"id": guild_id, "owner_user_id": "user-1", **data})

    async def active_guild(self, guild_id: str = "guild123456789", **data) -> dict:
        """Provision a guild, let readiness finish, and clear recorded calls."""
        self.add_guild(guild_id, **data)
        await self.orchestrator.provision_guild(guild_id)
        await self.orchestrator.background.drain()
        self.platform.calls.clear()
        guild = await self.guilds.get_guild(guild_id)
        assert guild["status"] == "active"
        return guild

    def machine(self, guild: dict) -> dict:
        return self.platform.machines[(guild["app_name"], guild["machine_id"])]

    async def used_slots(self) -> int:
        return (await self.capacity.get_free_tier_config())["used_slots"]


@pytest.fixture
def make_harness():
    return GuildHarness


@pytest.fixture
def harness():
    return GuildHarness()
