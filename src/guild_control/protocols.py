"""Collaborator protocol interfaces for dependency injection.

These protocols define the contracts that concrete implementations (InMemory
for local dev and tests, Supabase/Stripe for non-local) must satisfy. The
orchestrator and the app factory accept any implementation that matches.

Rows are plain dicts with snake_case keys.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Collection, Protocol, runtime_checkable


@runtime_checkable
class GuildRepository(Protocol):
    """Guild documents."""

    async def get_guild(self, guild_id: str) -> dict[str, Any] | None: ...
    async def update_guild(self, guild_id: str, data: dict[str, Any]) -> dict[str, Any] | None: ...
    async def update_guild_if_status(
        self,
        guild_id: str,
        expected: Collection[str],
        data: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Atomically apply ``data`` only while ``status`` is in ``expected``.

        Returns the updated row, or None when the guild is missing or its
        status did not match.
        """
        ...
    async def delete_guild(self, guild_id: str) -> None: ...
    async def list_guilds_for_user(self, user_id: str) -> list[dict[str, Any]]: ...
    async def commit_provisioned(
        self,
        guild_id: str,
        guild_data: dict[str, Any],
        deployment: dict[str, Any],
    ) -> None:
        """Write remote handles and create the deployment record as one unit."""
        ...


@runtime_checkable
class DeploymentRepository(Protocol):
    """Deployment records (usage/billing counters, 1:1 with a guild)."""

    async def get_guild_deployment(self, guild_id: str) -> dict[str, Any] | None: ...
    async def update_guild_deployment(
        self, guild_id: str, data: dict[str, Any],
    ) -> dict[str, Any] | None: ...
    async def delete_guild_deployment(self, guild_id: str) -> None: ...


@runtime_checkable
class FreeTierCapacityStore(Protocol):
    """Singleton free-tier capacity counter."""

    async def get_free_tier_config(self) -> dict[str, Any] | None: ...
    async def create_free_tier_config(self, config: dict[str, Any]) -> dict[str, Any] | None:
        """Create the singleton; None when it already exists."""
        ...
    async def set_free_tier_max_slots(self, max_slots: int) -> dict[str, Any] | None:
        """Set ``max_slots`` iff it is not below ``used_slots``, atomically.

        Returns the updated document, or None when the document is missing
        or more slots are already used.
        """
        ...
    async def try_reserve_free_tier_slot(self) -> dict[str, Any] | None:
        """Increment ``used_slots`` iff ``used_slots < max_slots``, atomically.

        Returns the updated document, or None when no slot was free.
        """
        ...
    async def increment_free_tier_slots(self, delta: int) -> dict[str, Any] | None: ...


@runtime_checkable
class SubscriptionRepository(Protocol):
    async def get_subscription(self, subscription_id: str) -> dict[str, Any] | None: ...


@runtime_checkable
class UserRepository(Protocol):
    async def get_user(self, user_id: str) -> dict[str, Any] | None: ...
    async def delete_user(self, user_id: str) -> None: ...


@runtime_checkable
class IdentityProvider(Protocol):
    """External auth provider holding the login identity."""

    async def delete_identity(self, user_id: str) -> None: ...


@runtime_checkable
class BillingProvider(Protocol):
    async def cancel_subscription_immediately(self, subscription_id: str) -> None: ...


@runtime_checkable
class SecretStore(Protocol):
    def get_secret(self, name: str) -> str: ...


@runtime_checkable
class MachinePlatform(Protocol):
    """Remote machine API (see providers.machines_client.MachinesClient)."""

    async def create_app(self, name: str) -> Any: ...
    async def create_volume(
        self, app_name: str, name: str, region: str, size_gb: int,
    ) -> dict[str, Any]: ...
    async def create_machine(
        self, app_name: str, spec: dict[str, Any], region: str,
    ) -> dict[str, Any]: ...
    async def get_machine(self, app_name: str, machine_id: str) -> dict[str, Any]: ...
    async def update_machine(
        self, app_name: str, machine_id: str, config: dict[str, Any],
    ) -> Any: ...
    async def restart_machine(self, app_name: str, machine_id: str) -> Any: ...
    async def delete_app(self, app_name: str) -> Any: ...


class Clock(Protocol):
    def __call__(self) -> datetime: ...
