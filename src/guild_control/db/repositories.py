"""Supabase-backed guild repositories.

Implements the guild, deployment, capacity, subscription and user protocols
from ``protocols.py`` against these tables:

  guilds              one row per guild (status, tier, remote handles)
  guild_deployments   usage counters, 1:1 with a guild (guild_id is PK)
  free_tier_config    singleton capacity row (id = 'default')
  subscriptions       billing provider mirror, read only here
  users               user profile rows

Conditional writes (status claims, slot reservation) are single statements
so the database provides the atomicity:

  - ``update_guild_if_status`` is a PATCH filtered on ``status=in.(...)``.
  - ``reserve_free_tier_slot()`` increments ``used_slots`` only while it is
    below ``max_slots`` and returns the updated row (or null).
  - ``increment_free_tier_slots(delta)`` adds ``delta`` (floored at 0).
  - ``commit_guild_provisioned(p_guild_id, p_guild, p_deployment)`` writes
    the guild handles and inserts the deployment row in one transaction.

The tables and functions are defined in ``guild_control/migrations``.
"""

from __future__ import annotations

from typing import Any, Collection

from .errors import SupabaseConflictError
from .supabase_client import SupabaseClient

GUILDS_TABLE = "guilds"
DEPLOYMENTS_TABLE = "guild_deployments"
FREE_TIER_TABLE = "free_tier_config"
FREE_TIER_ROW_ID = "default"
SUBSCRIPTIONS_TABLE = "subscriptions"
USERS_TABLE = "users"

COMMIT_PROVISIONED_RPC = "commit_guild_provisioned"
RESERVE_SLOT_RPC = "reserve_free_tier_slot"
INCREMENT_SLOTS_RPC = "increment_free_tier_slots"
RPC_FUNCTIONS = (COMMIT_PROVISIONED_RPC, RESERVE_SLOT_RPC, INCREMENT_SLOTS_RPC)


def _first_row(payload: Any) -> dict[str, Any] | None:
    # RPCs returning a row type come back as an object, setof as a list.
    if isinstance(payload, list):
        return payload[0] if payload else None
    if isinstance(payload, dict):
        return payload
    return None


class SupabaseGuildRepository:
    """Satisfies the ``GuildRepository`` protocol."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get_guild(self, guild_id: str) -> dict[str, Any] | None:
        rows = await self._client.select(
            GUILDS_TABLE,
            filters={"id": ("eq", guild_id)},
            limit=1,
        )
        return rows[0] if rows else None

    async def update_guild(self, guild_id: str, data: dict[str, Any]) -> dict[str, Any] | None:
        rows = await self._client.update(
            GUILDS_TABLE,
            filters={"id": ("eq", guild_id)},
            data=data,
        )
        return rows[0] if rows else None

    async def update_guild_if_status(
        self,
        guild_id: str,
        expected: Collection[str],
        data: dict[str, Any],
    ) -> dict[str, Any] | None:
        if not expected:
            return None
        rows = await self._client.update(
            GUILDS_TABLE,
            filters={
                "id": ("eq", guild_id),
                "status": ("in", list(expected)),
            },
            data=data,
        )
        return rows[0] if rows else None

    async def delete_guild(self, guild_id: str) -> None:
        await self._client.delete(GUILDS_TABLE, filters={"id": ("eq", guild_id)})

    async def list_guilds_for_user(self, user_id: str) -> list[dict[str, Any]]:
        return await self._client.select(
            GUILDS_TABLE,
            filters={"owner_user_id": ("eq", user_id)},
            order="created_at.asc",
        )

    async def commit_provisioned(
        self,
        guild_id: str,
        guild_data: dict[str, Any],
        deployment: dict[str, Any],
    ) -> None:
        await self._client.rpc(
            COMMIT_PROVISIONED_RPC,
            {
                "p_guild_id": guild_id,
                "p_guild": guild_data,
                "p_deployment": deployment,
            },
        )


class SupabaseDeploymentRepository:
    """Satisfies the ``DeploymentRepository`` protocol."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get_guild_deployment(self, guild_id: str) -> dict[str, Any] | None:
        rows = await self._client.select(
            DEPLOYMENTS_TABLE,
            filters={"guild_id": ("eq", guild_id)},
            limit=1,
        )
        return rows[0] if rows else None

    async def update_guild_deployment(
        self, guild_id: str, data: dict[str, Any],
    ) -> dict[str, Any] | None:
        rows = await self._client.update(
            DEPLOYMENTS_TABLE,
            filters={"guild_id": ("eq", guild_id)},
            data=data,
        )
        return rows[0] if rows else None

    async def delete_guild_deployment(self, guild_id: str) -> None:
        await self._client.delete(
            DEPLOYMENTS_TABLE,
            filters={"guild_id": ("eq", guild_id)},
        )


class SupabaseFreeTierCapacityStore:
    """Satisfies the ``FreeTierCapacityStore`` protocol."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get_free_tier_config(self) -> dict[str, Any] | None:
        rows = await self._client.select(
            FREE_TIER_TABLE,
            filters={"id": ("eq", FREE_TIER_ROW_ID)},
            limit=1,
        )
        return rows[0] if rows else None

    async def create_free_tier_config(self, config: dict[str, Any]) -> dict[str, Any] | None:
        try:
            rows = await self._client.insert(
                FREE_TIER_TABLE, {**config, "id": FREE_TIER_ROW_ID},
            )
        except SupabaseConflictError:
            return None
        return rows[0] if rows else None

    async def set_free_tier_max_slots(self, max_slots: int) -> dict[str, Any] | None:
        # used_slots filter keeps a concurrent reservation from ending up above max.
        rows = await self._client.update(
            FREE_TIER_TABLE,
            filters={
                "id": ("eq", FREE_TIER_ROW_ID),
                "used_slots": ("lte", int(max_slots)),
            },
            data={"max_slots": int(max_slots)},
        )
        return rows[0] if rows else None

    async def try_reserve_free_tier_slot(self) -> dict[str, Any] | None:
        return _first_row(await self._client.rpc(RESERVE_SLOT_RPC))

    async def increment_free_tier_slots(self, delta: int) -> dict[str, Any] | None:
        return _first_row(
            await self._client.rpc(INCREMENT_SLOTS_RPC, {"delta": int(delta)})
        )


class SupabaseSubscriptionRepository:
    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        rows = await self._client.select(
            SUBSCRIPTIONS_TABLE,
            filters={"id": ("eq", subscription_id)},
            limit=1,
        )
        return rows[0] if rows else None


class SupabaseUserRepository:
    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        rows = await self._client.select(
            USERS_TABLE,
            filters={"id": ("eq", user_id)},
            limit=1,
        )
        return rows[0] if rows else None

    async def delete_user(self, user_id: str) -> None:
        await self._client.delete(USERS_TABLE, filters={"id": ("eq", user_id)})


class SupabaseIdentityProvider:
    """Deletes the login identity through the auth admin API."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def delete_identity(self, user_id: str) -> None:
        await self._client.delete_auth_user(user_id)
