"""In-memory collaborator implementations for local development and tests.

These are used when ENVIRONMENT=local. They satisfy the protocol interfaces
but store everything in dicts (no persistence across restarts). Conditional
writes run without an await between the check and the write, which makes
them atomic on a single event loop.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections.abc import Awaitable, Callable, Collection
from datetime import datetime, timezone
from typing import Any

from .providers.machines_client import RemoteNotFoundError


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryDeploymentRepository:
    def __init__(self) -> None:
        self._deployments: dict[str, dict[str, Any]] = {}

    async def get_guild_deployment(self, guild_id: str) -> dict[str, Any] | None:
        deployment = self._deployments.get(guild_id)
        return dict(deployment) if deployment is not None else None

    async def update_guild_deployment(
        self, guild_id: str, data: dict[str, Any],
    ) -> dict[str, Any] | None:
        deployment = self._deployments.get(guild_id)
        if deployment is None:
            return None
        deployment.update(data)
        return dict(deployment)

    async def delete_guild_deployment(self, guild_id: str) -> None:
        self._deployments.pop(guild_id, None)

    def put(self, guild_id: str, data: dict[str, Any]) -> None:
        self._deployments[guild_id] = {"guild_id": guild_id, **data}


class InMemoryGuildRepository:
    """Guild documents. Shares the deployment store for commit_provisioned."""

    def __init__(self, deployments: InMemoryDeploymentRepository | None = None) -> None:
        self._guilds: dict[str, dict[str, Any]] = {}
        self.deployments = deployments or InMemoryDeploymentRepository()

    def add_guild(self, data: dict[str, Any]) -> dict[str, Any]:
        guild_id = data.get("id") or f"g_{uuid.uuid4().hex[:8]}"
        now = _now()
        guild = {
            "id": guild_id,
            "status": "pending",
            "tier": "free",
            "created_at": now,
            "updated_at": now,
            **data,
        }
        self._guilds[guild_id] = guild
        return dict(guild)

    async def get_guild(self, guild_id: str) -> dict[str, Any] | None:
        guild = self._guilds.get(guild_id)
        return dict(guild) if guild is not None else None

    async def update_guild(self, guild_id: str, data: dict[str, Any]) -> dict[str, Any] | None:
        if guild_id not in self._guilds:
            return None
        self._guilds[guild_id].update(data)
        return dict(self._guilds[guild_id])

    async def update_guild_if_status(
        self,
        guild_id: str,
        expected: Collection[str],
        data: dict[str, Any],
    ) -> dict[str, Any] | None:
        guild = self._guilds.get(guild_id)
        if guild is None or guild.get("status") not in expected:
            return None
        guild.update(data)
        return dict(guild)

    async def delete_guild(self, guild_id: str) -> None:
        self._guilds.pop(guild_id, None)

    async def list_guilds_for_user(self, user_id: str) -> list[dict[str, Any]]:
        return [
            dict(g) for g in self._guilds.values()
            if g.get("owner_user_id") == user_id
        ]

    async def commit_provisioned(
        self,
        guild_id: str,
        guild_data: dict[str, Any],
        deployment: dict[str, Any],
    ) -> None:
        if guild_id not in self._guilds:
            raise KeyError(guild_id)
        self._guilds[guild_id].update(guild_data)
        self.deployments.put(guild_id, deployment)


class InMemoryFreeTierCapacityStore:
    def __init__(self, config: dict[str, Any] | None = None) -> None:
        self._config = dict(config) if config is not None else None
        self._lock = asyncio.Lock()

    async def get_free_tier_config(self) -> dict[str, Any] | None:
        return dict(self._config) if self._config is not None else None

    async def create_free_tier_config(self, config: dict[str, Any]) -> dict[str, Any] | None:
        async with self._lock:
            if self._config is not None:
                return None
            self._config = dict(config)
            return dict(self._config)

    async def set_free_tier_max_slots(self, max_slots: int) -> dict[str, Any] | None:
        async with self._lock:
            if self._config is None or int(self._config.get("used_slots", 0)) > max_slots:
                return None
            self._config["max_slots"] = max_slots
            return dict(self._config)

    async def try_reserve_free_tier_slot(self) -> dict[str, Any] | None:
        async with self._lock:
            if self._config is None:
                return None
            if int(self._config.get("used_slots", 0)) >= int(self._config.get("max_slots", 0)):
                return None
            self._config["used_slots"] = int(self._config.get("used_slots", 0)) + 1
            return dict(self._config)

    async def increment_free_tier_slots(self, delta: int) -> dict[str, Any] | None:
        async with self._lock:
            if self._config is None:
                return None
            self._config["used_slots"] = max(0, int(self._config.get("used_slots", 0)) + delta)
            return dict(self._config)


class InMemorySubscriptionRepository:
    def __init__(self, subscriptions: dict[str, dict[str, Any]] | None = None) -> None:
        self._subscriptions = dict(subscriptions or {})

    async def get_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        return self._subscriptions.get(subscription_id)


class InMemoryUserRepository:
    def __init__(self) -> None:
        self._users: dict[str, dict[str, Any]] = {}

    def add_user(self, user_id: str, **data: Any) -> None:
        self._users[user_id] = {"id": user_id, **data}

    async def get_user(self, user_id: str) -> dict[str, Any] | None:
        return self._users.get(user_id)

    async def delete_user(self, user_id: str) -> None:
        self._users.pop(user_id, None)


class InMemoryIdentityProvider:
    def __init__(self) -> None:
        self.deleted: list[str] = []

    async def delete_identity(self, user_id: str) -> None:
        self.deleted.append(user_id)


class InMemoryBillingProvider:
    def __init__(self) -> None:
        self.canceled: list[str] = []

    async def cancel_subscription_immediately(self, subscription_id: str) -> None:
        self.canceled.append(subscription_id)


class InMemoryMachinePlatform:
    """Fake machines API.

    ``failures`` maps a method name to an exception raised on the next call.
    ``hooks`` maps a method name to an async callable awaited before the call
    takes effect, which lets tests hold an operation open. Newly created
    machines report ``initial_state``.
    """

    def __init__(self, *, initial_state: str = "started") -> None:
        self.apps: set[str] = set()
        self.volumes: dict[str, dict[str, Any]] = {}
        self.machines: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.failures: dict[str, BaseException] = {}
        self.hooks: dict[str, Callable[[], Awaitable[Any]]] = {}
        self.initial_state = initial_state

    async def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        hook = self.hooks.get(method)
        if hook is not None:
            await hook()
        exc = self.failures.pop(method, None)
        if exc is not None:
            raise exc

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def set_state(self, app_name: str, machine_id: str, state: str) -> None:
        self.machines[(app_name, machine_id)]["state"] = state

    async def create_app(self, name: str) -> dict[str, Any]:
        await self._enter("create_app", name)
        self.apps.add(name)
        return {"name": name}

    async def create_volume(
        self, app_name: str, name: str, region: str, size_gb: int,
    ) -> dict[str, Any]:
        await self._enter("create_volume", app_name, name, region, size_gb)
        volume = {
            "id": f"vol_{uuid.uuid4().hex[:12]}",
            "app_name": app_name,
            "name": name,
            "region": region,
            "size_gb": size_gb,
        }
        self.volumes[volume["id"]] = volume
        return volume

    async def create_machine(
        self, app_name: str, spec: dict[str, Any], region: str,
    ) -> dict[str, Any]:
        await self._enter("create_machine", app_name, spec, region)
        machine_id = uuid.uuid4().hex[:14]
        now = _now()
        machine = {
            "id": machine_id,
            "name": spec.get("name"),
            "state": self.initial_state,
            "region": region,
            "config": copy.deepcopy(spec.get("config") or {}),
            "created_at": now,
            "updated_at": now,
        }
        self.machines[(app_name, machine_id)] = machine
        return copy.deepcopy(machine)

    async def get_machine(self, app_name: str, machine_id: str) -> dict[str, Any]:
        await self._enter("get_machine", app_name, machine_id)
        machine = self.machines.get((app_name, machine_id))
        if machine is None:
            raise RemoteNotFoundError("machine not found")
        return copy.deepcopy(machine)

    async def update_machine(
        self, app_name: str, machine_id: str, config: dict[str, Any],
    ) -> dict[str, Any]:
        await self._enter("update_machine", app_name, machine_id, config)
        machine = self.machines.get((app_name, machine_id))
        if machine is None:
            raise RemoteNotFoundError("machine not found")
        machine["config"] = copy.deepcopy(config)
        machine["updated_at"] = _now()
        return copy.deepcopy(machine)

    async def restart_machine(self, app_name: str, machine_id: str) -> dict[str, Any]:
        await self._enter("restart_machine", app_name, machine_id)
        if (app_name, machine_id) not in self.machines:
            raise RemoteNotFoundError("machine not found")
        return {"ok": True}

    async def delete_app(self, app_name: str) -> None:
        await self._enter("delete_app", app_name)
        if app_name not in self.apps:
            raise RemoteNotFoundError("app not found")
        self.apps.discard(app_name)
        # Deleting an app takes its machines and volumes with it.
        for key in [k for k in self.machines if k[0] == app_name]:
            del self.machines[key]
        for volume_id in [v for v, vol in self.volumes.items() if vol["app_name"] == app_name]:
            del self.volumes[volume_id]
