"""Environment and machine-config builders for guild workloads.

Everything here is pure. Create, restart, repair and deploy all derive the
injected variables and the machine shape from these functions so the four
paths cannot drift apart.
"""

from __future__ import annotations

import copy
from types import MappingProxyType
from typing import Any, Mapping

WORKSPACE_PATH = "/workspace"
HEALTH_PORT = 8080
HEALTH_CHECK_PATH = "/health"

STANDARD_GUEST: Mapping[str, Any] = MappingProxyType(
    {
        "cpu_kind": "shared",
        "cpus": 1,
        "memory_mb": 2048,
    }
)


def build_environment(
    guild_id: str,
    memory_context_size: int,
    memory_retention_months: int,
    shared_bot_token: str,
    shared_api_key: str,
    service_url: str,
    base_url: str | None = None,
) -> dict[str, str]:
    """Return the full set of variables injected into a guild machine.

    Identical inputs always produce an equal dict, and every call returns a
    fresh dict the caller may mutate.
    """
    env = {
        "HOME": WORKSPACE_PATH,
        "DISCORD_BOT_TOKEN": shared_bot_token,
        "DISCORD_GUILD_ID": guild_id,
        "ANTHROPIC_API_KEY": shared_api_key,
        "BOT_ID": guild_id,
        "MEMORY_CONTEXT_SIZE": str(memory_context_size),
        "MEMORY_RETENTION_MONTHS": str(memory_retention_months),
        "SERVICE_URL": service_url,
        "HEALTH_PORT": str(HEALTH_PORT),
    }
    if base_url:
        env["BASE_URL"] = base_url
    return env


def build_mounts(volume_id: str) -> list[dict[str, str]]:
    return [{"volume": volume_id, "path": WORKSPACE_PATH}]


def build_http_service() -> dict[str, Any]:
    """The single HTTP service every guild exposes, with its health check."""
    return {
        "protocol": "tcp",
        "internal_port": HEALTH_PORT,
        "ports": [
            {"port": 80, "handlers": ["http"]},
            {"port": 443, "handlers": ["tls", "http"]},
        ],
        "checks": [
            {
                "type": "http",
                "port": HEALTH_PORT,
                "method": "GET",
                "path": HEALTH_CHECK_PATH,
                "interval": "15s",
                "timeout": "5s",
                "grace_period": "30s",
            }
        ],
    }


def image_ref(image: str, tag: str) -> str:
    return f"{image}:{tag}"


def build_machine_spec(
    *,
    app_name: str,
    image: str,
    env: Mapping[str, str],
    volume_id: str,
) -> dict[str, Any]:
    """Machine creation payload (name + config)."""
    return {
        "name": f"{app_name}-main",
        "config": {
            "image": image,
            "guest": dict(STANDARD_GUEST),
            "env": dict(env),
            "mounts": build_mounts(volume_id),
            "services": [build_http_service()],
            "init": {"cwd": WORKSPACE_PATH},
        },
    }


def compute_desired_config(
    current: Mapping[str, Any] | None,
    *,
    env: Mapping[str, str],
    volume_id: str | None,
    image: str,
) -> dict[str, Any]:
    """Merge the orchestrator-owned fields over the live machine config.

    - ``env`` is replaced wholesale, so stale keys never survive.
    - existing mounts are kept; an empty mount list is rebuilt from
      ``volume_id`` when one is on record.
    - image, guest shape, services and init are pinned.
    - every other key of ``current`` is preserved untouched.
    """
    desired: dict[str, Any] = copy.deepcopy(dict(current or {}))

    mounts = list(desired.get("mounts") or [])
    if not mounts and volume_id:
        mounts = build_mounts(volume_id)

    desired.update(
        {
            "image": image,
            "guest": dict(STANDARD_GUEST),
            "env": dict(env),
            "mounts": mounts,
            "services": [build_http_service()],
            "init": {"cwd": WORKSPACE_PATH},
        }
    )
    return desired
