"""Secret store implementations.

Secrets are resolved by name at the moment they are needed (never cached on
long-lived objects) so a rotated platform token takes effect on the next
call. Values are never included in ``repr()`` output or log records.

Secret names used by the control plane:
  - ``FLY_API_TOKEN``: machines API bearer token.
  - ``SHARED_DISCORD_BOT_TOKEN``: shared bot credential injected into guilds.
  - ``SHARED_ANTHROPIC_API_KEY``: shared model API key injected into guilds.
  - ``STRIPE_SECRET_KEY``: billing provider key.
"""

from __future__ import annotations

import os
from types import MappingProxyType
from typing import Mapping

from ..errors import FailedPreconditionError

FLY_API_TOKEN = "FLY_API_TOKEN"
SHARED_DISCORD_BOT_TOKEN = "SHARED_DISCORD_BOT_TOKEN"
SHARED_ANTHROPIC_API_KEY = "SHARED_ANTHROPIC_API_KEY"
STRIPE_SECRET_KEY = "STRIPE_SECRET_KEY"

REQUIRED_SECRETS: tuple[str, ...] = (
    FLY_API_TOKEN,
    SHARED_DISCORD_BOT_TOKEN,
    SHARED_ANTHROPIC_API_KEY,
)


class SecretNotFoundError(FailedPreconditionError):
    """Raised when a secret is missing or blank."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"secret {name!r} is not configured")


class EnvSecretStore:
    """Resolve secrets from environment variables (how Modal and Fly inject them)."""

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self._env = env if env is not None else os.environ

    def get_secret(self, name: str) -> str:
        value = self._env.get(name, "").strip()
        if not value:
            raise SecretNotFoundError(name)
        return value

    def missing(self, names: tuple[str, ...] = REQUIRED_SECRETS) -> list[str]:
        return [name for name in names if not self._env.get(name, "").strip()]

    def __repr__(self) -> str:
        return "EnvSecretStore(<redacted>)"


class StaticSecretStore:
    """Fixed secret mapping for local development and tests."""

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets = MappingProxyType(dict(secrets or {}))

    def get_secret(self, name: str) -> str:
        value = self._secrets.get(name, "")
        if not value:
            raise SecretNotFoundError(name)
        return value

    def __repr__(self) -> str:
        return f"StaticSecretStore(names={sorted(self._secrets)!r})"
