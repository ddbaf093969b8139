"""Security helpers: secret resolution and ownership checks."""

from .ownership import verify_ownership
from .secrets import (
    FLY_API_TOKEN,
    REQUIRED_SECRETS,
    SHARED_ANTHROPIC_API_KEY,
    SHARED_DISCORD_BOT_TOKEN,
    STRIPE_SECRET_KEY,
    EnvSecretStore,
    SecretNotFoundError,
    StaticSecretStore,
)

__all__ = [
    "FLY_API_TOKEN",
    "REQUIRED_SECRETS",
    "SHARED_ANTHROPIC_API_KEY",
    "SHARED_DISCORD_BOT_TOKEN",
    "STRIPE_SECRET_KEY",
    "EnvSecretStore",
    "SecretNotFoundError",
    "StaticSecretStore",
    "verify_ownership",
]
