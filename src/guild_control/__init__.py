"""Guild control plane FastAPI application."""

from .main import create_app
from .settings import GuildControlSettings

__all__ = ["create_app", "GuildControlSettings"]
