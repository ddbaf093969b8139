"""Guild ownership guard.

Every user-facing guild command passes through ``verify_ownership`` before
doing anything else. The guard only reads.
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import NotFoundError, PermissionDeniedError

logger = logging.getLogger(__name__)


async def verify_ownership(guilds: Any, user_id: str, guild_id: str) -> dict[str, Any]:
    """Return the guild row if ``user_id`` owns it.

    Raises:
        NotFoundError: If the guild does not exist.
        PermissionDeniedError: If the guild belongs to someone else.
    """
    guild = await guilds.get_guild(guild_id)
    if guild is None:
        raise NotFoundError("Guild not found")

    if not user_id or guild.get("owner_user_id") != user_id:
        logger.warning(
            "Ownership check failed for guild %s",
            guild_id,
            extra={"guild_id": guild_id, "user_id": user_id},
        )
        raise PermissionDeniedError("You do not own this guild")

    return guild
