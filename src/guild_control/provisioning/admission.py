"""Free-tier admission control.

A slot is reserved with one atomic check-and-increment on the capacity
store before any remote resource is created. If the provisioning attempt
that holds the reservation fails, the slot is handed back with a
compensating decrement. Release is best effort: a leaked slot is visible
in the counter and acceptable, a double-spent one is not.

The capacity document itself is created once by an admin and resized
later; resizing never drops ``max_slots`` below the slots already used.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..errors import (
    AlreadyExistsError,
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    ResourceExhaustedError,
)
from .tiers import DEFAULT_FREE_TIER_QUERIES

logger = logging.getLogger(__name__)

DEFAULT_MAX_SLOTS = 10


@dataclass(slots=True)
class SlotReservation:
    """Proof that one free-tier slot was counted for a provisioning attempt."""

    guild_id: str
    used_slots: int
    max_slots: int
    queries_per_slot: int | None = None
    released: bool = field(default=False)


class FreeTierAdmission:
    """Reserve and release free-tier slots against a ``FreeTierCapacityStore``."""

    def __init__(self, capacity_store: Any) -> None:
        self._store = capacity_store

    async def reserve_free_tier_slot(self, guild_id: str) -> SlotReservation:
        """Reserve one slot.

        Raises:
            FailedPreconditionError: If no capacity document exists.
            ResourceExhaustedError: If every slot is already taken,
                including when a concurrent caller took the last one.
        """
        config = await self._store.get_free_tier_config()
        if config is None:
            raise FailedPreconditionError("Free tier not configured")

        if int(config.get("used_slots", 0)) >= int(config.get("max_slots", 0)):
            raise ResourceExhaustedError("No free tier slots available")

        updated = await self._store.try_reserve_free_tier_slot()
        if updated is None:
            raise ResourceExhaustedError("No free tier slots available")

        reservation = SlotReservation(
            guild_id=guild_id,
            used_slots=int(updated.get("used_slots", 0)),
            max_slots=int(updated.get("max_slots", 0)),
            queries_per_slot=updated.get("queries_per_slot"),
        )
        logger.info(
            "Reserved free tier slot for guild %s",
            guild_id,
            extra={
                "guild_id": guild_id,
                "used_slots": reservation.used_slots,
                "max_slots": reservation.max_slots,
            },
        )
        return reservation

    async def release_free_tier_slot(self, reservation: SlotReservation) -> bool:
        """Hand a reserved slot back. Never raises; returns False on failure."""
        if reservation.released:
            return True
        try:
            await self._store.increment_free_tier_slots(-1)
        except Exception:
            logger.exception(
                "Failed to release free tier slot for guild %s",
                reservation.guild_id,
                extra={"guild_id": reservation.guild_id},
            )
            return False
        reservation.released = True
        logger.info(
            "Released free tier slot for guild %s",
            reservation.guild_id,
            extra={"guild_id": reservation.guild_id},
        )
        return True

    # ── Admin ───────────────────────────────────────────────────────

    async def initialize_free_tier_config(
        self,
        max_slots: int = DEFAULT_MAX_SLOTS,
        queries_per_slot: int = DEFAULT_FREE_TIER_QUERIES,
    ) -> dict[str, Any]:
        """Create the capacity document with no slots used.

        Raises:
            InvalidArgumentError: For a negative ``max_slots`` or a
                non-positive ``queries_per_slot``.
            AlreadyExistsError: If the document was created before.
        """
        if max_slots < 0:
            raise InvalidArgumentError("max_slots must be non-negative")
        if queries_per_slot <= 0:
            raise InvalidArgumentError("queries_per_slot must be positive")

        config = await self._store.create_free_tier_config(
            {
                "max_slots": max_slots,
                "used_slots": 0,
                "queries_per_slot": queries_per_slot,
            }
        )
        if config is None:
            raise AlreadyExistsError("Free tier config already initialized")
        logger.info(
            "Free tier config initialized",
            extra={"max_slots": max_slots, "queries_per_slot": queries_per_slot},
        )
        return config

    async def adjust_free_tier_slots(self, max_slots: int) -> dict[str, Any]:
        """Resize the pool.

        Raises:
            InvalidArgumentError: If ``max_slots`` is negative or below the
                slots already used.
            NotFoundError: If the capacity document was never initialized.
        """
        if max_slots < 0:
            raise InvalidArgumentError("max_slots must be non-negative")

        config = await self._store.set_free_tier_max_slots(max_slots)
        if config is None:
            current = await self._store.get_free_tier_config()
            if current is None:
                raise NotFoundError("Free tier config not found; initialize it first")
            raise InvalidArgumentError(
                f"Cannot set max_slots ({max_slots}) below current "
                f"used_slots ({current.get('used_slots', 0)})"
            )

        used = int(config.get("used_slots", 0))
        logger.info(
            "Free tier max slots adjusted",
            extra={
                "max_slots": max_slots,
                "used_slots": used,
                "available_slots": max_slots - used,
            },
        )
        return config
