"""Background readiness polling for freshly created machines.

Provisioning returns as soon as the machine exists. A detached task then
watches the machine until it reports ``started`` (guild becomes active),
``stopped``/``failed`` (guild becomes error) or the attempt budget runs out
(guild becomes error). Every exit path ends in a status write; nothing the
poller does propagates to the request that spawned it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine

from ..errors import describe_error
from .state_machine import ACTIVE, ERROR, POLLER_FROM

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_ATTEMPTS = 60

READY_STATE = "started"
FAILED_STATES = frozenset({"stopped", "failed"})


class ReadinessPoller:
    """Poll one machine until it reaches a terminal state."""

    def __init__(
        self,
        *,
        platform: Any,
        guilds: Any,
        clock: Callable[[], Any],
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._platform = platform
        self._guilds = guilds
        self._clock = clock
        self._interval = float(interval_seconds)
        self._max_attempts = max_attempts
        self._sleep = sleep

    @property
    def timeout_seconds(self) -> float:
        return self._interval * self._max_attempts

    async def run(self, guild_id: str, app_name: str, machine_id: str) -> str:
        """Poll to completion and return the status that was written."""
        try:
            return await self._poll(guild_id, app_name, machine_id)
        except asyncio.CancelledError:
            logger.warning(
                "Readiness polling cancelled for guild %s",
                guild_id,
                extra={"guild_id": guild_id, "machine_id": machine_id},
            )
            await self._finish(
                guild_id,
                ERROR,
                "Readiness check interrupted before the machine started",
            )
            raise
        except Exception as exc:
            logger.exception(
                "Readiness polling crashed for guild %s",
                guild_id,
                extra={"guild_id": guild_id, "machine_id": machine_id},
            )
            await self._finish(
                guild_id, ERROR, f"Readiness check failed: {describe_error(exc)}",
            )
            return ERROR

    async def _poll(self, guild_id: str, app_name: str, machine_id: str) -> str:
        for attempt in range(self._max_attempts):
            if attempt > 0:
                await self._sleep(self._interval)

            try:
                machine = await self._platform.get_machine(app_name, machine_id)
            except Exception:
                logger.warning(
                    "Error polling machine for guild %s (attempt %d/%d)",
                    guild_id,
                    attempt + 1,
                    self._max_attempts,
                    extra={"guild_id": guild_id, "machine_id": machine_id},
                    exc_info=True,
                )
                continue

            state = machine.get("state")
            logger.info(
                "Guild %s machine state: %s",
                guild_id,
                state,
                extra={"guild_id": guild_id, "attempt": attempt + 1},
            )

            if state == READY_STATE:
                await self._finish(guild_id, ACTIVE, None)
                return ACTIVE

            if state in FAILED_STATES:
                await self._finish(
                    guild_id,
                    ERROR,
                    f"Machine failed to start (state: {state})",
                )
                return ERROR

        logger.error(
            "Guild %s did not start within %d attempts",
            guild_id,
            self._max_attempts,
            extra={"guild_id": guild_id, "machine_id": machine_id},
        )
        await self._finish(
            guild_id,
            ERROR,
            f"Machine did not start within {int(self.timeout_seconds)} seconds",
        )
        return ERROR

    async def _finish(self, guild_id: str, status: str, message: str | None) -> None:
        data = {
            "status": status,
            "error_message": message,
            "updated_at": self._clock().isoformat(),
        }
        try:
            updated = await self._guilds.update_guild_if_status(
                guild_id, POLLER_FROM, data,
            )
        except Exception:
            logger.exception(
                "Failed to record readiness outcome for guild %s",
                guild_id,
                extra={"guild_id": guild_id, "status": status},
            )
            return

        if updated is None:
            logger.warning(
                "Guild %s left provisioning before readiness finished; "
                "not overwriting with %s",
                guild_id,
                status,
                extra={"guild_id": guild_id, "status": status},
            )
        elif status == ACTIVE:
            logger.info("Guild %s is now active", guild_id, extra={"guild_id": guild_id})


class BackgroundTasks:
    """Owns fire-and-forget tasks so they are neither garbage-collected nor orphaned."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        name: str | None = None,
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed",
                task.get_name(),
                exc_info=exc,
            )

    async def drain(self) -> None:
        """Wait for every task spawned so far (and any they spawn)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding tasks and wait for their cleanup to finish."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
