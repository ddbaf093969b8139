"""Unit tests for the readiness poller and background task registry."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from guild_control.inmemory import InMemoryGuildRepository, InMemoryMachinePlatform
from guild_control.providers.machines_client import RemoteAPIError
from guild_control.provisioning.readiness import BackgroundTasks, ReadinessPoller


def _clock():
    return datetime(2026, 1, 1, tzinfo=timezone.utc)


async def _setup(initial_state: str = "created", status: str = "provisioning"):
    guilds = InMemoryGuildRepository()
    guilds.add_guild({"id": "g1", "status": status})
    platform = InMemoryMachinePlatform(initial_state=initial_state)
    await platform.create_app("app-1")
    machine = await platform.create_machine("app-1", {"name": "m", "config": {}}, "sjc")
    platform.calls.clear()
    return guilds, platform, machine["id"]


def _poller(guilds, platform, **kwargs):
    args = dict(
        platform=platform,
        guilds=guilds,
        clock=_clock,
        interval_seconds=0,
        max_attempts=60,
    )
    args.update(kwargs)
    return ReadinessPoller(**args)


@pytest.mark.asyncio
async def test_started_machine_activates_guild():
    guilds, platform, machine_id = await _setup(initial_state="started")

    result = await _poller(guilds, platform).run("g1", "app-1", machine_id)

    assert result == "active"
    guild = await guilds.get_guild("g1")
    assert guild["status"] == "active"
    assert guild["error_message"] is None
    assert platform.call_names() == ["get_machine"]


@pytest.mark.asyncio
async def test_becomes_active_after_a_few_polls():
    guilds, platform, machine_id = await _setup()
    polls = 0
    original = platform.get_machine

    async def get_machine(app_name, mid):
        nonlocal polls
        polls += 1
        if polls == 3:
            platform.set_state(app_name, mid, "started")
        return await original(app_name, mid)

    platform.get_machine = get_machine

    assert await _poller(guilds, platform).run("g1", "app-1", machine_id) == "active"
    assert polls == 3


@pytest.mark.asyncio
async def test_failed_state_marks_error():
    guilds, platform, machine_id = await _setup(initial_state="failed")

    assert await _poller(guilds, platform).run("g1", "app-1", machine_id) == "error"

    guild = await guilds.get_guild("g1")
    assert guild["status"] == "error"
    assert guild["error_message"] == "Machine failed to start (state: failed)"


@pytest.mark.asyncio
async def test_stuck_machine_times_out_after_exactly_max_attempts():
    guilds, platform, machine_id = await _setup(initial_state="starting")
    sleep = AsyncMock()

    poller = _poller(guilds, platform, interval_seconds=5, sleep=sleep)
    assert await poller.run("g1", "app-1", machine_id) == "error"

    assert platform.call_names().count("get_machine") == 60
    assert sleep.await_count == 59
    guild = await guilds.get_guild("g1")
    assert guild["error_message"] == "Machine did not start within 300 seconds"


@pytest.mark.asyncio
async def test_poll_errors_are_retried():
    guilds, platform, machine_id = await _setup(initial_state="started")
    platform.failures["get_machine"] = RemoteAPIError(500, "flaky")

    assert await _poller(guilds, platform).run("g1", "app-1", machine_id) == "active"
    assert platform.call_names() == ["get_machine", "get_machine"]


@pytest.mark.asyncio
async def test_does_not_overwrite_guild_that_left_provisioning():
    guilds, platform, machine_id = await _setup(initial_state="started", status="deprovisioning")

    await _poller(guilds, platform).run("g1", "app-1", machine_id)

    assert (await guilds.get_guild("g1"))["status"] == "deprovisioning"


@pytest.mark.asyncio
async def test_status_write_failure_does_not_raise():
    guilds, platform, machine_id = await _setup(initial_state="started")
    guilds.update_guild_if_status = AsyncMock(side_effect=RuntimeError("db down"))

    assert await _poller(guilds, platform).run("g1", "app-1", machine_id) == "active"


@pytest.mark.asyncio
async def test_cancellation_records_error_and_propagates():
    guilds, platform, machine_id = await _setup(initial_state="starting")
    poller = _poller(guilds, platform, interval_seconds=60, sleep=asyncio.sleep)

    task = asyncio.create_task(poller.run("g1", "app-1", machine_id))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    guild = await guilds.get_guild("g1")
    assert guild["status"] == "error"
    assert "interrupted" in guild["error_message"]


def test_timeout_seconds():
    poller = ReadinessPoller(
        platform=None, guilds=None, clock=_clock, interval_seconds=5, max_attempts=60,
    )
    assert poller.timeout_seconds == 300


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        ReadinessPoller(platform=None, guilds=None, clock=_clock, max_attempts=0)


# ── BackgroundTasks ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_background_tasks_drain_and_forget_finished():
    tasks = BackgroundTasks()
    done = []

    async def work(n):
        await asyncio.sleep(0)
        done.append(n)

    tasks.spawn(work(1), name="one")
    tasks.spawn(work(2), name="two")
    assert tasks.pending == 2

    await tasks.drain()

    assert sorted(done) == [1, 2]
    assert tasks.pending == 0


@pytest.mark.asyncio
async def test_background_task_failure_is_contained():
    tasks = BackgroundTasks()

    async def boom():
        raise RuntimeError("boom")

    tasks.spawn(boom(), name="boom")
    await tasks.drain()

    assert tasks.pending == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_outstanding_tasks():
    tasks = BackgroundTasks()
    started = asyncio.Event()

    async def forever():
        started.set()
        await asyncio.sleep(3600)

    task = tasks.spawn(forever(), name="forever")
    await started.wait()
    await tasks.shutdown()

    assert task.cancelled()
