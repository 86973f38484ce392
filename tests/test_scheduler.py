import asyncio
from datetime import timedelta

import pytest

from scim_provisioning import ConcurrencyError, ConfigurationError, Scheduler, SyncStatus

from .conftest import make_group, make_user


async def test_new_endpoint_is_due_immediately(service, endpoint, clock):
    due = await service.registry.list_due(clock.now)
    assert [e.id for e in due] == [endpoint.id]


async def test_run_pending_advances_schedule(service, endpoint, directory, clock):
    directory.users = [make_user("u1", "a@example.com")]
    directory.groups = [make_group("g1", "Engineering", ["u1"])]

    assert await service.scheduler.run_pending() == 1

    stored = await service.registry.get_endpoint(endpoint.id)
    assert stored.sync_status is SyncStatus.COMPLETED
    assert stored.next_sync_at == clock.now + timedelta(seconds=endpoint.sync_frequency)
    assert [r.url.path for r in directory.requests] == ["/scim/v2/Users", "/scim/v2/Groups"]
    # 未到期
    assert await service.scheduler.run_pending() == 0


async def test_schedule_survives_restart(service, endpoint, directory, clock):
    await service.scheduler.run_pending()
    clock.advance(endpoint.sync_frequency)

    # 新的调度器实例只依赖数据库里的 next_sync_at
    restarted = Scheduler(service.registry, service.orchestrator, poll_interval=1, clock=clock)
    assert await restarted.run_pending() == 1
    assert len(directory.requests) == 4


async def test_schedule_sync(service, endpoint, clock):
    next_at = await service.schedule_sync(endpoint.id)
    assert next_at == clock.now + timedelta(seconds=endpoint.sync_frequency)
    assert await service.registry.list_due(clock.now) == []

    next_at = await service.schedule_sync(endpoint.id, run_now=True)
    assert next_at == clock.now
    assert len(await service.registry.list_due(clock.now)) == 1


async def test_schedule_inactive_endpoint(service, endpoint):
    await service.deactivate_endpoint(endpoint.id)
    with pytest.raises(ConfigurationError):
        await service.schedule_sync(endpoint.id)


async def test_deactivated_endpoint_is_never_due(service, endpoint, directory, clock):
    await service.deactivate_endpoint(endpoint.id)
    assert await service.scheduler.run_pending() == 0
    assert directory.requests == []
    assert (await service.registry.get_endpoint(endpoint.id)).next_sync_at is None


async def test_overlapping_tick_is_rejected(service, endpoint, directory):
    directory.gate = asyncio.Event()
    first = asyncio.create_task(service.scheduler.trigger(endpoint.id))
    await directory.started.wait()

    with pytest.raises(ConcurrencyError):
        await service.scheduler.trigger(endpoint.id)

    directory.gate.set()
    results = await first
    assert results["users"].status is SyncStatus.COMPLETED
    assert results["groups"].status is SyncStatus.COMPLETED
    assert not service.scheduler.is_running(endpoint.id)


async def test_deactivate_cancels_running_tick(service, endpoint, directory):
    directory.gate = asyncio.Event()
    tick = asyncio.create_task(service.scheduler.trigger(endpoint.id))
    await directory.started.wait()

    stored = await service.deactivate_endpoint(endpoint.id)

    assert stored.is_active is False
    assert stored.sync_status is SyncStatus.FAILED
    with pytest.raises(asyncio.CancelledError):
        await tick


async def test_cancelled_tick_does_not_stop_polling(service, endpoint, directory):
    directory.gate = asyncio.Event()
    pending = asyncio.create_task(service.scheduler.run_pending())
    await directory.started.wait()

    await service.deactivate_endpoint(endpoint.id)

    assert await pending == 1


async def test_run_forever_until_stopped(service, endpoint, directory):
    service.scheduler.poll_interval = 0.01
    worker = asyncio.create_task(service.scheduler.run_forever())
    await directory.started.wait()
    await asyncio.sleep(0.05)

    service.scheduler.stop()
    await asyncio.wait_for(worker, timeout=2)

    stored = await service.registry.get_endpoint(endpoint.id)
    assert stored.sync_status is SyncStatus.COMPLETED
    assert len(directory.requests) == 2
