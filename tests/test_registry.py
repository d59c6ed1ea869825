import asyncio

import pytest

from conftest import FakeSink, FakeSource
from playbot.player.controller import QueueController
from playbot.player.errors import DestinationUnreachableError, SessionConflictError
from playbot.player.registry import SessionRegistry


class Factory:
    def __init__(self):
        self.built: list[QueueController] = []

    def __call__(self, destination_id):
        async def build():
            await asyncio.sleep(0)
            controller = QueueController(destination_id, FakeSource(), FakeSink())
            self.built.append(controller)
            return controller
        return build


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def factory():
    return Factory()


async def test_open_reuses_existing_session(registry, factory):
    first = await registry.open(10, 1, factory(10))
    second = await registry.open(10, 1, factory(10))
    assert first is second
    assert len(factory.built) == 1
    assert 10 in registry
    assert registry.get(10) is first


async def test_second_channel_in_same_guild_conflicts(registry, factory):
    await registry.open(10, 1, factory(10))
    with pytest.raises(SessionConflictError):
        await registry.open(11, 1, factory(11))
    assert len(factory.built) == 1
    assert 11 not in registry


async def test_separate_guilds_get_separate_controllers(registry, factory):
    a = await registry.open(10, 1, factory(10))
    b = await registry.open(20, 2, factory(20))
    assert a is not b
    assert registry.find_by_scope(1) is a
    assert registry.find_by_scope(2) is b
    assert registry.find_by_scope(3) is None
    assert len(registry) == 2


async def test_concurrent_opens_create_one_controller(registry, factory):
    results = await asyncio.gather(*(registry.open(10, 1, factory(10)) for _ in range(5)))
    assert len(factory.built) == 1
    assert all(result is results[0] for result in results)


async def test_close_stops_and_forgets(registry, factory):
    controller = await registry.open(10, 1, factory(10))
    assert await registry.close(10) is True
    assert controller.closed
    assert controller.session.sink.closed
    assert 10 not in registry
    assert registry.find_by_scope(1) is None
    assert await registry.close(10) is False


async def test_closed_guild_can_bind_a_new_channel(registry, factory):
    await registry.open(10, 1, factory(10))
    await registry.close(10)
    controller = await registry.open(11, 1, factory(11))
    assert controller.destination_id == 11


async def test_unreachable_destination_is_removed(registry, factory):
    controller = await registry.open(10, 1, factory(10))
    await controller._lost(DestinationUnreachableError())
    assert controller.closed
    assert 10 not in registry


async def test_close_all(registry, factory):
    a = await registry.open(10, 1, factory(10))
    b = await registry.open(20, 2, factory(20))
    await registry.close_all()
    assert a.closed and b.closed
    assert len(registry) == 0


async def test_slow_open_does_not_block_other_guilds(registry, factory):
    gate = asyncio.Event()

    async def slow_connect():
        await gate.wait()
        return QueueController(10, FakeSource(), FakeSink())

    pending = asyncio.create_task(registry.open(10, 1, slow_connect))
    await asyncio.sleep(0)

    other = await asyncio.wait_for(registry.open(20, 2, factory(20)), timeout=1)
    assert other.destination_id == 20
    assert not pending.done()

    gate.set()
    assert (await pending).destination_id == 10
    assert len(registry) == 2
