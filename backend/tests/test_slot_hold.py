import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as aioredis

from app.services import slot_hold
from tests.conftest import FakeRedis, at


@pytest.mark.asyncio
async def test_place_and_release_hold(fake_redis: FakeRedis):
    provider_id, user_id = uuid.uuid4(), uuid.uuid4()
    start, end = at(10), at(11)

    assert await slot_hold.place_hold(provider_id, start, end, user_id) is True
    assert await slot_hold.place_hold(provider_id, start, end, uuid.uuid4()) is False

    holds = await slot_hold.active_holds(provider_id)
    assert len(holds) == 1
    assert holds[0]["start"] == start
    assert holds[0]["end"] == end

    assert await slot_hold.release_hold(provider_id, start, end, user_id) is True
    assert await slot_hold.active_holds(provider_id) == []


@pytest.mark.asyncio
async def test_hold_owned_by_someone_else_is_not_released(fake_redis: FakeRedis):
    provider_id, owner = uuid.uuid4(), uuid.uuid4()
    await slot_hold.place_hold(provider_id, at(10), at(11), owner)

    assert await slot_hold.release_hold(provider_id, at(10), at(11), uuid.uuid4()) is False
    assert len(fake_redis.store) == 1


@pytest.mark.asyncio
async def test_holds_are_scoped_to_the_provider(fake_redis: FakeRedis):
    provider_id = uuid.uuid4()
    await slot_hold.place_hold(uuid.uuid4(), at(10), at(11), uuid.uuid4())

    assert await slot_hold.active_holds(provider_id) == []


@pytest.mark.asyncio
async def test_redis_outage_degrades(monkeypatch):
    broken = MagicMock()
    broken.set = AsyncMock(side_effect=aioredis.ConnectionError("refused"))
    broken.get = AsyncMock(side_effect=aioredis.ConnectionError("refused"))

    async def scan_iter(**kwargs):
        raise aioredis.ConnectionError("refused")
        yield

    broken.scan_iter = scan_iter
    monkeypatch.setattr(slot_hold, "_redis", broken)
    provider_id, user_id = uuid.uuid4(), uuid.uuid4()

    assert await slot_hold.place_hold(provider_id, at(10), at(11), user_id) is False
    assert await slot_hold.release_hold(provider_id, at(10), at(11), user_id) is False
    assert await slot_hold.active_holds(provider_id) == []
