"""Advisory holds on a provider's time window while a client is checking out.

Holds are informational only: they are shown next to booked slots so other
clients can see a window is being paid for, but booking creation never
consults them. A Redis outage degrades to "no hold information".
"""
import uuid
from datetime import datetime, timezone

import redis.asyncio as aioredis
import structlog

from app.config import settings
from app.utils.dates import as_utc

logger = structlog.get_logger()

_redis: aioredis.Redis | None = None


def _get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=2, decode_responses=True)
    return _redis


def hold_key(provider_id: uuid.UUID, start: datetime, end: datetime) -> str:
    return f"slot_hold:{provider_id}:{int(as_utc(start).timestamp())}:{int(as_utc(end).timestamp())}"


async def place_hold(provider_id: uuid.UUID, start: datetime, end: datetime, user_id: uuid.UUID) -> bool:
    """Returns False when someone else already holds the window or Redis is down."""
    try:
        placed = await _get_redis().set(
            hold_key(provider_id, start, end),
            str(user_id),
            nx=True,
            ex=settings.SLOT_HOLD_TTL_SECONDS,
        )
    except aioredis.RedisError as exc:
        logger.warning("slot_hold_unavailable", provider_id=str(provider_id), error=str(exc))
        return False
    return bool(placed)


async def release_hold(provider_id: uuid.UUID, start: datetime, end: datetime, user_id: uuid.UUID) -> bool:
    """Release a hold placed by ``user_id``. Holds owned by others are left alone."""
    key = hold_key(provider_id, start, end)
    try:
        client = _get_redis()
        owner = await client.get(key)
        if owner != str(user_id):
            return False
        await client.delete(key)
    except aioredis.RedisError as exc:
        logger.warning("slot_hold_unavailable", provider_id=str(provider_id), error=str(exc))
        return False
    return True


async def active_holds(provider_id: uuid.UUID) -> list[dict]:
    """Active holds for a provider as ``[{start, end, expires_in}]``."""
    prefix = f"slot_hold:{provider_id}:"
    holds = []
    try:
        client = _get_redis()
        async for key in client.scan_iter(match=f"{prefix}*", count=100):
            start_raw, _, end_raw = key[len(prefix):].partition(":")
            ttl = await client.ttl(key)
            if ttl and ttl > 0:
                holds.append({
                    "start": datetime.fromtimestamp(int(start_raw), tz=timezone.utc),
                    "end": datetime.fromtimestamp(int(end_raw), tz=timezone.utc),
                    "expires_in": ttl,
                })
    except aioredis.RedisError as exc:
        logger.warning("slot_hold_unavailable", provider_id=str(provider_id), error=str(exc))
        return []
    return holds
