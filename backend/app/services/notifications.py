import asyncio
import uuid
from typing import Set

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.enums import NotificationType
from app.models.notification import Notification

logger = structlog.get_logger()

# Keep references to background tasks to prevent GC collection
_background_tasks: Set[asyncio.Task] = set()

_push_client: httpx.AsyncClient | None = None


def _get_push_client() -> httpx.AsyncClient:
    global _push_client
    if _push_client is None or _push_client.is_closed:
        _push_client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0),
        )
    return _push_client


async def send_push(user_id: str, title: str, body: str, data: dict | None = None) -> bool:
    """Forward a notification to the push relay, when one is configured."""
    if not settings.PUSH_WEBHOOK_URL:
        logger.debug("push_skipped_no_relay", user_id=user_id)
        return True
    try:
        response = await _get_push_client().post(
            settings.PUSH_WEBHOOK_URL,
            json={"user_id": user_id, "title": title, "body": body, "data": data or {}},
        )
        if response.is_success:
            return True
        logger.warning("push_send_failed", user_id=user_id, status_code=response.status_code)
        return False
    except httpx.HTTPError as exc:
        logger.warning("push_send_error", user_id=user_id, error=str(exc))
        return False


async def notify(
    db: AsyncSession,
    user_id: uuid.UUID,
    notification_type: NotificationType | str,
    title: str,
    body: str,
    data: dict | None = None,
) -> Notification | None:
    """Persist a notification and push it in the background.

    Fire-and-forget: a failure here is logged and never propagates, so the
    caller's settlement or booking work is not rolled back by it.
    """
    type_value = notification_type.value if isinstance(notification_type, NotificationType) else notification_type
    push_data = dict(data) if data else {}
    push_data.setdefault("type", type_value)

    try:
        # Savepoint so a failed insert leaves the caller's transaction usable.
        async with db.begin_nested():
            notification = Notification(
                user_id=user_id,
                type=type_value,
                title=title,
                body=body,
                data=push_data,
            )
            db.add(notification)
    except Exception as exc:
        logger.error(
            "notification_persist_failed",
            user_id=str(user_id),
            type=type_value,
            error_type=type(exc).__name__,
        )
        return None

    task = asyncio.create_task(send_push(str(user_id), title, body, data=push_data))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return notification
