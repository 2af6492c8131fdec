import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.enums import NotificationType
from app.models.notification import Notification
from app.models.user import User
from app.services import notifications
from app.services.notifications import notify, send_push


@pytest.mark.asyncio
async def test_send_push_without_relay():
    with patch.object(settings, "PUSH_WEBHOOK_URL", ""):
        assert await send_push("user-1", "Title", "Body") is True


@pytest.mark.asyncio
async def test_send_push_posts_to_relay():
    response = MagicMock(is_success=True)
    client = MagicMock(post=AsyncMock(return_value=response))

    with (
        patch.object(settings, "PUSH_WEBHOOK_URL", "https://push.example.test/send"),
        patch("app.services.notifications._get_push_client", return_value=client),
    ):
        assert await send_push("user-1", "Booking confirmed", "See you soon", {"booking_id": "b1"}) is True

    client.post.assert_awaited_once()
    assert client.post.call_args.kwargs["json"]["data"] == {"booking_id": "b1"}


@pytest.mark.asyncio
async def test_send_push_relay_error():
    client = MagicMock(post=AsyncMock(side_effect=httpx.ConnectError("refused")))

    with (
        patch.object(settings, "PUSH_WEBHOOK_URL", "https://push.example.test/send"),
        patch("app.services.notifications._get_push_client", return_value=client),
    ):
        assert await send_push("user-1", "Title", "Body") is False


@pytest.mark.asyncio
async def test_send_push_relay_rejects():
    client = MagicMock(post=AsyncMock(return_value=MagicMock(is_success=False, status_code=502)))

    with (
        patch.object(settings, "PUSH_WEBHOOK_URL", "https://push.example.test/send"),
        patch("app.services.notifications._get_push_client", return_value=client),
    ):
        assert await send_push("user-1", "Title", "Body") is False


@pytest.mark.asyncio
async def test_notify_persists_and_pushes(db: AsyncSession, client_user: User):
    with patch("app.services.notifications.send_push", new_callable=AsyncMock) as push:
        notification = await notify(
            db,
            client_user.id,
            NotificationType.BOOKING_CONFIRMED,
            "Booking confirmed",
            "Your session is confirmed.",
            {"booking_id": "b1"},
        )
        await asyncio.gather(*notifications._background_tasks)

    stored = (await db.execute(select(Notification))).scalar_one()
    assert stored.id == notification.id
    assert stored.type == "booking_confirmed"
    assert stored.data == {"booking_id": "b1", "type": "booking_confirmed"}
    assert stored.is_read is False
    push.assert_awaited_once()


@pytest.mark.asyncio
async def test_notify_failure_is_swallowed(db: AsyncSession, client_user: User):
    with patch.object(db, "begin_nested", side_effect=RuntimeError("savepoint failed")):
        result = await notify(db, client_user.id, NotificationType.PAYMENT_FAILED, "t", "b")

    assert result is None
