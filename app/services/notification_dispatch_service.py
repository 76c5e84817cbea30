from __future__ import annotations

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.notification_outbox import NotificationOutbox
from app.schemas.substitution import NotificationPlan


class NotificationDispatcher(Protocol):
    """Hands a planned notification over to whatever delivers it."""

    async def dispatch(
        self, db: AsyncSession, plan_id: str | None, notification: NotificationPlan
    ) -> None: ...


class OutboxNotificationDispatcher:
    """Write notifications to ``notification_outbox`` for the delivery worker.

    Rows are added to the caller's session and flushed; the caller owns the
    commit so notifications land together with the state change they belong
    to.
    """

    async def dispatch(
        self, db: AsyncSession, plan_id: str | None, notification: NotificationPlan
    ) -> None:
        db.add(
            NotificationOutbox(
                plan_id=plan_id,
                recipient_type=notification.recipient_type,
                recipient_id=notification.recipient_id,
                channel=notification.notification_type,
                message_ar=notification.message_template_ar,
                message_en=notification.message_template_en,
                priority=notification.priority,
                requires_confirmation=notification.requires_confirmation,
                send_time=notification.send_time,
            )
        )
        await db.flush()
