from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base, TimestampMixin


class NotificationOutbox(TimestampMixin, Base):
    """Notification handed over to the external delivery worker.

    The engine decides what to send and when (``send_time``); the delivery
    worker picks up rows with ``dispatched_at IS NULL`` and owns transport.
    """

    __tablename__ = "notification_outbox"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    recipient_type: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient_id: Mapped[int] = mapped_column(nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)

    message_ar: Mapped[str] = mapped_column(Text, nullable=False)
    message_en: Mapped[str] = mapped_column(Text, nullable=False)

    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    requires_confirmation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    send_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dispatched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
