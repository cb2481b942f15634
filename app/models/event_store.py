"""Event store model for inbound gateway webhook notifications.

Each row is keyed by the gateway-assigned event id. The raw payload is kept
verbatim; only the processing columns (status, processed, attempts,
last_error) change after the row is written.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Enum, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class WebhookEventStatus(enum.Enum):
    """Processing state of a webhook event."""
    pending = "pending"
    processing = "processing"
    processed = "processed"
    failed = "failed"


class WebhookEvent(Base):
    """Durable record of a gateway notification.

    ``processed`` gates business side effects: once it is true, redeliveries
    of the same event id short-circuit without running handlers again.
    """

    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    gateway: Mapped[str] = mapped_column(String(20), nullable=False, default="stripe")
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[WebhookEventStatus] = mapped_column(
        Enum(WebhookEventStatus), default=WebhookEventStatus.pending, index=True
    )
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    # processed / ignored / dropped
    outcome: Mapped[str | None] = mapped_column(String(20))

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
