"""
Webhook failure queue

Carrier webhooks that passed signature verification but could not be
applied are parked here for replay. The sender always gets a success
response, so this table is the only record of the failure.
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON

from shipping_bridge.core.database import Base


class WebhookFailureStatus(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"  # Exceeded WEBHOOK_MAX_RETRIES


class WebhookFailure(Base):
    __tablename__ = "webhook_failures"

    id = Column(Integer, primary_key=True)

    event = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=True)  # The webhook's data object

    # Error details
    error_type = Column(String(100), nullable=True)  # Exception class name
    error_message = Column(Text, nullable=True)

    # Retry tracking
    status = Column(String(20), nullable=False, default=WebhookFailureStatus.PENDING.value, index=True)
    retry_count = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    last_retry_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<WebhookFailure {self.id} event={self.event} status={self.status}>"
