"""
Webhook deduplication models - idempotency table plus append-only audit log.

A WebhookDeduplication row whose expires_at is still in the future blocks
re-admission of the same key. WebhookProcessingLog gets one row per attempt.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Text, Index

from app.core.time_utils import utcnow
from app.db.database import Base


class WebhookProcessingStatus(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class WebhookDeduplication(Base):
    """Admission record for one logical webhook event"""

    __tablename__ = "webhook_deduplication"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deduplication_key = Column(String(255), unique=True, nullable=False)
    webhook_type = Column(String(50), nullable=False)
    payload_hash = Column(String(64), nullable=False)
    correlation_id = Column(String(64), nullable=True)
    processed_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_webhook_deduplication_expires_at", "expires_at"),
    )


class WebhookProcessingLog(Base):
    """Audit row per webhook attempt (processed / duplicate / failed)"""

    __tablename__ = "webhook_processing_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    webhook_type = Column(String(50), nullable=False)
    deduplication_key = Column(String(255), nullable=False, index=True)
    correlation_id = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False)
    payload_size = Column(Integer, nullable=False, default=0)
    processing_time_ms = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_webhook_processing_logs_type_created", "webhook_type", "created_at"),
    )
