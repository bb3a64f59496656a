"""
Async Task Model - durable work queue rows

Lifecycle: pending (visible_at in the past, not reserved) -> reserved ->
deleted on success | pending again with a later visible_at | dead-lettered.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, Index

from app.core.time_utils import utcnow
from app.db.database import Base


class AsyncTask(Base):
    """A background job waiting for, or held by, a queue worker"""

    __tablename__ = "async_tasks"

    # autoincrement id is the FIFO tiebreak inside one priority tier
    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String(64), unique=True, nullable=False, index=True)

    task_type = Column(String(100), nullable=False)
    task_data = Column(Text, nullable=False)  # JSON-encoded payload

    # lower number = more urgent
    priority = Column(Integer, nullable=False, default=5)

    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    retry_backoff_sec = Column(Integer, nullable=False, default=60)

    visible_at = Column(DateTime, nullable=False, default=utcnow)
    reserved_at = Column(DateTime, nullable=True)

    dlq = Column(Boolean, nullable=False, default=False)
    error_reason = Column(Text, nullable=True)

    correlation_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_async_tasks_claim", "dlq", "visible_at", "priority", "id"),
    )
