"""
Rate limit models - token buckets and per-service limits
"""
from sqlalchemy import Column, Integer, String, Float, DateTime

from app.core.time_utils import utcnow
from app.db.database import Base


class RateLimitBucket(Base):
    """Token bucket for one service:operation key. Invariant: 0 <= tokens <= capacity."""

    __tablename__ = "rate_limit_buckets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    bucket_key = Column(String(150), unique=True, nullable=False)
    tokens = Column(Float, nullable=False)
    capacity = Column(Integer, nullable=False)
    # epoch seconds of the last lazy refill
    last_refill = Column(Float, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class RateLimitConfig(Base):
    """Per-service limits, read-only for the limiter"""

    __tablename__ = "rate_limit_config"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_name = Column(String(50), unique=True, nullable=False)
    max_requests_per_minute = Column(Integer, nullable=False)
    max_requests_per_hour = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
