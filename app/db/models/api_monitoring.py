"""
API Monitoring Model - one row per dispatched outbound request
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, Index

from app.core.time_utils import utcnow
from app.db.database import Base


class ApiMonitoringRecord(Base):
    """Outcome of one ResilientHttpClient.request() that reached the wire"""

    __tablename__ = "api_monitoring"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service = Column(String(50), nullable=False)
    request_path = Column(String(500), nullable=False)
    method = Column(String(10), nullable=False)
    response_time_ms = Column(Integer, nullable=False)
    # None when no response was ever received (network failure)
    status_code = Column(Integer, nullable=True)
    success = Column(Boolean, nullable=False)
    correlation_id = Column(String(64), nullable=True)
    batch_id = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_api_monitoring_service_timestamp", "service", "timestamp"),
    )
