"""Video upload telemetry event model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, JSON, String
from sqlalchemy.sql import func

from database import Base


class VideoTelemetryEvent(Base):
    """Structured telemetry event for short-video upload analytics."""

    __tablename__ = "video_telemetry_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    event_name = Column(String, nullable=False, index=True)
    entity_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default="ok", index=True)
    details_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
