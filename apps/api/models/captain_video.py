"""Captain video record model."""

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


PROCESS_STATUSES = ("queued", "processing", "ready", "failed")


class CaptainVideo(Base):
    """Durable record tracking one uploaded video from original to ready."""

    __tablename__ = "captain_videos"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    charter_id = Column(String, nullable=True, index=True)

    # Source object
    original_url = Column(String, nullable=False)
    blob_key = Column(String, nullable=True)

    # Trim request + client-observed metadata
    trim_start_sec = Column(Float, nullable=False, default=0.0)
    trim_end_sec = Column(Float, nullable=True)
    original_duration_sec = Column(Float, nullable=True)
    original_width = Column(Integer, nullable=True)
    original_height = Column(Integer, nullable=True)
    processed_duration_sec = Column(Float, nullable=True)
    processed_width = Column(Integer, nullable=True)
    processed_height = Column(Integer, nullable=True)

    process_status = Column(String, nullable=False, default="queued", index=True)  # queued, processing, ready, failed

    # Outputs
    ready_720p_url = Column(String, nullable=True)
    normalized_blob_key = Column(String, nullable=True)
    thumbnail_url = Column(String, nullable=True)
    thumbnail_blob_key = Column(String, nullable=True)

    # Diagnostics
    error_message = Column(String, nullable=True)
    last_dispatch_error = Column(String, nullable=True)
    dispatch_attempts = Column(Integer, nullable=False, default=0)
    did_fallback = Column(Boolean, nullable=False, default=False)
    fallback_reason = Column(String, nullable=True)

    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    owner = relationship("User", back_populates="videos")
