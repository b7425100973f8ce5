import uuid
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import Column, Integer, String, Text, Float, JSON, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from pgvector.sqlalchemy import Vector
from app.db.database import Base

# all-MiniLM-L6-v2
EMBEDDING_DIM = 384


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskType(str, Enum):
    VISION = "vision"
    EMBEDDINGS = "embeddings"


class SearchType(str, Enum):
    TEXT = "text"
    VISUAL = "visual"
    HYBRID = "hybrid"


class Screenshot(Base):
    __tablename__ = "screenshots"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    filename = Column(String, nullable=False)
    file_path = Column(String, nullable=False)
    file_size = Column(Integer, default=0)
    mime_type = Column(String, default="image/png")
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    uploaded_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processing_status = Column(String(20), default=ProcessingStatus.PENDING.value, index=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    content = relationship(
        "ScreenshotContent", uselist=False, back_populates="screenshot", lazy="selectin"
    )
    tasks = relationship(
        "ProcessingTask", back_populates="screenshot", order_by="ProcessingTask.created_at"
    )


class ScreenshotContent(Base):
    __tablename__ = "screenshot_content"

    id = Column(String(36), primary_key=True, default=_uuid)
    screenshot_id = Column(
        String(36), ForeignKey("screenshots.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    ocr_text = Column(Text, nullable=True)
    visual_description = Column(Text, nullable=True)
    dominant_colors = Column(JSON(none_as_null=True), nullable=True)
    # {"ui_elements": [...], "text_snippets": [...], "context": "..."}
    detected_elements = Column(JSON(none_as_null=True), nullable=True)
    processing_cost = Column(Float, default=0.0)
    ocr_completed_at = Column(DateTime(timezone=True), nullable=True)
    vision_completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    screenshot = relationship("Screenshot", back_populates="content")


class ScreenshotEmbedding(Base):
    __tablename__ = "screenshot_embeddings"

    id = Column(String(36), primary_key=True, default=_uuid)
    screenshot_id = Column(
        String(36), ForeignKey("screenshots.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    # NULL means "not computed", never "empty"
    text_embedding = Column(Vector(EMBEDDING_DIM), nullable=True)
    visual_embedding = Column(Vector(EMBEDDING_DIM), nullable=True)
    combined_embedding = Column(Vector(EMBEDDING_DIM), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ProcessingTask(Base):
    __tablename__ = "processing_queue"

    id = Column(String(36), primary_key=True, default=_uuid)
    screenshot_id = Column(
        String(36), ForeignKey("screenshots.id", ondelete="CASCADE"), nullable=False, index=True
    )
    task_type = Column(String(20), nullable=False)
    priority = Column(Integer, default=0)
    attempts = Column(Integer, default=0)
    max_attempts = Column(Integer, default=3)
    status = Column(String(20), default=ProcessingStatus.PENDING.value, index=True)
    error_message = Column(Text, nullable=True)
    scheduled_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    screenshot = relationship("Screenshot", back_populates="tasks")

    __table_args__ = (
        Index("ix_processing_queue_claim", "screenshot_id", "status", "priority"),
    )


class SearchHistory(Base):
    __tablename__ = "search_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    query = Column(Text, nullable=False)
    search_type = Column(String(20), default=SearchType.HYBRID.value)
    # [{"screenshot_id", "confidence", "match_type"}]
    results = Column(JSON(none_as_null=True), nullable=True)
    result_count = Column(Integer, default=0)
    searched_at = Column(DateTime(timezone=True), default=utcnow, index=True)
