# blueprint/models.py
from sqlalchemy import (
    Boolean, Column, DateTime, Float, Integer, String, Text, UniqueConstraint,
)

from blueprint.db import Base, utcnow


def _now():
    return utcnow()


class WorkflowSession(Base):
    """A questionnaire session. Read-only to the export pipeline."""

    __tablename__ = "sessions"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(128), index=True, nullable=False)
    name = Column(String(255), nullable=False, default="Untitled project")
    current_phase = Column(Integer, nullable=False, default=0)
    status = Column(String(32), nullable=False, default="in_progress")
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)


class Answer(Base):
    __tablename__ = "answers"
    __table_args__ = (
        UniqueConstraint("session_id", "phase_number", "question_id", name="uq_answer_question"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(64), index=True, nullable=False)
    phase_number = Column(Integer, nullable=False)
    question_id = Column(String(128), nullable=False)
    question_text = Column(Text, nullable=False, default="")
    answer_text = Column(Text, nullable=False, default="")
    answer_type = Column(String(32), nullable=False, default="text")
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)


class PhaseTemplate(Base):
    __tablename__ = "phase_templates"

    id = Column(Integer, primary_key=True, index=True)
    phase_number = Column(Integer, unique=True, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), unique=True, index=True, nullable=False)
    tier = Column(String(32), nullable=False, default="free")
    status = Column(String(32), nullable=False, default="active")


class ExportRecord(Base):
    __tablename__ = "exports"

    id = Column(String(64), primary_key=True)
    session_id = Column(String(64), index=True, nullable=False)
    user_id = Column(String(128), index=True, nullable=False)
    format = Column(String(32), nullable=False, default="archive")
    status = Column(String(32), nullable=False, default="processing")
    progress = Column(Integer, nullable=False, default=0)
    progress_message = Column(String(255), nullable=True)
    version = Column(String(32), nullable=True)
    file_size = Column(Integer, nullable=True)
    storage_path = Column(String(512), nullable=True)
    storage_url = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, index=True)
    updated_at = Column(DateTime, default=_now, onupdate=_now)
    completed_at = Column(DateTime, nullable=True)


class ExportVersion(Base):
    """Immutable history row written once per completed export."""

    __tablename__ = "export_versions"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(64), index=True, nullable=False)
    export_id = Column(String(64), nullable=False)
    version = Column(String(32), nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    storage_url = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, index=True)


class UsageMetric(Base):
    __tablename__ = "ai_metrics"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), index=True, nullable=False)
    session_id = Column(String(64), index=True, nullable=True)
    model_id = Column(String(128), nullable=False)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    cost = Column(Float, nullable=False, default=0.0)
    latency_ms = Column(Integer, nullable=False, default=0)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, index=True)


class CacheEntry(Base):
    __tablename__ = "ai_cache"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    hit_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_now)


class RateLimitEvent(Base):
    __tablename__ = "rate_limit_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), index=True, nullable=False)
    created_at = Column(DateTime, default=_now, index=True, nullable=False)
