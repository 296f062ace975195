# blueprint/db.py
import os
import json
import datetime
from contextlib import contextmanager
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import create_engine, func, text
from sqlalchemy.orm import sessionmaker, declarative_base, Session

from blueprint.monitoring import logger

# Default dev DB; override with DATABASE_URL
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./blueprint_export.db")


def _make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def reconfigure(url: str):
    """Reconfigure the DB engine and session factory at runtime (for tests)."""
    global engine, SessionLocal
    engine = _make_engine(url)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    # Create tables if they don't exist
    try:
        import blueprint.models as models  # noqa: F401
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        # don't crash the app at import time
        logger.warning("DB init failed", extra={"error": str(e)})


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


@contextmanager
def session_scope():
    db: Session = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _iso(value):
    return value.isoformat() if hasattr(value, "isoformat") else value


def _to_dict(row) -> Dict[str, Any]:
    out = {}
    for col in row.__table__.columns:
        out[col.name] = getattr(row, col.name)
    return out


def _export_to_dict(row) -> Dict[str, Any]:
    d = _to_dict(row)
    d["metadata"] = json.loads(d.pop("metadata_json") or "{}")
    for k in ("created_at", "updated_at", "completed_at"):
        d[k] = _iso(d[k])
    return d


# ---------------------------------------------------------------------------
# Sessions / answers / phase templates (read side of the pipeline)
# ---------------------------------------------------------------------------
def get_session(session_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Owner-checked get: returns None when missing or owned by another user."""
    from blueprint.models import WorkflowSession
    with session_scope() as db:
        q = db.query(WorkflowSession).filter(WorkflowSession.id == session_id)
        if user_id is not None:
            q = q.filter(WorkflowSession.user_id == user_id)
        row = q.first()
        return _to_dict(row) if row else None


def list_answers(session_id: str) -> List[Dict[str, Any]]:
    from blueprint.models import Answer
    with session_scope() as db:
        rows = (
            db.query(Answer)
            .filter(Answer.session_id == session_id)
            .order_by(Answer.phase_number, Answer.id)
            .all()
        )
        return [_to_dict(r) for r in rows]


def count_answered_phases(session_id: str) -> int:
    """Number of distinct phases with at least one non-empty answer."""
    from blueprint.models import Answer
    with session_scope() as db:
        return (
            db.query(func.count(func.distinct(Answer.phase_number)))
            .filter(Answer.session_id == session_id, Answer.answer_text != "")
            .scalar()
            or 0
        )


def list_phase_templates() -> List[Dict[str, Any]]:
    from blueprint.models import PhaseTemplate
    with session_scope() as db:
        rows = db.query(PhaseTemplate).order_by(PhaseTemplate.phase_number).all()
        return [_to_dict(r) for r in rows]


def get_user_tier(user_id: str) -> Optional[str]:
    from blueprint.models import Subscription
    with session_scope() as db:
        row = (
            db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status == "active")
            .first()
        )
        return row.tier if row else None


# Seeding helpers; the questionnaire writes these rows in production.
def create_session(session_id: str, user_id: str, name: str = "Untitled project",
                   current_phase: int = 0, status: str = "in_progress") -> Dict[str, Any]:
    from blueprint.models import WorkflowSession
    with session_scope() as db:
        row = WorkflowSession(id=session_id, user_id=user_id, name=name,
                              current_phase=current_phase, status=status)
        db.add(row)
        db.flush()
        return _to_dict(row)


def save_answer(session_id: str, phase_number: int, question_id: str,
                question_text: str, answer_text: str, answer_type: str = "text") -> None:
    from blueprint.models import Answer
    with session_scope() as db:
        row = (
            db.query(Answer)
            .filter(Answer.session_id == session_id,
                    Answer.phase_number == phase_number,
                    Answer.question_id == question_id)
            .first()
        )
        if row is None:
            row = Answer(session_id=session_id, phase_number=phase_number, question_id=question_id)
            db.add(row)
        row.question_text = question_text
        row.answer_text = answer_text
        row.answer_type = answer_type


def save_phase_template(phase_number: int, title: str, description: str = "") -> None:
    from blueprint.models import PhaseTemplate
    with session_scope() as db:
        row = db.query(PhaseTemplate).filter(PhaseTemplate.phase_number == phase_number).first()
        if row is None:
            row = PhaseTemplate(phase_number=phase_number)
            db.add(row)
        row.title = title
        row.description = description


def set_user_tier(user_id: str, tier: str) -> None:
    from blueprint.models import Subscription
    with session_scope() as db:
        row = db.query(Subscription).filter(Subscription.user_id == user_id).first()
        if row is None:
            row = Subscription(user_id=user_id)
            db.add(row)
        row.tier = tier
        row.status = "active"


# ---------------------------------------------------------------------------
# Export records
# ---------------------------------------------------------------------------
def insert_export(fields: Dict[str, Any]) -> Dict[str, Any]:
    from blueprint.models import ExportRecord
    data = dict(fields)
    meta = data.pop("metadata", None)
    with session_scope() as db:
        row = ExportRecord(**data, metadata_json=json.dumps(meta or {}))
        db.add(row)
        db.flush()
        return _export_to_dict(row)


def update_export(export_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Single-row update keyed by primary id. Returns the updated record."""
    from blueprint.models import ExportRecord
    data = dict(fields)
    with session_scope() as db:
        row = db.get(ExportRecord, export_id)
        if row is None:
            return None
        if "metadata" in data:
            current = json.loads(row.metadata_json or "{}")
            current.update(data.pop("metadata") or {})
            row.metadata_json = json.dumps(current)
        for key, value in data.items():
            setattr(row, key, value)
        row.updated_at = utcnow()
        db.flush()
        return _export_to_dict(row)


def get_export(export_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    from blueprint.models import ExportRecord
    with session_scope() as db:
        q = db.query(ExportRecord).filter(ExportRecord.id == export_id)
        if user_id is not None:
            q = q.filter(ExportRecord.user_id == user_id)
        row = q.first()
        return _export_to_dict(row) if row else None


def find_processing_export(session_id: str) -> Optional[Dict[str, Any]]:
    from blueprint.models import ExportRecord
    with session_scope() as db:
        row = (
            db.query(ExportRecord)
            .filter(ExportRecord.session_id == session_id, ExportRecord.status == "processing")
            .order_by(ExportRecord.created_at.desc())
            .first()
        )
        return _export_to_dict(row) if row else None


def user_export_totals(user_id: str) -> Tuple[int, int]:
    """(completed export count, total stored bytes) for quota warnings."""
    from blueprint.models import ExportRecord
    with session_scope() as db:
        count, total = (
            db.query(func.count(ExportRecord.id), func.coalesce(func.sum(ExportRecord.file_size), 0))
            .filter(ExportRecord.user_id == user_id, ExportRecord.status == "completed")
            .one()
        )
        return int(count or 0), int(total or 0)


def list_exports_created_before(cutoff: datetime.datetime) -> List[Dict[str, Any]]:
    from blueprint.models import ExportRecord
    with session_scope() as db:
        rows = db.query(ExportRecord).filter(ExportRecord.created_at < cutoff).all()
        return [_export_to_dict(r) for r in rows]


def delete_export(export_id: str) -> bool:
    from blueprint.models import ExportRecord
    with session_scope() as db:
        row = db.get(ExportRecord, export_id)
        if row is None:
            return False
        db.delete(row)
        return True


def insert_export_version(session_id: str, export_id: str, version: str,
                          file_size: int, storage_url: Optional[str]) -> None:
    from blueprint.models import ExportVersion
    with session_scope() as db:
        db.add(ExportVersion(session_id=session_id, export_id=export_id, version=version,
                             file_size=file_size, storage_url=storage_url, created_at=utcnow()))


def list_export_versions(session_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """History rows newest first."""
    from blueprint.models import ExportVersion
    with session_scope() as db:
        q = (
            db.query(ExportVersion)
            .filter(ExportVersion.session_id == session_id)
            .order_by(ExportVersion.created_at.desc(), ExportVersion.id.desc())
        )
        if limit is not None:
            q = q.limit(limit)
        out = []
        for r in q.all():
            d = _to_dict(r)
            d["created_at"] = _iso(d["created_at"])
            out.append(d)
        return out


# ---------------------------------------------------------------------------
# Usage metrics
# ---------------------------------------------------------------------------
def insert_usage_metric(fields: Dict[str, Any]) -> None:
    from blueprint.models import UsageMetric
    with session_scope() as db:
        db.add(UsageMetric(**fields))


def list_usage_metrics(user_id: Optional[str] = None, session_id: Optional[str] = None,
                       since: Optional[datetime.datetime] = None) -> List[Dict[str, Any]]:
    from blueprint.models import UsageMetric
    with session_scope() as db:
        q = db.query(UsageMetric)
        if user_id is not None:
            q = q.filter(UsageMetric.user_id == user_id)
        if session_id is not None:
            q = q.filter(UsageMetric.session_id == session_id)
        if since is not None:
            q = q.filter(UsageMetric.created_at >= since)
        return [_to_dict(r) for r in q.order_by(UsageMetric.created_at, UsageMetric.id).all()]


# ---------------------------------------------------------------------------
# Durable cache tier
# ---------------------------------------------------------------------------
def get_cache_entry(key: str, now: datetime.datetime) -> Optional[Dict[str, Any]]:
    from blueprint.models import CacheEntry
    with session_scope() as db:
        row = (
            db.query(CacheEntry)
            .filter(CacheEntry.key == key, CacheEntry.expires_at > now)
            .first()
        )
        return _to_dict(row) if row else None


def increment_cache_hits(key: str) -> None:
    from blueprint.models import CacheEntry
    with session_scope() as db:
        db.query(CacheEntry).filter(CacheEntry.key == key).update(
            {CacheEntry.hit_count: CacheEntry.hit_count + 1}, synchronize_session=False
        )


def upsert_cache_entry(key: str, value: str, expires_at: datetime.datetime) -> None:
    from blueprint.models import CacheEntry
    with session_scope() as db:
        row = db.get(CacheEntry, key)
        if row is None:
            row = CacheEntry(key=key, hit_count=0)
            db.add(row)
        row.value = value
        row.expires_at = expires_at


def delete_cache_entries(pattern: Optional[str] = None,
                         expired_before: Optional[datetime.datetime] = None) -> int:
    """Delete keys containing `pattern`, or entries expiring at/before `expired_before`."""
    from blueprint.models import CacheEntry
    with session_scope() as db:
        q = db.query(CacheEntry)
        if pattern is not None:
            q = q.filter(CacheEntry.key.like(f"%{pattern}%"))
        if expired_before is not None:
            q = q.filter(CacheEntry.expires_at <= expired_before)
        return q.delete(synchronize_session=False)


# ---------------------------------------------------------------------------
# Rate-limit events
# ---------------------------------------------------------------------------
def count_rate_events(user_id: str, since: datetime.datetime
                      ) -> Tuple[int, Optional[datetime.datetime]]:
    """(count, oldest timestamp) of events for `user_id` strictly after `since`."""
    from blueprint.models import RateLimitEvent
    with session_scope() as db:
        count, oldest = (
            db.query(func.count(RateLimitEvent.id), func.min(RateLimitEvent.created_at))
            .filter(RateLimitEvent.user_id == user_id, RateLimitEvent.created_at > since)
            .one()
        )
        return int(count or 0), oldest


def insert_rate_event(user_id: str, at: datetime.datetime) -> None:
    from blueprint.models import RateLimitEvent
    with session_scope() as db:
        db.add(RateLimitEvent(user_id=user_id, created_at=at))


def acquire_rate_event(user_id: str, now: datetime.datetime,
                       windows: List[Tuple[int, int]]
                       ) -> Tuple[List[Tuple[int, Optional[datetime.datetime]]], bool]:
    """
    Count `user_id`'s events in each (seconds, ceiling) window and, when no
    window is full, insert an event at `now`. Counting and inserting share one
    transaction; on PostgreSQL a per-user advisory lock serialises callers
    across processes.

    Returns the per-window (count, oldest) seen before the insert and whether
    the event was recorded.
    """
    from blueprint.models import RateLimitEvent
    with session_scope() as db:
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:k))"), {"k": f"rate:{user_id}"})
        counts = []
        for seconds, _ in windows:
            count, oldest = (
                db.query(func.count(RateLimitEvent.id), func.min(RateLimitEvent.created_at))
                .filter(RateLimitEvent.user_id == user_id,
                        RateLimitEvent.created_at > now - datetime.timedelta(seconds=seconds))
                .one()
            )
            counts.append((int(count or 0), oldest))
        allowed = all(count < ceiling for (count, _), (_, ceiling) in zip(counts, windows))
        if allowed:
            db.add(RateLimitEvent(user_id=user_id, created_at=now))
        return counts, allowed


def purge_rate_events(before: datetime.datetime) -> int:
    from blueprint.models import RateLimitEvent
    with session_scope() as db:
        return (
            db.query(RateLimitEvent)
            .filter(RateLimitEvent.created_at <= before)
            .delete(synchronize_session=False)
        )
