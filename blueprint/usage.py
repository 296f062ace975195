# blueprint/usage.py
"""Per-call usage log (`ai_metrics`) and the reports built from it."""

import datetime
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from blueprint import db as dbmod
from blueprint.config import COST_PER_TOKEN
from blueprint.monitoring import logger


def calculate_cost(model_id: str, input_tokens: int, output_tokens: int) -> float:
    """USD cost from the static rate table; unknown models cost 0."""
    rates = COST_PER_TOKEN.get(model_id)
    if not rates:
        return 0.0
    return input_tokens * rates["input"] + output_tokens * rates["output"]


@dataclass
class UsageRecord:
    user_id: str
    session_id: Optional[str]
    model_id: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    latency_ms: int = 0
    success: bool = True
    error_message: Optional[str] = None
    created_at: Optional[datetime.datetime] = None


class UsageRecorder:
    """Append-only writer. Failures are logged, never raised."""

    def record(self, rec: UsageRecord) -> bool:
        fields = asdict(rec)
        fields["created_at"] = rec.created_at or dbmod.utcnow()
        try:
            dbmod.insert_usage_metric(fields)
            return True
        except Exception as e:
            logger.warning("usage metric write failed",
                           extra={"user_id": rec.user_id, "model": rec.model_id, "error": str(e)})
            return False


def _period_start(period: str, now: datetime.datetime) -> datetime.datetime:
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "month":
        start = start.replace(day=1)
    elif period != "day":
        raise ValueError(f"period must be 'day' or 'month', got {period!r}")
    return start


def get_user_usage(user_id: str, period: str = "day",
                   now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    rows = dbmod.list_usage_metrics(user_id=user_id,
                                    since=_period_start(period, now or dbmod.utcnow()))
    count = len(rows)
    successes = sum(1 for r in rows if r["success"])
    return {
        "period": period,
        "total_cost": sum(r["cost"] or 0.0 for r in rows),
        "total_tokens": sum((r["input_tokens"] or 0) + (r["output_tokens"] or 0) for r in rows),
        "request_count": count,
        "success_rate": (successes / count * 100.0) if count else 0.0,
    }


def get_session_metrics(session_id: str) -> Dict[str, Any]:
    rows = dbmod.list_usage_metrics(session_id=session_id)
    if not rows:
        return {"total_cost": 0.0, "total_time": 0.0, "average_latency_ms": 0.0, "calls": 0}
    elapsed = (rows[-1]["created_at"] - rows[0]["created_at"]).total_seconds()
    return {
        "total_cost": sum(r["cost"] or 0.0 for r in rows),
        "total_time": elapsed,
        "average_latency_ms": sum(r["latency_ms"] or 0 for r in rows) / len(rows),
        "calls": len(rows),
    }
