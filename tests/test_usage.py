# tests/test_usage.py
import datetime

import pytest

from blueprint.usage import (
    UsageRecord, UsageRecorder, calculate_cost, get_session_metrics, get_user_usage,
)

NOW = datetime.datetime(2025, 1, 15, 12, 0, 0)


def _record(created_at, success=True, session_id="sess-1", tokens=(1000, 500), latency=200):
    model = "claude-3-5-sonnet-20241022"
    UsageRecorder().record(UsageRecord(
        user_id="user-1", session_id=session_id, model_id=model,
        input_tokens=tokens[0], output_tokens=tokens[1],
        cost=calculate_cost(model, *tokens) if success else 0.0,
        latency_ms=latency, success=success, created_at=created_at,
    ))


def test_cost_from_rate_table():
    assert calculate_cost("gpt-4o", 1000, 1000) == pytest.approx(0.0025 + 0.01)
    assert calculate_cost("unknown-model", 1000, 1000) == 0.0


def test_daily_usage_counts_only_today(test_db):
    _record(NOW - datetime.timedelta(hours=1))
    _record(NOW - datetime.timedelta(hours=2), success=False, tokens=(0, 0))
    _record(NOW - datetime.timedelta(days=3))

    day = get_user_usage("user-1", "day", now=NOW)
    assert day["request_count"] == 2
    assert day["total_tokens"] == 1500
    assert day["success_rate"] == pytest.approx(50.0)
    assert day["total_cost"] == pytest.approx(calculate_cost("claude-3-5-sonnet-20241022", 1000, 500))

    month = get_user_usage("user-1", "month", now=NOW)
    assert month["request_count"] == 3


def test_usage_without_calls(test_db):
    summary = get_user_usage("nobody", "day", now=NOW)
    assert summary["request_count"] == 0
    assert summary["success_rate"] == 0.0


def test_invalid_period(test_db):
    with pytest.raises(ValueError):
        get_user_usage("user-1", "week", now=NOW)


def test_session_metrics(test_db):
    _record(NOW, latency=100)
    _record(NOW + datetime.timedelta(seconds=30), latency=300)
    _record(NOW, session_id="other")

    metrics = get_session_metrics("sess-1")
    assert metrics["calls"] == 2
    assert metrics["total_time"] == pytest.approx(30.0)
    assert metrics["average_latency_ms"] == pytest.approx(200.0)
    assert get_session_metrics("none")["calls"] == 0


def test_recorder_swallows_write_failures(monkeypatch):
    from blueprint import db as dbmod

    def boom(fields):
        raise RuntimeError("db down")

    monkeypatch.setattr(dbmod, "insert_usage_metric", boom)
    assert UsageRecorder().record(UsageRecord("u", None, "gpt-4o")) is False
