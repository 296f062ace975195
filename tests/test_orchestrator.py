# tests/test_orchestrator.py
"""
End-to-end export pipeline against a disposable SQLite DB, local storage and
the mock provider.
"""
import datetime
import io
import json
import zipfile

import pytest

from blueprint import db as dbmod
from blueprint.config import ExportLimits
from blueprint.errors import (
    ExportValidationError, InvalidCredentialsError, SessionNotFoundError,
)
from blueprint.orchestrator import format_transcript, project_summary
from blueprint.storage import LocalExportStorage


class FailingProvider:
    def complete(self, spec, system_instruction, messages, timeout):
        raise InvalidCredentialsError("bad key")


class BrokenStorage(LocalExportStorage):
    def upload(self, path, data, content_type):
        raise OSError("disk full")


def _export_count():
    from blueprint.models import ExportRecord
    with dbmod.session_scope() as db:
        return db.query(ExportRecord).count()


def test_export_completes_with_archive(seeded_session, make_orchestrator):
    orch = make_orchestrator()
    record = orch.start_export(seeded_session, "user-1")

    assert record["status"] == "completed"
    assert record["progress"] == 100
    assert record["version"] == "1.0.0"
    assert record["storage_url"].startswith("file://")
    assert record["storage_path"].startswith("user-1/sess-1/taskflow-v1.0.0-")
    meta = record["metadata"]
    assert meta["stage"] == "completed"
    assert meta["modules"] == ["auth", "database", "api", "ui", "payments", "analytics"]
    assert "supabase" in meta["servers"]
    assert meta["file_count"] == len(meta["files"])

    data = orch.storage.download(record["storage_path"])
    assert record["file_size"] == len(data)
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        names = set(zf.namelist())
        for expected in ("README.md", "BUILD_INSTRUCTIONS.md", "PLAN.md", "config/answers.json",
                         "config/project.json", "prompts/setup/initial-setup.md"):
            assert expected in names
        for module in ("auth", "database", "api", "ui", "payments", "analytics"):
            assert f"modules/{module}/README.md" in names
        project = json.loads(zf.read("config/project.json"))
    assert project["version"] == "1.0.0"


def test_incomplete_session_rejected_without_record(seed, make_orchestrator):
    seed(phases=5)
    orch = make_orchestrator()
    with pytest.raises(ExportValidationError):
        orch.start_export("sess-1", "user-1")
    assert _export_count() == 0


def test_unanswered_phases_rejected(seed, make_orchestrator):
    seed(phases=10, current_phase=12)
    with pytest.raises(ExportValidationError) as exc:
        make_orchestrator().start_export("sess-1", "user-1")
    assert "10 answered" in exc.value.message


def test_other_users_session_is_not_found(seeded_session, make_orchestrator):
    with pytest.raises(SessionNotFoundError):
        make_orchestrator().start_export(seeded_session, "intruder")
    assert _export_count() == 0


@pytest.mark.parametrize("fmt,version", [("tarball", None), ("archive", "1.0")])
def test_invalid_request_rejected(seeded_session, make_orchestrator, fmt, version):
    with pytest.raises(ExportValidationError):
        make_orchestrator().start_export(seeded_session, "user-1", fmt, version)


def test_oversized_archive_fails_without_upload(seeded_session, tmp_path, make_orchestrator):
    orch = make_orchestrator(limits=ExportLimits(max_archive_bytes=1000))
    record = orch.start_export(seeded_session, "user-1")

    assert record["status"] == "failed"
    assert "exceeds" in record["error_message"]
    assert record["metadata"]["failed_stage"] == "validating_size"
    assert record["metadata"]["error_code"] == "E_SIZE_LIMIT"
    assert not (tmp_path / "exports").exists()
    assert orch.list_export_history(seeded_session) == []


def test_upload_failure_marks_record_failed(seeded_session, tmp_path, make_orchestrator):
    orch = make_orchestrator(storage=BrokenStorage(tmp_path / "exports"))
    record = orch.start_export(seeded_session, "user-1")
    assert record["status"] == "failed"
    assert record["metadata"]["error_code"] == "E_STORAGE"
    assert record["metadata"]["failed_stage"] == "uploading"


def test_ai_failure_marks_record_failed(seeded_session, make_orchestrator):
    orch = make_orchestrator(provider=FailingProvider())
    record = orch.start_export(seeded_session, "user-1")
    assert record["status"] == "failed"
    assert record["metadata"]["error_code"] == "E_GENERATION"
    assert record["metadata"]["failed_stage"] == "transforming"
    assert "bad key" in record["error_message"]


def test_re_export_increments_patch_version(seeded_session, make_orchestrator):
    orch = make_orchestrator()
    first = orch.start_export(seeded_session, "user-1")
    second = orch.re_export(seeded_session, "user-1")
    assert (first["version"], second["version"]) == ("1.0.0", "1.0.1")
    assert first["storage_path"] != second["storage_path"]

    history = orch.list_export_history(seeded_session, "user-1")
    assert [h["version"] for h in history] == ["1.0.1", "1.0.0"]
    assert history[0]["export_id"] == second["id"]
    assert history[0]["size"] == second["file_size"]


def test_explicit_version_then_patch(seeded_session, make_orchestrator):
    orch = make_orchestrator()
    assert orch.start_export(seeded_session, "user-1", version="2.0.0")["version"] == "2.0.0"
    assert orch.re_export(seeded_session, "user-1")["version"] == "2.0.1"


def test_failed_export_does_not_consume_version(seeded_session, make_orchestrator):
    make_orchestrator(provider=FailingProvider()).start_export(seeded_session, "user-1")
    assert make_orchestrator().start_export(seeded_session, "user-1")["version"] == "1.0.0"


def test_history_of_other_users_session_is_not_found(seeded_session, make_orchestrator):
    with pytest.raises(SessionNotFoundError):
        make_orchestrator().list_export_history(seeded_session, "intruder")


def test_in_flight_export_is_reused_until_stale(seeded_session, make_orchestrator, clock):
    orch = make_orchestrator(clock=clock)
    first, ctx = orch.begin_export(seeded_session, "user-1")
    assert ctx is not None
    assert first["status"] == "processing" and first["progress"] == 0

    again, ctx2 = orch.begin_export(seeded_session, "user-1")
    assert ctx2 is None
    assert again["id"] == first["id"]

    clock.advance(minutes=16)
    fresh, ctx3 = orch.begin_export(seeded_session, "user-1")
    assert ctx3 is not None and fresh["id"] != first["id"]
    stale = orch.get_export_status(first["id"])
    assert stale["status"] == "failed"
    assert "timed out" in stale["error_message"]


def test_quota_warnings_recorded(seeded_session, make_orchestrator):
    for i in range(100):
        dbmod.insert_export({"id": f"old-{i}", "session_id": "other", "user_id": "user-1",
                             "status": "completed", "file_size": 6 * 1024 * 1024})
    orch = make_orchestrator()
    warnings = orch.quota_warnings("user-1")
    assert len(warnings) == 2
    record = orch.start_export(seeded_session, "user-1")
    assert record["status"] == "completed"
    assert len(record["metadata"]["warnings"]) == 2


def test_download_url_for_completed_export(seeded_session, make_orchestrator, clock):
    orch = make_orchestrator(clock=clock)
    record = orch.start_export(seeded_session, "user-1")
    link = orch.create_download_url(record["id"], "user-1", expires_in=600)
    assert "?expires=" in link["url"]
    assert link["expires_at"] == "2025-01-15T12:10:00Z"

    with pytest.raises(SessionNotFoundError):
        orch.create_download_url(record["id"], "intruder")


def test_download_url_requires_completed_export(seeded_session, make_orchestrator):
    orch = make_orchestrator()
    record, _ = orch.begin_export(seeded_session, "user-1")
    with pytest.raises(ExportValidationError):
        orch.create_download_url(record["id"], "user-1")


def test_delete_export_removes_file_and_record(seeded_session, make_orchestrator):
    orch = make_orchestrator()
    record = orch.start_export(seeded_session, "user-1")
    assert orch.delete_export(record["id"], "user-1") is True
    assert not orch.storage.exists(record["storage_path"])
    with pytest.raises(SessionNotFoundError):
        orch.get_export_status(record["id"])


def test_cleanup_removes_exports_past_retention(seeded_session, make_orchestrator, clock):
    orch = make_orchestrator(clock=clock)
    record = orch.start_export(seeded_session, "user-1")
    assert orch.cleanup_expired(now=clock() + datetime.timedelta(days=29)) == 0
    assert orch.cleanup_expired(now=clock() + datetime.timedelta(days=31)) == 1
    assert not orch.storage.exists(record["storage_path"])


@pytest.mark.parametrize("fmt,ext", [("raw-structured", "json"), ("plain-document", "md")])
def test_alternate_formats(seeded_session, make_orchestrator, fmt, ext):
    orch = make_orchestrator()
    record = orch.start_export(seeded_session, "user-1", fmt)
    assert record["status"] == "completed"
    assert record["storage_path"].endswith(f".{ext}")
    data = orch.storage.download(record["storage_path"]).decode("utf-8")
    assert "TaskFlow" in data


def test_transcript_and_summary():
    answers = [
        {"phase_number": 1, "question_id": "q1", "question_text": "Vision?",
         "answer_text": "A tracker\nwith more detail"},
        {"phase_number": 2, "question_id": "q2", "question_text": None, "answer_text": "Teams"},
    ]
    templates = [{"phase_number": 1, "title": "Vision"}]
    text = format_transcript({"name": "TaskFlow"}, templates, answers)
    assert "## Phase 1: Vision" in text
    assert "## Phase 2: Untitled phase" in text
    assert "Q: q2" in text
    assert project_summary(answers) == "A tracker"
    assert project_summary([]) == ""
