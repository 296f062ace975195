# blueprint/orchestrator.py
"""
Export orchestrator: the staged workflow that turns a completed session into a
stored, versioned bundle.

  validating -> fetching            (errors raise, no ExportRecord is written)
  transforming -> generating -> versioning -> bundling
    -> validating_size -> uploading -> completed
                                    (errors mark the record failed, once)

start_export() runs the whole flow synchronously. The API splits it into
begin_export() (validation + record creation) and run_export() (the rest, in a
background task).
"""

import datetime
import enum
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from blueprint import db as dbmod
from blueprint import monitoring
from blueprint.bundler import ArchiveBundler, Bundle
from blueprint.cache import build_cache, generate_cache_key
from blueprint.config import (
    AI_MODELS, DOCUMENT_TASKS, EXPORT_FORMATS, EXPORT_LIMITS, SYSTEM_INSTRUCTIONS,
    TIMEOUT_CONFIG, ExportLimits, load_knowledge_base,
)
from blueprint.errors import (
    ExportError, ExportValidationError, FetchError, GatewayError, GenerationError,
    SessionNotFoundError, SizeLimitError, StorageError,
)
from blueprint.gateway import ChatMessage, GenerationOptions, ModelGateway
from blueprint.generator import DocumentGenerator, GeneratedArtifact, slugify
from blueprint.modules import ModuleSpec, build_modules, collect_servers
from blueprint.prompts import PromptGenerator
from blueprint.rate_limit import RateLimiter
from blueprint.storage import ExportStorage, build_export_storage, export_object_path
from blueprint.versioning import is_valid_version, next_version


class ExportStage(str, enum.Enum):
    VALIDATING = "validating"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    GENERATING = "generating"
    VERSIONING = "versioning"
    BUNDLING = "bundling"
    VALIDATING_SIZE = "validating_size"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


# checkpoint written when a stage starts
STAGE_PROGRESS: Dict[ExportStage, Tuple[int, str]] = {
    ExportStage.TRANSFORMING: (10, "Generating documentation with AI..."),
    ExportStage.GENERATING: (30, "Building modules and prompts..."),
    ExportStage.BUNDLING: (50, "Packaging files..."),
    ExportStage.VALIDATING_SIZE: (70, "Validating archive size..."),
    ExportStage.UPLOADING: (90, "Uploading export..."),
}

DOCUMENT_KEYS = ("overview", "build_instructions", "plan")


@dataclass
class ExportContext:
    """Everything validated and fetched before the record exists."""

    export_id: str
    user_id: str
    fmt: str
    session: Dict[str, Any]
    answers: List[Dict[str, Any]]
    phase_templates: List[Dict[str, Any]]
    requested_version: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def project_summary(answers: List[Dict[str, Any]], limit: int = 200) -> str:
    """First non-empty phase-1 answer, clipped to one line."""
    for a in answers:
        text = (a.get("answer_text") or "").strip()
        if a.get("phase_number") == 1 and text:
            line = text.splitlines()[0]
            return line if len(line) <= limit else line[:limit - 3].rstrip() + "..."
    return ""


def format_transcript(session: Dict[str, Any], phase_templates: List[Dict[str, Any]],
                      answers: List[Dict[str, Any]]) -> str:
    titles = {t["phase_number"]: t.get("title") for t in phase_templates}
    lines = [f"Project: {session.get('name') or 'Untitled project'}", ""]
    current = None
    for a in answers:
        phase = a.get("phase_number")
        if phase != current:
            current = phase
            lines.append(f"## Phase {phase}: {titles.get(phase) or 'Untitled phase'}")
        lines.append(f"Q: {a.get('question_text') or a.get('question_id')}")
        lines.append(f"A: {(a.get('answer_text') or '').strip()}")
        lines.append("")
    return "\n".join(lines).strip()


def _parse_ts(value) -> Optional[datetime.datetime]:
    if value is None or isinstance(value, datetime.datetime):
        return value
    return datetime.datetime.fromisoformat(str(value).rstrip("Z"))


class ExportOrchestrator:
    def __init__(self, storage: Optional[ExportStorage] = None, cache=None,
                 limiter: Optional[RateLimiter] = None,
                 providers: Optional[Dict[str, object]] = None,
                 limits: ExportLimits = EXPORT_LIMITS,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime.datetime] = dbmod.utcnow,
                 knowledge_base: Optional[str] = None):
        self.storage = storage if storage is not None else build_export_storage()
        self.cache = cache if cache is not None else build_cache()
        self.limiter = limiter if limiter is not None else RateLimiter()
        self.providers = providers
        self.limits = limits
        self.sleep = sleep
        self.clock = clock
        self.knowledge_base = knowledge_base if knowledge_base is not None else load_knowledge_base()
        self.generator = DocumentGenerator(limits)
        self.bundler = ArchiveBundler()

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------
    def start_export(self, session_id: str, user_id: str, fmt: str = "archive",
                     version: Optional[str] = None) -> Dict[str, Any]:
        """Validate, create the record and run every stage. Returns the final record."""
        record, ctx = self.begin_export(session_id, user_id, fmt, version)
        if ctx is None:
            return record
        return self.run_export(ctx)

    def re_export(self, session_id: str, user_id: str, fmt: str = "archive") -> Dict[str, Any]:
        """New export of the same session; the version is the latest patch + 1."""
        return self.start_export(session_id, user_id, fmt)

    def begin_export(self, session_id: str, user_id: str, fmt: str = "archive",
                     version: Optional[str] = None
                     ) -> Tuple[Dict[str, Any], Optional[ExportContext]]:
        """
        Validation and fetching, then the processing/0 record.

        Returns (record, None) when a fresh export for the session is already
        processing; that record is reused instead of starting a second one.
        """
        self.validate_request(session_id, user_id, fmt, version)
        session, answers, templates = self.fetch(session_id, user_id)
        warnings = self.quota_warnings(user_id)

        existing = self._reuse_in_flight(session_id)
        if existing is not None:
            return existing, None

        export_id = str(uuid.uuid4())
        now = self.clock()
        record = dbmod.insert_export({
            "id": export_id,
            "session_id": session_id,
            "user_id": user_id,
            "format": fmt,
            "status": "processing",
            "progress": 0,
            "progress_message": "Export queued",
            "version": version,
            "created_at": now,
            "updated_at": now,
            "metadata": {"stage": ExportStage.VALIDATING.value, "warnings": warnings},
        })
        monitoring.logger.info("export started", extra={
            "export_id": export_id, "session_id": session_id, "user_id": user_id, "format": fmt,
        })
        ctx = ExportContext(export_id=export_id, user_id=user_id, fmt=fmt, session=session,
                            answers=answers, phase_templates=templates,
                            requested_version=version, warnings=warnings)
        return record, ctx

    def run_export(self, ctx: ExportContext) -> Dict[str, Any]:
        """Stages after record creation. Any failure becomes one `failed` write."""
        stage = ExportStage.TRANSFORMING
        started = time.time()
        try:
            self._advance(ctx, stage)
            ai_docs = self.transform(ctx)
            monitoring.observe_stage(started, stage.value)

            stage, started = ExportStage.GENERATING, time.time()
            self._advance(ctx, stage)
            modules, prompts = self.build(ctx)
            monitoring.observe_stage(started, stage.value)

            stage, started = ExportStage.VERSIONING, time.time()
            version = self.resolve_version(ctx)
            monitoring.observe_stage(started, stage.value)

            stage, started = ExportStage.BUNDLING, time.time()
            self._advance(ctx, stage)
            bundle = self.bundle(ctx, modules, prompts, ai_docs, version)
            monitoring.observe_stage(started, stage.value)

            stage, started = ExportStage.VALIDATING_SIZE, time.time()
            self._advance(ctx, stage)
            self.check_size(ctx, bundle)
            monitoring.observe_stage(started, stage.value)

            stage, started = ExportStage.UPLOADING, time.time()
            self._advance(ctx, stage)
            path, url = self.upload(ctx, bundle, version)
            monitoring.observe_stage(started, stage.value)

            return self._complete(ctx, bundle, modules, version, path, url)
        except Exception as e:
            return self._fail(ctx, stage, e)

    def get_export_status(self, export_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        record = dbmod.get_export(export_id, user_id)
        if record is None:
            raise SessionNotFoundError("Export", export_id)
        return record

    def list_export_history(self, session_id: str, user_id: Optional[str] = None,
                            limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Completed versions of a session, newest first."""
        if user_id is not None and dbmod.get_session(session_id, user_id) is None:
            raise SessionNotFoundError("Session", session_id)
        return [
            {
                "version": row["version"],
                "size": row["file_size"],
                "url": row["storage_url"],
                "created_at": row["created_at"],
                "export_id": row["export_id"],
            }
            for row in dbmod.list_export_versions(session_id, limit)
        ]

    def create_download_url(self, export_id: str, user_id: Optional[str] = None,
                            expires_in: int = 3600) -> Dict[str, Any]:
        record = self.get_export_status(export_id, user_id)
        if record["status"] != "completed" or not record.get("storage_path"):
            raise ExportValidationError(f"Export {export_id} is not ready for download "
                                        f"(status: {record['status']})")
        url = self.storage.create_signed_url(record["storage_path"], expires_in)
        expires_at = self.clock() + datetime.timedelta(seconds=expires_in)
        return {"export_id": export_id, "url": url, "expires_at": expires_at.isoformat() + "Z"}

    def delete_export(self, export_id: str, user_id: Optional[str] = None) -> bool:
        """Remove the stored file and the record."""
        record = self.get_export_status(export_id, user_id)
        if record.get("storage_path"):
            self.storage.delete(record["storage_path"])
        return dbmod.delete_export(export_id)

    def cleanup_expired(self, now: Optional[datetime.datetime] = None) -> int:
        """Delete exports older than the retention period. Returns how many were removed."""
        now = now or self.clock()
        cutoff = now - datetime.timedelta(days=self.limits.retention_days)
        removed = 0
        for record in dbmod.list_exports_created_before(cutoff):
            try:
                if record.get("storage_path"):
                    self.storage.delete(record["storage_path"])
                if dbmod.delete_export(record["id"]):
                    removed += 1
            except StorageError as e:
                monitoring.logger.warning("expired export cleanup failed", extra={
                    "export_id": record["id"], "error": str(e),
                })
        if removed:
            monitoring.logger.info("expired exports removed", extra={"count": removed})
        return removed

    # ------------------------------------------------------------------
    # validating / fetching
    # ------------------------------------------------------------------
    def validate_request(self, session_id: str, user_id: str, fmt: str,
                         version: Optional[str]) -> None:
        errors = []
        if not session_id or not str(session_id).strip():
            errors.append("session_id is required")
        if not user_id or not str(user_id).strip():
            errors.append("user_id is required")
        if fmt not in EXPORT_FORMATS:
            errors.append(f"format must be one of: {', '.join(EXPORT_FORMATS)}")
        if version is not None and not is_valid_version(version):
            errors.append(f"version must look like MAJOR.MINOR.PATCH, got {version!r}")
        if errors:
            raise ExportValidationError("Invalid export request", errors=errors)

    def fetch(self, session_id: str, user_id: str
              ) -> Tuple[Dict[str, Any], List[Dict[str, Any]], List[Dict[str, Any]]]:
        required = self.limits.required_phases
        try:
            session = dbmod.get_session(session_id, user_id)
        except Exception as e:
            raise FetchError(f"Failed to load session: {e}") from e
        if session is None:
            raise SessionNotFoundError("Session", session_id)

        if (session.get("current_phase") or 0) < required:
            raise ExportValidationError(
                f"Session must be completed before export "
                f"(phase {session.get('current_phase') or 0} of {required})")

        try:
            answered = dbmod.count_answered_phases(session_id)
            answers = dbmod.list_answers(session_id)
            templates = dbmod.list_phase_templates()
        except Exception as e:
            raise FetchError(f"Failed to load session data: {e}") from e
        if answered < required:
            raise ExportValidationError(
                f"All {required} phases must be answered before export ({answered} answered)")

        session = dict(session)
        session.setdefault("summary", project_summary(answers))
        return session, answers, templates

    def quota_warnings(self, user_id: str) -> List[str]:
        count, total = dbmod.user_export_totals(user_id)
        warnings = []
        if count >= self.limits.quota_file_count:
            warnings.append(f"Export count ({count}) has reached the quota of "
                            f"{self.limits.quota_file_count}; old exports may be removed")
        if total > self.limits.quota_total_bytes:
            warnings.append(f"Stored exports use {total / (1024 * 1024):.1f}MB, above the "
                            f"{self.limits.quota_total_bytes // (1024 * 1024)}MB quota")
        return warnings

    def _reuse_in_flight(self, session_id: str) -> Optional[Dict[str, Any]]:
        existing = dbmod.find_processing_export(session_id)
        if existing is None:
            return None
        created = _parse_ts(existing.get("created_at")) or self.clock()
        age = self.clock() - created
        stale_after = datetime.timedelta(minutes=self.limits.stale_processing_minutes)
        if age < stale_after:
            monitoring.logger.info("reusing in-flight export", extra={
                "export_id": existing["id"], "session_id": session_id,
                "age_seconds": int(age.total_seconds()),
            })
            return existing
        dbmod.update_export(existing["id"], {
            "status": "failed",
            "error_message": (f"Export timed out after {self.limits.stale_processing_minutes} "
                              "minutes without finishing"),
            "completed_at": self.clock(),
        })
        monitoring.inc_export("failed", existing.get("format") or "archive")
        monitoring.logger.warning("stale export marked failed", extra={
            "export_id": existing["id"], "session_id": session_id,
        })
        return None

    # ------------------------------------------------------------------
    # transforming
    # ------------------------------------------------------------------
    def _gateway(self, ctx: ExportContext) -> ModelGateway:
        return ModelGateway(ctx.user_id, session_id=ctx.session["id"], cache=self.cache,
                            limiter=self.limiter, providers=self.providers, sleep=self.sleep)

    def _document_request(self, key: str, transcript: str) -> Tuple[str, List[ChatMessage]]:
        base = SYSTEM_INSTRUCTIONS["plan_processing" if key == "plan" else "export"]
        system = f"{base}\n\n# Knowledge base\n{self.knowledge_base}"
        messages = [ChatMessage("user", f"{DOCUMENT_TASKS[key]}\n\n# Questionnaire\n{transcript}")]
        return system, messages

    def transform(self, ctx: ExportContext) -> Dict[str, str]:
        """Overview, build instructions and plan, requested concurrently."""
        transcript = format_transcript(ctx.session, ctx.phase_templates, ctx.answers)
        gateway = self._gateway(ctx)
        spec = AI_MODELS["export"]

        def run(key: str) -> str:
            system, messages = self._document_request(key, transcript)
            cache_key = generate_cache_key({
                "task": key, "model": spec.model, "system": system,
                "messages": [m.to_dict() for m in messages],
            })
            opts = GenerationOptions(cache_key=cache_key, timeout=TIMEOUT_CONFIG["export"])
            return gateway.generate(spec, system, messages, opts)

        with ThreadPoolExecutor(max_workers=len(DOCUMENT_KEYS),
                                thread_name_prefix="export-doc") as pool:
            futures = {key: pool.submit(run, key) for key in DOCUMENT_KEYS}
            docs: Dict[str, str] = {}
            for key, future in futures.items():
                try:
                    docs[key] = future.result()
                except GatewayError as e:
                    raise GenerationError(f"AI generation failed for {key}: {e}") from e
        return docs

    # ------------------------------------------------------------------
    # generating / versioning / bundling
    # ------------------------------------------------------------------
    def build(self, ctx: ExportContext) -> Tuple[List[ModuleSpec], List[GeneratedArtifact]]:
        try:
            modules = build_modules(ctx.answers)
            prompts = PromptGenerator(modules, ctx.session.get("name") or "Untitled project",
                                      ctx.session.get("summary") or "").generate()
        except Exception as e:
            raise GenerationError(f"Module generation failed: {e}") from e
        return modules, prompts

    def resolve_version(self, ctx: ExportContext) -> str:
        history = [row["version"] for row in dbmod.list_export_versions(ctx.session["id"], limit=10)]
        return next_version(history, ctx.requested_version)

    def bundle(self, ctx: ExportContext, modules: List[ModuleSpec],
               prompts: List[GeneratedArtifact], ai_docs: Dict[str, str], version: str) -> Bundle:
        generated_at = self.clock().isoformat() + "Z"
        try:
            artifacts = self.generator.generate(ctx.session, modules, ai_docs, version,
                                                generated_at, prompts)
            return self.bundler.bundle(ctx.fmt, artifacts, ctx.session, ctx.answers, modules,
                                       ai_docs, version, generated_at)
        except ExportError:
            raise
        except Exception as e:
            raise GenerationError(f"Bundling failed: {e}") from e

    def check_size(self, ctx: ExportContext, bundle: Bundle) -> None:
        limit = self.limits.max_archive_bytes
        monitoring.observe_archive_size(bundle.size)
        if bundle.size > limit:
            raise SizeLimitError(
                f"Archive size {bundle.size / (1024 * 1024):.2f}MB exceeds the "
                f"{limit / (1024 * 1024):.0f}MB limit")
        if bundle.size > limit * self.limits.archive_warn_ratio:
            warning = (f"Archive size {bundle.size / (1024 * 1024):.2f}MB is above "
                       f"{int(self.limits.archive_warn_ratio * 100)}% of the limit")
            ctx.warnings.append(warning)
            monitoring.logger.warning("archive near size limit", extra={
                "export_id": ctx.export_id, "bytes": bundle.size,
            })

    # ------------------------------------------------------------------
    # uploading / terminal writes
    # ------------------------------------------------------------------
    def upload(self, ctx: ExportContext, bundle: Bundle, version: str) -> Tuple[str, str]:
        path = export_object_path(ctx.user_id, ctx.session["id"],
                                  slugify(ctx.session.get("name") or ""), version,
                                  ctx.export_id, bundle.extension)
        try:
            url = self.storage.upload(path, bundle.data, bundle.content_type)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Upload failed: {e}") from e
        return path, url

    def _advance(self, ctx: ExportContext, stage: ExportStage) -> None:
        progress, message = STAGE_PROGRESS[stage]
        dbmod.update_export(ctx.export_id, {
            "progress": progress,
            "progress_message": message,
            "metadata": {"stage": stage.value},
        })
        monitoring.logger.info("export stage", extra={
            "export_id": ctx.export_id, "stage": stage.value, "progress": progress,
        })

    def _complete(self, ctx: ExportContext, bundle: Bundle, modules: List[ModuleSpec],
                  version: str, path: str, url: str) -> Dict[str, Any]:
        dbmod.insert_export_version(ctx.session["id"], ctx.export_id, version, bundle.size, url)
        record = dbmod.update_export(ctx.export_id, {
            "status": "completed",
            "progress": 100,
            "progress_message": "Export complete",
            "version": version,
            "file_size": bundle.size,
            "storage_path": path,
            "storage_url": url,
            "completed_at": self.clock(),
            "metadata": {
                "stage": ExportStage.COMPLETED.value,
                "modules": [m.name for m in modules],
                "servers": collect_servers(modules),
                "file_count": len(bundle.files),
                "files": bundle.files,
                "warnings": ctx.warnings,
            },
        })
        monitoring.inc_export("completed", ctx.fmt)
        monitoring.logger.info("export completed", extra={
            "export_id": ctx.export_id, "version": version, "bytes": bundle.size,
            "files": len(bundle.files),
        })
        return record

    def _fail(self, ctx: ExportContext, stage: ExportStage, err: Exception) -> Dict[str, Any]:
        code = err.code if isinstance(err, ExportError) else "E_INTERNAL"
        message = str(err) or err.__class__.__name__
        monitoring.inc_export("failed", ctx.fmt)
        monitoring.logger.error("export failed", extra={
            "export_id": ctx.export_id, "stage": stage.value, "error_code": code, "error": message,
        }, exc_info=not isinstance(err, ExportError))
        if not isinstance(err, ExportError):
            monitoring.capture_failure(err, export_id=ctx.export_id, stage=stage.value,
                                       session_id=ctx.session.get("id"))
        try:
            record = dbmod.update_export(ctx.export_id, {
                "status": "failed",
                "error_message": message,
                "completed_at": self.clock(),
                "metadata": {"stage": ExportStage.FAILED.value, "failed_stage": stage.value,
                             "error_code": code, "warnings": ctx.warnings},
            })
        except Exception:
            monitoring.logger.exception("failed to persist export failure",
                                        extra={"export_id": ctx.export_id})
            record = None
        if record is None:
            record = {"id": ctx.export_id, "status": "failed", "error_message": message}
        return record
