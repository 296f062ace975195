# blueprint/app.py
import time
from contextlib import asynccontextmanager
from typing import Optional

# Load .env BEFORE any blueprint imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv(override=True)

from fastapi import BackgroundTasks, FastAPI, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, PlainTextResponse

from blueprint.orchestrator import ExportOrchestrator
from blueprint.cache import CacheSweeper
from blueprint.errors import (
    E_INTERNAL, E_VALIDATION, ExportError, ExportValidationError, SessionNotFoundError,
)
from blueprint.schemas import (
    DownloadLink, ExportHistory, ExportRecordOut, ExportRequest, ReExportRequest, UsageSummary,
)
from blueprint.usage import get_user_usage
from blueprint import monitoring
from blueprint import auth as authmod
from blueprint import db as dbmod

# instantiate orchestrator once
orchestrator = ExportOrchestrator()
sweeper = CacheSweeper(orchestrator.cache)


@asynccontextmanager
async def lifespan(app: FastAPI):
    dbmod.init_db()
    sweeper.start()
    try:
        yield
    finally:
        sweeper.stop()


app = FastAPI(title="Blueprint Export API", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Auth middleware (runs first on /api/* paths)
# ---------------------------------------------------------------------------
@app.middleware("http")
async def api_key_middleware(request: Request, call_next):
    path = request.url.path
    if not path.startswith("/api/"):
        return await call_next(request)

    api_key = request.headers.get(authmod.API_KEY_HEADER)
    if not authmod.is_key_allowed(api_key):
        return JSONResponse(status_code=401, content={"detail": "Missing or invalid API key"})

    user_id = authmod.resolve_user_id(api_key, request.headers.get(authmod.USER_ID_HEADER))
    if not user_id:
        return JSONResponse(status_code=401, content={"detail": "Missing caller identity"})
    request.state.user_id = user_id
    return await call_next(request)


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
def _endpoint_label(request: Request) -> str:
    """Route template (/api/exports/{export_id}) once routed, else the raw path."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    endpoint = request.url.path
    method = request.method
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    except Exception:
        monitoring.logger.exception("Unhandled exception in request", extra={"path": endpoint})
        raise
    finally:
        monitoring.observe_request(start, _endpoint_label(request), method, status)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
def _error_response(e: Exception) -> JSONResponse:
    if isinstance(e, ExportValidationError):
        return JSONResponse(status_code=400, content=e.to_dict())
    if isinstance(e, SessionNotFoundError):
        return JSONResponse(status_code=404, content=e.to_dict())
    if isinstance(e, ExportError):
        return JSONResponse(status_code=500, content=e.to_dict())
    monitoring.logger.exception("Unexpected error in handler")
    return JSONResponse(
        status_code=500,
        content={
            "status": "error",
            "error_code": E_INTERNAL,
            "message": "Internal server error",
            "details": {"exception": str(e)},
        },
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={
            "status": "error",
            "error_code": E_VALIDATION,
            "message": "Invalid request",
            "details": {"errors": errors, "warnings": []},
        },
    )


def _record_body(record) -> dict:
    return ExportRecordOut(**record).model_dump()


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.post("/api/exports")
def create_export(req: ExportRequest, request: Request, background_tasks: BackgroundTasks):
    """
    POST /api/exports
    Body: { "session_id": "...", "format": "archive", "version": "1.2.0" }
    Returns 202 with the processing record; the pipeline finishes in the background.
    """
    user_id = request.state.user_id
    monitoring.logger.info("Received /api/exports request",
                           extra={"session_id": req.session_id, "user_id": user_id, "format": req.format})
    try:
        record, ctx = orchestrator.begin_export(req.session_id, user_id, req.format, req.version)
    except Exception as e:
        return _error_response(e)
    if ctx is not None:
        background_tasks.add_task(orchestrator.run_export, ctx)
    return JSONResponse(status_code=202, content=_record_body(record))


@app.get("/api/exports/{export_id}")
def get_export(request: Request, export_id: str = Path(..., description="Export ID to fetch")):
    try:
        record = orchestrator.get_export_status(export_id, request.state.user_id)
    except Exception as e:
        return _error_response(e)
    return JSONResponse(status_code=200, content=_record_body(record))


@app.get("/api/exports/{export_id}/download")
def download_export(request: Request, export_id: str,
                    expires_in: int = Query(3600, ge=60, le=7 * 24 * 3600)):
    try:
        link = orchestrator.create_download_url(export_id, request.state.user_id, expires_in)
    except Exception as e:
        return _error_response(e)
    return JSONResponse(status_code=200, content=DownloadLink(**link).model_dump())


@app.delete("/api/exports/{export_id}")
def delete_export(request: Request, export_id: str):
    try:
        orchestrator.delete_export(export_id, request.state.user_id)
    except Exception as e:
        return _error_response(e)
    return JSONResponse(status_code=200, content={"status": "deleted", "export_id": export_id})


@app.get("/api/sessions/{session_id}/exports")
def export_history(request: Request, session_id: str, limit: Optional[int] = Query(None, ge=1)):
    try:
        versions = orchestrator.list_export_history(session_id, request.state.user_id, limit)
    except Exception as e:
        return _error_response(e)
    body = ExportHistory(session_id=session_id, versions=versions)
    return JSONResponse(status_code=200, content=body.model_dump())


@app.post("/api/sessions/{session_id}/reexport")
def reexport(request: Request, session_id: str, background_tasks: BackgroundTasks,
             req: Optional[ReExportRequest] = None):
    """New export of the session with the patch version incremented."""
    fmt = req.format if req else "archive"
    try:
        record, ctx = orchestrator.begin_export(session_id, request.state.user_id, fmt)
    except Exception as e:
        return _error_response(e)
    if ctx is not None:
        background_tasks.add_task(orchestrator.run_export, ctx)
    return JSONResponse(status_code=202, content=_record_body(record))


@app.get("/api/usage")
def usage(request: Request, period: str = Query("day")):
    try:
        summary = get_user_usage(request.state.user_id, period)
    except ValueError as e:
        return _error_response(ExportValidationError(str(e)))
    except Exception as e:
        return _error_response(e)
    return JSONResponse(status_code=200, content=UsageSummary(**summary).model_dump())


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)
