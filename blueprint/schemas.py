# blueprint/schemas.py
from typing import List, Optional, Any, Dict
from pydantic import BaseModel, Field, field_validator, ConfigDict

from blueprint.config import EXPORT_FORMATS
from blueprint.versioning import is_valid_version


class ExportRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    format: str = "archive"
    version: Optional[str] = None

    @field_validator("format")
    @classmethod
    def format_must_be_known(cls, v):
        if v not in EXPORT_FORMATS:
            raise ValueError(f"format must be one of: {', '.join(EXPORT_FORMATS)}")
        return v

    @field_validator("version")
    @classmethod
    def version_must_be_semver(cls, v):
        if v is None:
            return v
        if not is_valid_version(v):
            raise ValueError("version must look like MAJOR.MINOR.PATCH")
        return v.strip()


class ReExportRequest(BaseModel):
    format: str = "archive"

    @field_validator("format")
    @classmethod
    def format_must_be_known(cls, v):
        if v not in EXPORT_FORMATS:
            raise ValueError(f"format must be one of: {', '.join(EXPORT_FORMATS)}")
        return v


class ExportRecordOut(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    session_id: str
    user_id: str
    format: str
    status: str  # "processing" | "completed" | "failed"
    progress: int = 0
    progress_message: Optional[str] = None
    version: Optional[str] = None
    file_size: Optional[int] = None
    storage_url: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


class ExportHistoryEntry(BaseModel):
    version: str
    size: Optional[int] = None
    url: Optional[str] = None
    created_at: Optional[str] = None
    export_id: Optional[str] = None


class ExportHistory(BaseModel):
    session_id: str
    versions: List[ExportHistoryEntry]


class DownloadLink(BaseModel):
    export_id: str
    url: str
    expires_at: str


class UsageSummary(BaseModel):
    period: str
    total_cost: float
    total_tokens: int
    request_count: int
    success_rate: float
