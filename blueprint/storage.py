# blueprint/storage.py
"""
Export storage backends.

Archives are persisted through a small contract (upload / download / delete /
exists / create_signed_url) so the pipeline is not tied to a local filesystem.

Env vars:
- EXPORT_STORAGE_BACKEND (default: local): local | s3
- EXPORT_STORAGE_DIR (default: ./exports): local backend root
- EXPORT_PUBLIC_BASE_URL: local backend: public URL prefix for stored objects
- EXPORT_STORAGE_S3_BUCKET / _PREFIX / _REGION / _ENDPOINT: s3 backend
"""

import os
import time
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote

from blueprint.errors import StorageError
from blueprint.monitoring import logger


class ExportStorage(Protocol):
    """Storage contract used by the export orchestrator."""

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Persist an object and return its URL."""

    def download(self, path: str) -> bytes:
        """Return the object's bytes."""

    def delete(self, path: str) -> bool:
        """Remove the object; True when something was removed."""

    def exists(self, path: str) -> bool:
        """Return True when the object exists."""

    def create_signed_url(self, path: str, expires_in: int = 3600) -> str:
        """Return a time-limited download URL."""


def export_object_path(user_id: str, session_id: str, slug: str, version: str,
                       export_id: str, extension: str) -> str:
    """Deterministic object path: <user>/<session>/<slug>-v<version>-<id8>.<ext>"""
    return f"{user_id}/{session_id}/{slug}-v{version}-{export_id[:8]}.{extension}"


class LocalExportStorage:
    """Filesystem-backed export storage."""

    def __init__(self, base_dir, public_base_url: Optional[str] = None) -> None:
        self.base_dir = Path(base_dir)
        self.public_base_url = (public_base_url or "").rstrip("/") or None

    def _resolve(self, path: str) -> Path:
        target = (self.base_dir / path.lstrip("/")).resolve()
        root = self.base_dir.resolve()
        if root != target and root not in target.parents:
            raise StorageError(f"path escapes storage root: {path}")
        return target

    def _url(self, path: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{quote(path.lstrip('/'))}"
        return self._resolve(path).as_uri()

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Upload failed: {e}") from e
        return self._url(path)

    def download(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except OSError as e:
            raise StorageError(f"Download failed: {e}") from e

    def delete(self, path: str) -> bool:
        target = self._resolve(path)
        if not target.exists():
            return False
        try:
            target.unlink()
        except OSError as e:
            raise StorageError(f"Delete failed: {e}") from e
        return True

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()

    def create_signed_url(self, path: str, expires_in: int = 3600) -> str:
        if not self.exists(path):
            raise StorageError(f"Object not found: {path}")
        return f"{self._url(path)}?expires={int(time.time()) + expires_in}"


class S3ExportStorage:
    """S3-backed export storage."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "exports",
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client=None,
    ) -> None:
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.region_name = region_name
        self.endpoint_url = endpoint_url
        self._client = client

    def _get_client(self):
        if self._client is not None:
            return self._client
        try:
            import boto3
        except ImportError as exc:
            raise RuntimeError(
                "EXPORT_STORAGE_BACKEND=s3 requires boto3. "
                "Install the s3 extra or switch EXPORT_STORAGE_BACKEND=local."
            ) from exc
        self._client = boto3.client(
            "s3",
            region_name=self.region_name,
            endpoint_url=self.endpoint_url,
        )
        return self._client

    def _key(self, path: str) -> str:
        path = path.lstrip("/")
        return f"{self.prefix}/{path}" if self.prefix else path

    def _uri(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        key = self._key(path)
        try:
            self._get_client().put_object(
                Bucket=self.bucket, Key=key, Body=data, ContentType=content_type,
            )
        except Exception as e:
            raise StorageError(f"Upload failed: {e}") from e
        return self._uri(key)

    def download(self, path: str) -> bytes:
        try:
            resp = self._get_client().get_object(Bucket=self.bucket, Key=self._key(path))
            return resp["Body"].read()
        except Exception as e:
            raise StorageError(f"Download failed: {e}") from e

    def delete(self, path: str) -> bool:
        try:
            self._get_client().delete_object(Bucket=self.bucket, Key=self._key(path))
        except Exception as e:
            raise StorageError(f"Delete failed: {e}") from e
        return True

    def exists(self, path: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self.bucket, Key=self._key(path))
            return True
        except Exception:
            return False

    def create_signed_url(self, path: str, expires_in: int = 3600) -> str:
        try:
            return self._get_client().generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": self._key(path)},
                ExpiresIn=expires_in,
            )
        except Exception as e:
            raise StorageError(f"Signed URL failed: {e}") from e


def build_export_storage() -> ExportStorage:
    """Build export storage backend from environment configuration."""
    backend = os.environ.get("EXPORT_STORAGE_BACKEND", "local").strip().lower()
    if backend in {"", "local"}:
        return LocalExportStorage(
            os.environ.get("EXPORT_STORAGE_DIR", "./exports"),
            public_base_url=os.environ.get("EXPORT_PUBLIC_BASE_URL", "").strip() or None,
        )
    if backend == "s3":
        bucket = os.environ.get("EXPORT_STORAGE_S3_BUCKET", "").strip()
        if not bucket:
            raise RuntimeError("EXPORT_STORAGE_BACKEND=s3 requires EXPORT_STORAGE_S3_BUCKET.")
        logger.info("export storage: s3", extra={"bucket": bucket})
        return S3ExportStorage(
            bucket=bucket,
            prefix=os.environ.get("EXPORT_STORAGE_S3_PREFIX", "exports"),
            region_name=os.environ.get("EXPORT_STORAGE_S3_REGION", "").strip() or None,
            endpoint_url=os.environ.get("EXPORT_STORAGE_S3_ENDPOINT", "").strip() or None,
        )
    raise RuntimeError(
        f"Unsupported EXPORT_STORAGE_BACKEND={backend!r}. Use 'local' or 's3'."
    )
