# tests/test_storage.py
import io

import pytest

from blueprint.errors import StorageError
from blueprint.storage import (
    LocalExportStorage, S3ExportStorage, build_export_storage, export_object_path,
)


def test_object_path_layout():
    path = export_object_path("u1", "s1", "taskflow", "1.0.2", "abcdef1234567890", "zip")
    assert path == "u1/s1/taskflow-v1.0.2-abcdef12.zip"


def test_local_round_trip(tmp_path):
    store = LocalExportStorage(tmp_path)
    url = store.upload("u1/s1/a.zip", b"PK", "application/zip")
    assert url.startswith("file://")
    assert store.exists("u1/s1/a.zip")
    assert store.download("u1/s1/a.zip") == b"PK"
    assert store.delete("u1/s1/a.zip") is True
    assert store.delete("u1/s1/a.zip") is False
    assert not store.exists("u1/s1/a.zip")


def test_local_public_base_url(tmp_path):
    store = LocalExportStorage(tmp_path, public_base_url="https://cdn.example.com/exports/")
    url = store.upload("u1/s1/my file.zip", b"x", "application/zip")
    assert url == "https://cdn.example.com/exports/u1/s1/my%20file.zip"
    signed = store.create_signed_url("u1/s1/my file.zip", expires_in=60)
    assert signed.startswith(url + "?expires=")


def test_local_rejects_paths_outside_root(tmp_path):
    store = LocalExportStorage(tmp_path / "root")
    with pytest.raises(StorageError):
        store.upload("../escape.zip", b"x", "application/zip")


def test_local_signed_url_requires_object(tmp_path):
    with pytest.raises(StorageError):
        LocalExportStorage(tmp_path).create_signed_url("missing.zip")


def test_local_download_missing_raises(tmp_path):
    with pytest.raises(StorageError):
        LocalExportStorage(tmp_path).download("missing.zip")


class FakeS3:
    def __init__(self, fail=False):
        self.objects = {}
        self.fail = fail

    def put_object(self, Bucket, Key, Body, ContentType):
        if self.fail:
            raise RuntimeError("access denied")
        self.objects[(Bucket, Key)] = Body

    def get_object(self, Bucket, Key):
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}

    def delete_object(self, Bucket, Key):
        self.objects.pop((Bucket, Key), None)

    def head_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise KeyError(Key)
        return {}

    def generate_presigned_url(self, op, Params, ExpiresIn):
        return f"https://{Params['Bucket']}.s3/{Params['Key']}?X-Amz-Expires={ExpiresIn}"


def test_s3_storage_with_fake_client():
    client = FakeS3()
    store = S3ExportStorage("bucket", prefix="/exports/", client=client)
    assert store.upload("u1/a.zip", b"data", "application/zip") == "s3://bucket/exports/u1/a.zip"
    assert store.exists("u1/a.zip")
    assert store.download("u1/a.zip") == b"data"
    assert store.create_signed_url("u1/a.zip", 120).endswith("exports/u1/a.zip?X-Amz-Expires=120")
    assert store.delete("u1/a.zip") is True
    assert not store.exists("u1/a.zip")


def test_s3_errors_become_storage_errors():
    store = S3ExportStorage("bucket", client=FakeS3(fail=True))
    with pytest.raises(StorageError):
        store.upload("a.zip", b"x", "application/zip")


def test_build_local_storage_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("EXPORT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("EXPORT_STORAGE_DIR", str(tmp_path))
    store = build_export_storage()
    assert isinstance(store, LocalExportStorage)
    assert store.base_dir == tmp_path


def test_build_s3_storage_requires_bucket(monkeypatch):
    monkeypatch.setenv("EXPORT_STORAGE_BACKEND", "s3")
    monkeypatch.delenv("EXPORT_STORAGE_S3_BUCKET", raising=False)
    with pytest.raises(RuntimeError):
        build_export_storage()
    monkeypatch.setenv("EXPORT_STORAGE_S3_BUCKET", "exports-bucket")
    store = build_export_storage()
    assert isinstance(store, S3ExportStorage)
    assert store.bucket == "exports-bucket"


def test_unknown_backend_rejected(monkeypatch):
    monkeypatch.setenv("EXPORT_STORAGE_BACKEND", "ftp")
    with pytest.raises(RuntimeError):
        build_export_storage()
