from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

from refund_monitor.config import StorageConfig
from refund_monitor.errors import StorageError
from refund_monitor.storage import (
    LocalObjectStorage,
    S3ObjectStorage,
    get_storage,
    screenshot_path,
    slugify,
)


def test_slugify() -> None:
    assert slugify("Jane  O'Doe") == "jane-o-doe"
    assert slugify("   ") == "client"


def test_screenshot_path_layout() -> None:
    now = datetime(2025, 4, 1, 9, 5, 7, tzinfo=timezone.utc)
    assert screenshot_path("Jane Doe", now) == "checks/2025-04-01/jane-doe/09-05-07.png"


def test_local_upload_and_url(tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path)
    storage.upload("irs-screenshots", "checks/2025-04-01/jane/1.png", b"png", "image/png")
    assert (tmp_path / "irs-screenshots" / "checks/2025-04-01/jane/1.png").read_bytes() == b"png"
    url = storage.get_signed_url("irs-screenshots", "checks/2025-04-01/jane/1.png")
    assert url.startswith("file://")
    assert url.endswith("/checks/2025-04-01/jane/1.png")


def test_local_rejects_path_escape(tmp_path: Path) -> None:
    storage = LocalObjectStorage(tmp_path / "root")
    with pytest.raises(StorageError):
        storage.upload("bucket", "../../evil.png", b"x", "image/png")


def test_local_missing_object(tmp_path: Path) -> None:
    with pytest.raises(StorageError):
        LocalObjectStorage(tmp_path).get_signed_url("bucket", "nope.png")


class _FakeS3:
    def __init__(self, failures: int = 0, code: str = "SlowDown") -> None:
        self.failures = failures
        self.code = code
        self.put_calls = 0

    def put_object(self, **kwargs) -> None:
        self.put_calls += 1
        if self.put_calls <= self.failures:
            raise ClientError({"Error": {"Code": self.code, "Message": "x"}}, "PutObject")

    def generate_presigned_url(self, op: str, Params: dict, ExpiresIn: int) -> str:
        return f"https://s3.example/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"


def test_s3_signed_url_uses_ttl() -> None:
    storage = S3ObjectStorage(StorageConfig(backend="s3"), client=_FakeS3())
    assert storage.get_signed_url("b", "k.png") == "https://s3.example/b/k.png?expires=86400"


def test_s3_upload_retries_throttling(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("refund_monitor.storage.time.sleep", lambda _s: None)
    fake = _FakeS3(failures=2)
    S3ObjectStorage(StorageConfig(backend="s3"), client=fake).upload("b", "k", b"x", "image/png")
    assert fake.put_calls == 3


def test_s3_upload_does_not_retry_access_denied(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("refund_monitor.storage.time.sleep", lambda _s: None)
    fake = _FakeS3(failures=5, code="AccessDenied")
    with pytest.raises(StorageError):
        S3ObjectStorage(StorageConfig(backend="s3"), client=fake).upload("b", "k", b"x", "image/png")
    assert fake.put_calls == 1


def test_get_storage_local(tmp_path: Path) -> None:
    storage = get_storage(StorageConfig(backend="local", local_path=str(tmp_path)))
    assert isinstance(storage, LocalObjectStorage)
