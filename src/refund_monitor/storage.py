from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import StorageConfig
from .errors import StorageError


logger = logging.getLogger(__name__)

SCREENSHOT_URL_TTL_S = 86_400


def slugify(value: str) -> str:
    """'Jane  O'Doe' -> 'jane-o-doe'"""
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug or "client"


def screenshot_path(client_name: str, now: Optional[datetime] = None) -> str:
    """`checks/{YYYY-MM-DD}/{client-slug}/{HH-MM-SS}.png` (UTC)."""
    ts = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return f"checks/{ts:%Y-%m-%d}/{slugify(client_name)}/{ts:%H-%M-%S}.png"


class ObjectStorage:
    def upload(self, bucket: str, path: str, body: bytes, content_type: str) -> None:  # pragma: no cover
        raise NotImplementedError

    def get_signed_url(self, bucket: str, path: str, ttl_seconds: int = SCREENSHOT_URL_TTL_S) -> str:  # pragma: no cover
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    """
    Buckets are directories under `root`.

    Signed URLs are plain `file://` URIs; there is nothing to expire locally.
    """

    def __init__(self, root: Path) -> None:
        self._root = root

    def _resolve(self, bucket: str, path: str) -> Path:
        base = (self._root / bucket).resolve()
        target = (base / path).resolve()
        if base != target and base not in target.parents:
            raise StorageError(f"Object path escapes bucket: {path}")
        return target

    def upload(self, bucket: str, path: str, body: bytes, content_type: str) -> None:
        target = self._resolve(bucket, path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(body)
        except OSError as e:
            raise StorageError(f"Local upload failed for {bucket}/{path}: {e}") from e
        logger.debug("Stored %s/%s (%d bytes, %s).", bucket, path, len(body), content_type)

    def get_signed_url(self, bucket: str, path: str, ttl_seconds: int = SCREENSHOT_URL_TTL_S) -> str:
        target = self._resolve(bucket, path)
        if not target.exists():
            raise StorageError(f"Object not found: {bucket}/{path}")
        return target.as_uri()


class S3ObjectStorage(ObjectStorage):
    def __init__(self, cfg: StorageConfig, *, client=None) -> None:
        if client is not None:
            self._client = client
            return

        region = cfg.s3_region
        if not region or region.lower() == "auto":
            region = "us-east-1"

        session = boto3.session.Session(
            aws_access_key_id=cfg.s3_access_key_id or None,
            aws_secret_access_key=cfg.s3_secret_access_key or None,
            region_name=region,
        )
        config = Config(
            retries={"max_attempts": 3, "mode": "adaptive"},
            connect_timeout=10,
            read_timeout=30,
        )
        self._client = session.client("s3", endpoint_url=cfg.s3_endpoint_url or None, config=config)

    def _retry_delay_s(self, attempt: int) -> float:
        # attempt=1 => 0.25s, attempt=2 => 0.5s, attempt=3 => 1.0s
        return min(3.0, 0.25 * (2 ** (attempt - 1)))

    def _should_retry_error(self, error: Exception) -> bool:
        if isinstance(error, ClientError):
            code = (error.response.get("Error") or {}).get("Code")
            return code in {
                "RequestTimeout",
                "Throttling",
                "ThrottlingException",
                "SlowDown",
                "InternalError",
                "ServiceUnavailable",
            }
        return isinstance(error, BotoCoreError)

    def upload(self, bucket: str, path: str, body: bytes, content_type: str) -> None:
        max_attempts = 3
        for attempt in range(1, max_attempts + 1):
            try:
                self._client.put_object(Bucket=bucket, Key=path, Body=body, ContentType=content_type)
                return
            except (ClientError, BotoCoreError) as e:
                if attempt < max_attempts and self._should_retry_error(e):
                    delay_s = self._retry_delay_s(attempt)
                    logger.info(
                        "S3 upload retry %d/%d for %s/%s in %.2fs (%s).",
                        attempt,
                        max_attempts,
                        bucket,
                        path,
                        delay_s,
                        type(e).__name__,
                    )
                    time.sleep(delay_s)
                    continue
                raise StorageError(f"S3 upload failed for {bucket}/{path}: {e}") from e

    def get_signed_url(self, bucket: str, path: str, ttl_seconds: int = SCREENSHOT_URL_TTL_S) -> str:
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": bucket, "Key": path},
                ExpiresIn=int(ttl_seconds),
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Could not sign URL for {bucket}/{path}: {e}") from e


def get_storage(cfg: StorageConfig) -> ObjectStorage:
    if cfg.backend == "s3":
        return S3ObjectStorage(cfg)
    return LocalObjectStorage(Path(cfg.local_path))
