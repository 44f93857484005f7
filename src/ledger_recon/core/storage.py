"""
Raw document byte storage.

Uploaded bytes are stored once per organization under a content-addressed key
(``raw/<organization>/<sha256 prefix>/<sha256>/<filename>``), so re-uploading
an identical file writes nothing new. The backend is chosen by
``STORAGE_BACKEND``: a local directory for development and tests, or an S3
compatible bucket.
"""

from __future__ import annotations

import hashlib
import os
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ledger_recon.core.config import settings
from ledger_recon.core.errors import LedgerError
from ledger_recon.core.logging import get_logger, log_event, log_exception, monotonic_ms

logger = get_logger(__name__)

T = TypeVar("T")

_TRANSIENT_S3_CODES = frozenset(
    {"RequestTimeout", "SlowDown", "Throttling", "ThrottlingException", "ServiceUnavailable"}
)
_MISSING_S3_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


class StorageError(LedgerError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    byte_size: int
    sha256: str
    existed: bool = False


def sha256_hex(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def document_key(*, organization_id: uuid.UUID, sha256: str, filename: str) -> str:
    return f"raw/{organization_id}/{sha256[:2]}/{sha256}/{filename}"


class ObjectStorage(Protocol):
    backend: str

    def put(self, *, key: str, body: bytes) -> StoredObject: ...

    def get(self, *, key: str) -> bytes: ...


class LocalObjectStorage:
    backend = "local"

    def __init__(self, root: Path):
        self._root = root.resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def put(self, *, key: str, body: bytes) -> StoredObject:
        path = self._path(key)
        digest = sha256_hex(body)
        if path.exists() and sha256_hex(path.read_bytes()) == digest:
            log_event(logger, "storage.put.exists", backend=self.backend, storage_key=key)
            return StoredObject(key=key, byte_size=len(body), sha256=digest, existed=True)

        start = time.monotonic()
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(body)
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            log_exception(logger, "storage.put.failure", backend=self.backend, storage_key=key)
            raise StorageError(f"Could not write {key}") from e
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body), sha256=digest)

    def get(self, *, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError as e:
            log_event(logger, "storage.get.missing", backend=self.backend, storage_key=key)
            raise StorageError(f"Object not found: {key}") from e


class S3ObjectStorage:
    backend = "s3"
    attempts = 4

    def __init__(self, client=None, bucket: str | None = None) -> None:
        self._bucket = bucket or settings.s3_bucket
        self._client = client or self._make_client()

    @staticmethod
    def _make_client():
        region = settings.s3_region
        if not region or region.lower() == "auto":
            region = "us-east-1"
        return boto3.session.Session(
            aws_access_key_id=settings.s3_access_key_id,
            aws_secret_access_key=settings.s3_secret_access_key,
            region_name=region,
        ).client(
            "s3",
            endpoint_url=settings.s3_endpoint_url or None,
            config=Config(retries={"max_attempts": 2}, connect_timeout=10, read_timeout=60),
        )

    @staticmethod
    def _error_code(error: Exception) -> str | None:
        if isinstance(error, ClientError):
            return (error.response.get("Error") or {}).get("Code")
        return None

    def _call(self, op: str, key: str, fn: Callable[[], T]) -> T:
        for attempt in range(1, self.attempts + 1):
            try:
                return fn()
            except (BotoCoreError, ClientError) as e:
                code = self._error_code(e)
                transient = isinstance(e, BotoCoreError) or code in _TRANSIENT_S3_CODES
                if not transient or attempt == self.attempts:
                    raise
                delay_s = min(2.0, 0.25 * 2 ** (attempt - 1))
                log_event(
                    logger,
                    f"storage.{op}.retry",
                    backend=self.backend,
                    storage_key=key,
                    attempt=attempt,
                    delay_s=delay_s,
                    error_code=code or type(e).__name__,
                )
                time.sleep(delay_s)
        raise StorageError(f"{op} {key}: no attempts made")

    def _exists(self, key: str) -> bool:
        try:
            self._call("head", key, lambda: self._client.head_object(Bucket=self._bucket, Key=key))
        except ClientError as e:
            if self._error_code(e) in _MISSING_S3_CODES:
                return False
            raise
        return True

    def put(self, *, key: str, body: bytes) -> StoredObject:
        start = time.monotonic()
        digest = sha256_hex(body)
        try:
            if self._exists(key):
                log_event(logger, "storage.put.exists", backend=self.backend, storage_key=key)
                return StoredObject(key=key, byte_size=len(body), sha256=digest, existed=True)
            self._call(
                "put",
                key,
                lambda: self._client.put_object(
                    Bucket=self._bucket, Key=key, Body=body, Metadata={"sha256": digest}
                ),
            )
        except (BotoCoreError, ClientError) as e:
            log_exception(logger, "storage.put.failure", backend=self.backend, storage_key=key)
            raise StorageError(f"Could not write {key}") from e
        log_event(
            logger,
            "storage.put.success",
            backend=self.backend,
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body), sha256=digest)

    def get(self, *, key: str) -> bytes:
        try:
            resp = self._call(
                "get", key, lambda: self._client.get_object(Bucket=self._bucket, Key=key)
            )
            return resp["Body"].read()
        except (BotoCoreError, ClientError) as e:
            log_exception(logger, "storage.get.failure", backend=self.backend, storage_key=key)
            raise StorageError(f"Could not read {key}") from e


_storage: ObjectStorage | None = None


def get_storage() -> ObjectStorage:
    global _storage  # noqa: PLW0603
    if _storage is None:
        if settings.storage_backend == "s3":
            _storage = S3ObjectStorage()
        else:
            root = settings.local_storage_path
            _storage = LocalObjectStorage(root if root.is_absolute() else Path.cwd() / root)
    return _storage
