from __future__ import annotations

import io
import uuid

import pytest
from botocore.exceptions import ClientError

from ledger_recon.core import storage as storage_mod
from ledger_recon.core.db import SessionLocal
from ledger_recon.core.storage import (
    LocalObjectStorage,
    S3ObjectStorage,
    StorageError,
    document_key,
    get_storage,
    sha256_hex,
)
from ledger_recon.modules.documents.models import DocumentType
from ledger_recon.modules.documents.service import create_document
from ledger_recon.modules.organizations.service import create_organization


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "op")


class FakeS3Client:
    def __init__(self, *, failures: list[str] | None = None) -> None:
        self.objects: dict[str, bytes] = {}
        self.failures = list(failures or [])
        self.put_calls = 0

    def head_object(self, Bucket: str, Key: str):
        if Key not in self.objects:
            raise _client_error("404")
        return {}

    def put_object(self, Bucket: str, Key: str, Body: bytes, Metadata: dict):
        self.put_calls += 1
        if self.failures:
            raise _client_error(self.failures.pop(0))
        self.objects[Key] = Body

    def get_object(self, Bucket: str, Key: str):
        if Key not in self.objects:
            raise _client_error("NoSuchKey")
        return {"Body": io.BytesIO(self.objects[Key])}


def test_document_key_is_content_addressed():
    org_id = uuid.uuid4()
    digest = sha256_hex(b"Date,Amount\n")
    key = document_key(organization_id=org_id, sha256=digest, filename="march.csv")
    assert key == f"raw/{org_id}/{digest[:2]}/{digest}/march.csv"


def test_local_put_is_idempotent_for_identical_bytes(tmp_path):
    storage = LocalObjectStorage(tmp_path)
    first = storage.put(key="raw/a/b.csv", body=b"abc")
    second = storage.put(key="raw/a/b.csv", body=b"abc")

    assert first.existed is False
    assert second.existed is True
    assert storage.get(key="raw/a/b.csv") == b"abc"
    assert [p.name for p in (tmp_path / "raw" / "a").iterdir()] == ["b.csv"]


def test_local_storage_rejects_escaping_keys(tmp_path):
    storage = LocalObjectStorage(tmp_path / "root")
    with pytest.raises(StorageError):
        storage.put(key="../outside.csv", body=b"x")
    with pytest.raises(StorageError):
        storage.get(key="raw/missing.csv")


def test_s3_put_retries_transient_errors(monkeypatch):
    monkeypatch.setattr(storage_mod.time, "sleep", lambda _s: None)
    client = FakeS3Client(failures=["SlowDown", "ServiceUnavailable"])
    storage = S3ObjectStorage(client=client, bucket="test")

    stored = storage.put(key="raw/x.csv", body=b"hello")

    assert client.put_calls == 3
    assert stored.existed is False
    assert storage.get(key="raw/x.csv") == b"hello"
    assert storage.put(key="raw/x.csv", body=b"hello").existed is True


def test_s3_put_does_not_retry_permanent_errors(monkeypatch):
    monkeypatch.setattr(storage_mod.time, "sleep", lambda _s: None)
    client = FakeS3Client(failures=["AccessDenied"])
    storage = S3ObjectStorage(client=client, bucket="test")

    with pytest.raises(StorageError):
        storage.put(key="raw/x.csv", body=b"hello")
    assert client.put_calls == 1
    with pytest.raises(StorageError):
        storage.get(key="raw/missing.csv")


def test_uploading_the_same_bytes_twice_reuses_the_stored_object():
    body = b"Date,Amount,Vendor\n2024-03-01,-10.00,Corner Deli\n"
    with SessionLocal() as session:
        org = create_organization(session, name="Acme Holdings")
        docs = [
            create_document(
                session,
                organization=org,
                filename="../statement.csv",
                content_type="text/csv",
                declared_type=DocumentType.CSV,
                body=body,
            )
            for _ in range(2)
        ]

        assert docs[0].id != docs[1].id
        assert docs[0].storage_key == docs[1].storage_key
        assert docs[0].filename == "statement.csv"
        assert docs[0].sha256 == sha256_hex(body)
        assert get_storage().get(key=docs[0].storage_key) == body
