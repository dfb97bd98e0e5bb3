from __future__ import annotations

from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from dbkeeper.core.errors import ObjectStorageError
from dbkeeper.domain.records import (
    BackupStorage,
    BackupStorageSpec,
    GCSStorageConfig,
    LocalStorageConfig,
    ObjectMeta,
)
from dbkeeper.services.object_storage import (
    LocalObjectStorage,
    S3ObjectStorage,
    StoredObject,
    build_object_storage,
)


class _Paginator:
    def __init__(self, pages, error=None) -> None:
        self.pages = pages
        self.error = error
        self.calls = []

    def paginate(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return iter(self.pages)


class _FakeS3Client:
    def __init__(self, pages=None, *, list_error=None, failing_keys=()) -> None:
        self.paginator = _Paginator(pages or [], list_error)
        self.failing_keys = set(failing_keys)
        self.delete_requests = []

    def get_paginator(self, name: str):
        assert name == "list_objects_v2"
        return self.paginator

    def delete_objects(self, Bucket: str, Delete: dict):
        self.delete_requests.append((Bucket, [item["Key"] for item in Delete["Objects"]]))
        errors = [
            {"Key": item["Key"], "Code": "AccessDenied", "Message": "Access Denied"}
            for item in Delete["Objects"]
            if item["Key"] in self.failing_keys
        ]
        return {"Errors": errors} if errors else {}


@pytest.mark.asyncio
async def test_s3_list_walks_every_page() -> None:
    modified = datetime(2026, 1, 20, 2, 0)
    client = _FakeS3Client(
        [
            {"Contents": [{"Key": "main/orders/a.sql.gz", "Size": 10, "LastModified": modified}]},
            {"Contents": [{"Key": "main/orders/b.sql.gz", "Size": 20}]},
            {},
        ]
    )
    storage = S3ObjectStorage("db-backups", client=client)

    objects = await storage.list("main/orders/")

    assert objects == [
        StoredObject(key="main/orders/a.sql.gz", size=10, created_at=modified.replace(tzinfo=timezone.utc)),
        StoredObject(key="main/orders/b.sql.gz", size=20, created_at=None),
    ]
    assert client.paginator.calls == [{"Bucket": "db-backups", "Prefix": "main/orders/"}]


@pytest.mark.asyncio
async def test_s3_list_errors_become_storage_errors() -> None:
    error = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "ListObjectsV2")
    storage = S3ObjectStorage("db-backups", client=_FakeS3Client(list_error=error))

    with pytest.raises(ObjectStorageError):
        await storage.list("main/orders/")


@pytest.mark.asyncio
async def test_s3_delete_batches_and_reports_per_key_errors() -> None:
    keys = [f"main/orders/{index:05d}.sql.gz" for index in range(1500)]
    client = _FakeS3Client(failing_keys={keys[1200]})
    storage = S3ObjectStorage("db-backups", client=client)

    results = await storage.delete(keys)

    assert [len(batch) for _bucket, batch in client.delete_requests] == [1000, 500]
    assert results[keys[1200]] == "Access Denied"
    assert sum(1 for error in results.values() if error is None) == 1499
    assert await storage.delete([]) == {}


@pytest.mark.asyncio
async def test_local_storage_lists_by_prefix_and_deletes(tmp_path) -> None:
    (tmp_path / "main" / "orders").mkdir(parents=True)
    (tmp_path / "main" / "orders2").mkdir(parents=True)
    (tmp_path / "main" / "orders" / "a.sql.gz").write_bytes(b"abc")
    (tmp_path / "main" / "orders2" / "b.sql.gz").write_bytes(b"abcd")
    storage = LocalObjectStorage(tmp_path)

    objects = await storage.list("main/orders/")
    results = await storage.delete(["main/orders/a.sql.gz", "main/orders/missing.sql.gz"])

    assert [(obj.key, obj.size) for obj in objects] == [("main/orders/a.sql.gz", 3)]
    assert objects[0].created_at is not None
    assert results["main/orders/a.sql.gz"] is None
    assert results["main/orders/missing.sql.gz"]
    assert not (tmp_path / "main" / "orders" / "a.sql.gz").exists()


@pytest.mark.asyncio
async def test_local_storage_with_missing_root_is_empty(tmp_path) -> None:
    assert await LocalObjectStorage(tmp_path / "nope").list("") == []


def test_build_object_storage_by_provider(tmp_path) -> None:
    local = BackupStorage(
        metadata=ObjectMeta(name="local"),
        spec=BackupStorageSpec(local=LocalStorageConfig(root=str(tmp_path))),
    )
    gcs = BackupStorage(metadata=ObjectMeta(name="gcs"), spec=BackupStorageSpec(gcs=GCSStorageConfig(bucket="b")))

    assert isinstance(build_object_storage(local), LocalObjectStorage)
    with pytest.raises(ObjectStorageError, match="gcs"):
        build_object_storage(gcs)
