from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import ObjectStorageError
from dbkeeper.domain.records import BackupStorage


logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per request.
DELETE_BATCH_SIZE = 1000


@dataclass(frozen=True)
class StoredObject:
    key: str
    size: int
    created_at: datetime | None = None


class ObjectStorage(Protocol):
    async def list(self, prefix: str) -> list[StoredObject]:
        ...

    async def delete(self, keys: list[str]) -> dict[str, str | None]:
        ...


class S3ObjectStorage:
    """S3-compatible object storage; credentials come from the boto3 default chain."""

    def __init__(
        self,
        bucket: str,
        *,
        region: str | None = None,
        endpoint: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.bucket = bucket
        self.client = client or boto3.client("s3", region_name=region, endpoint_url=endpoint)

    def _list_sync(self, prefix: str) -> list[StoredObject]:
        objects: list[StoredObject] = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                modified = obj.get("LastModified")
                if modified is not None and modified.tzinfo is None:
                    modified = modified.replace(tzinfo=timezone.utc)
                objects.append(StoredObject(key=obj["Key"], size=int(obj.get("Size", 0)), created_at=modified))
        return objects

    def _delete_sync(self, keys: list[str]) -> dict[str, str | None]:
        results: dict[str, str | None] = {}
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start : start + DELETE_BATCH_SIZE]
            try:
                response = self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            except (BotoCoreError, ClientError) as exc:
                # Keep going with the next batch; callers log per-key failures.
                for key in batch:
                    results[key] = str(exc)
                continue
            errors = {item["Key"]: item.get("Message") or item.get("Code") or "delete failed" for item in response.get("Errors", [])}
            for key in batch:
                results[key] = errors.get(key)
        return results

    async def list(self, prefix: str) -> list[StoredObject]:
        try:
            return await asyncio.to_thread(self._list_sync, prefix)
        except (BotoCoreError, ClientError) as exc:
            raise ObjectStorageError(f"failed to list s3://{self.bucket}/{prefix}: {exc}") from exc

    async def delete(self, keys: list[str]) -> dict[str, str | None]:
        if not keys:
            return {}
        return await asyncio.to_thread(self._delete_sync, list(keys))


class LocalObjectStorage:
    """Filesystem-backed storage for local development; keys are paths under ``root``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    async def list(self, prefix: str) -> list[StoredObject]:
        if not self.root.exists():
            return []
        objects = []
        for path in sorted(self.root.rglob("*")):
            if not path.is_file():
                continue
            key = path.relative_to(self.root).as_posix()
            if not key.startswith(prefix):
                continue
            stat = path.stat()
            objects.append(
                StoredObject(
                    key=key,
                    size=stat.st_size,
                    created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        return objects

    async def delete(self, keys: list[str]) -> dict[str, str | None]:
        results: dict[str, str | None] = {}
        for key in keys:
            try:
                (self.root / key).unlink()
                results[key] = None
            except OSError as exc:
                results[key] = str(exc)
        return results


def build_object_storage(storage: BackupStorage) -> ObjectStorage:
    spec = storage.spec
    if spec.s3 is not None:
        return S3ObjectStorage(spec.s3.bucket, region=spec.s3.region, endpoint=spec.s3.endpoint)
    if spec.local is not None:
        return LocalObjectStorage(spec.local.root or get_settings().local_storage_dir)
    raise ObjectStorageError(f"storage provider {spec.provider or 'unset'!r} is not supported for retention")
