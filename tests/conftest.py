"""Shared test fixtures for ndc-storage tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO

import pytest

from ndc_storage.config import Configuration, RuntimeSettings, parse_configuration
from ndc_storage.connector import Connector
from ndc_storage.errors import StorageBackendError
from ndc_storage.manager import Client, StorageManager
from ndc_storage.storage import StorageClient
from ndc_storage.types import (
    BucketIncludeOptions,
    CopyDestination,
    CopySource,
    GetObjectOptions,
    IncompleteUpload,
    ListBucketsOptions,
    ListIncompleteUploadsOptions,
    ListObjectsOptions,
    MakeBucketOptions,
    ObjectStream,
    PageInfo,
    PostPredicate,
    PresignedGetOptions,
    PutObjectOptions,
    RemoveObjectError,
    RemoveObjectOptions,
    RemoveObjectsOptions,
    StorageBucket,
    StorageObject,
    UploadInfo,
)

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


# --- In-memory storage client ---


class FakeStorageClient(StorageClient):
    """In-memory backend that records every call it receives."""

    backend = "fake"

    def __init__(self, buckets: dict[str, dict[str, bytes]] | None = None) -> None:
        self.buckets: dict[str, dict[str, bytes]] = {
            name: dict(objects) for name, objects in (buckets or {}).items()
        }
        self.tags: dict[tuple[str, str], dict[str, str]] = {}
        self.content_types: dict[tuple[str, str], str | None] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.closed = False

    def calls_to(self, operation: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == operation]

    def close(self) -> None:
        self.closed = True

    def _bucket(self, name: str) -> dict[str, bytes]:
        if name not in self.buckets:
            raise StorageBackendError(
                "bucket", f"bucket {name} does not exist", status_code=404, code="NoSuchBucket"
            )
        return self.buckets[name]

    def _object(self, bucket: str, name: str) -> StorageObject:
        data = self.buckets[bucket][name]
        index = sorted(self.buckets[bucket]).index(name)
        return StorageObject(
            name=name,
            bucket=bucket,
            size=len(data),
            etag=f"etag-{index}",
            last_modified=BASE_TIME + timedelta(days=index),
            content_type=self.content_types.get((bucket, name)),
            tags=self.tags.get((bucket, name)),
        )

    # --- Buckets ---

    def make_bucket(self, opts: MakeBucketOptions) -> None:
        self.calls.append(("make_bucket", opts))
        if opts.name in self.buckets:
            raise StorageBackendError(
                "make_bucket", "bucket already exists", status_code=409, code="BucketAlreadyOwnedByYou"
            )
        self.buckets[opts.name] = {}

    def remove_bucket(self, name: str) -> None:
        self.calls.append(("remove_bucket", name))
        self._bucket(name)
        del self.buckets[name]

    def bucket_exists(self, name: str) -> bool:
        self.calls.append(("bucket_exists", name))
        return name in self.buckets

    def get_bucket(self, name: str, include: BucketIncludeOptions) -> StorageBucket | None:
        self.calls.append(("get_bucket", name, include))
        if name not in self.buckets:
            return None
        return StorageBucket(name=name, creation_time=BASE_TIME)

    def list_buckets(
        self, opts: ListBucketsOptions, post_predicate: PostPredicate | None = None
    ) -> tuple[list[StorageBucket], PageInfo]:
        self.calls.append(("list_buckets", opts))
        names = [
            n
            for n in sorted(self.buckets)
            if n.startswith(opts.prefix)
            and n > opts.start_after
            and (post_predicate is None or post_predicate(n))
        ]
        return self._page([StorageBucket(name=n) for n in names], opts.max_results)

    def set_bucket_tagging(self, name: str, tags: dict[str, str]) -> None:
        self.calls.append(("set_bucket_tagging", name, tags))

    def remove_bucket_tagging(self, name: str) -> None:
        self.calls.append(("remove_bucket_tagging", name))

    def set_bucket_versioning(self, name: str, enabled: bool) -> None:
        self.calls.append(("set_bucket_versioning", name, enabled))

    # --- Objects ---

    @staticmethod
    def _page(items: list[Any], max_results: int) -> tuple[list[Any], PageInfo]:
        if max_results <= 0 or len(items) <= max_results:
            return items, PageInfo(cursor=items[-1].name if items else None)
        page = items[:max_results]
        return page, PageInfo(cursor=page[-1].name, has_next_page=True)

    def list_objects(
        self,
        bucket: str,
        opts: ListObjectsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageObject], PageInfo]:
        self.calls.append(("list_objects", bucket, opts))
        names = [
            n
            for n in sorted(self._bucket(bucket))
            if n.startswith(opts.prefix)
            and n > opts.start_after
            and (post_predicate is None or post_predicate(n))
        ]
        return self._page([self._object(bucket, n) for n in names], opts.max_results)

    def list_incomplete_uploads(
        self, bucket: str, opts: ListIncompleteUploadsOptions
    ) -> list[IncompleteUpload]:
        self.calls.append(("list_incomplete_uploads", bucket, opts))
        return [IncompleteUpload(name=f"{opts.prefix}pending.bin", upload_id="u-1", initiated=BASE_TIME)]

    def stat_object(self, bucket: str, name: str, opts: GetObjectOptions) -> StorageObject | None:
        self.calls.append(("stat_object", bucket, name, opts))
        if name not in self._bucket(bucket):
            return None
        return self._object(bucket, name)

    def get_object(self, bucket: str, name: str, opts: GetObjectOptions) -> ObjectStream:
        self.calls.append(("get_object", bucket, name, opts))
        data = self._bucket(bucket)[name]

        def _chunks() -> ObjectStream:
            for start in range(0, len(data), 4):
                yield data[start : start + 4]

        return _chunks()

    def put_object(
        self,
        bucket: str,
        name: str,
        opts: PutObjectOptions,
        reader: BinaryIO,
        size: int | None = None,
    ) -> UploadInfo:
        self.calls.append(("put_object", bucket, name, opts, size))
        data = reader.read()
        self._bucket(bucket)[name] = data
        self.content_types[(bucket, name)] = opts.content_type
        if opts.tags is not None:
            self.tags[(bucket, name)] = dict(opts.tags)
        return UploadInfo(bucket=bucket, name=name, etag="etag-new", size=len(data))

    def copy_object(self, dest: CopyDestination, src: CopySource) -> UploadInfo:
        self.calls.append(("copy_object", dest, src))
        data = self._bucket(src.bucket)[src.name]
        self._bucket(dest.bucket)[dest.name] = data
        return UploadInfo(bucket=dest.bucket, name=dest.name, size=len(data))

    def compose_object(self, dest: CopyDestination, sources: list[CopySource]) -> UploadInfo:
        self.calls.append(("compose_object", dest, sources))
        data = b"".join(self._bucket(s.bucket)[s.name] for s in sources)
        self._bucket(dest.bucket)[dest.name] = data
        return UploadInfo(bucket=dest.bucket, name=dest.name, size=len(data))

    def remove_object(self, bucket: str, name: str, opts: RemoveObjectOptions) -> None:
        self.calls.append(("remove_object", bucket, name, opts))
        self._bucket(bucket).pop(name, None)

    def remove_objects(
        self,
        bucket: str,
        opts: RemoveObjectsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> list[RemoveObjectError]:
        self.calls.append(("remove_objects", bucket, opts))
        objects = self._bucket(bucket)
        for name in sorted(objects):
            if name.startswith(opts.prefix) and (post_predicate is None or post_predicate(name)):
                del objects[name]
        return []

    def set_object_tags(
        self, bucket: str, name: str, version_id: str | None, tags: dict[str, str]
    ) -> None:
        self.calls.append(("set_object_tags", bucket, name, version_id, tags))
        self.tags[(bucket, name)] = dict(tags)

    def presigned_get_object(self, bucket: str, name: str, opts: PresignedGetOptions) -> str:
        self.calls.append(("presigned_get_object", bucket, name, opts))
        return f"https://fake.local/{bucket}/{name}?expires={int(opts.expiry.total_seconds())}"

    def presigned_put_object(self, bucket: str, name: str, expiry: timedelta) -> str:
        self.calls.append(("presigned_put_object", bucket, name, expiry))
        return f"https://fake.local/{bucket}/{name}?upload&expires={int(expiry.total_seconds())}"


SAMPLE_OBJECTS = {
    "logs/2024/app-ERROR.log": b"boom",
    "logs/2024/app.log": b"fine",
    "logs/2024/error-report.txt": b"report",
    "movies/2000s/memento.mp4": b"0123456789",
    "movies/2010s/inception.mp4": b"dream",
    "readme.txt": b"hello world",
}


@pytest.fixture
def fake_storage():
    """Fake backend with one populated bucket ``a`` and an empty bucket ``b``."""
    return FakeStorageClient({"a": SAMPLE_OBJECTS, "b": {}})


@pytest.fixture
def runtime():
    return RuntimeSettings(max_download_size_mbs=1, max_upload_size_mbs=1)


@pytest.fixture
def manager(fake_storage, runtime):
    """Manager with a single client ``c1`` whose default bucket is ``a``."""
    return StorageManager(
        [
            Client(
                id="c1",
                storage=fake_storage,
                default_bucket="a",
                default_presigned_expiry=timedelta(hours=24),
            )
        ],
        runtime,
    )


@pytest.fixture
def configuration() -> Configuration:
    return parse_configuration(
        {
            "clients": [{"id": "c1", "type": "s3", "defaultBucket": "a"}],
            "concurrency": {"query": 3, "mutation": 1},
            "runtime": {"maxDownloadSizeMBs": 1, "maxUploadSizeMBs": 1},
        }
    )


@pytest.fixture
def connector(manager, configuration):
    return Connector(manager, configuration)


@pytest.fixture
def storage_factory():
    """Constructor for extra in-memory backends."""
    return FakeStorageClient
