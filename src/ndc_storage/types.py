"""Data model shared by storage drivers, the client manager and the executors."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Callable, Generator

# Residual filter on a key or bucket name; drivers drop non-matching rows
# during page iteration.
PostPredicate = Callable[[str], bool]


def normalize_object_path(value: str) -> str:
    return value.replace("\\", "/")


@dataclass
class ObjectIncludeOptions:
    """Optional object fields the backend should hydrate."""

    metadata: bool = False
    checksum: bool = False
    tags: bool = False
    copy: bool = False
    versions: bool = False
    legal_hold: bool = False
    lifecycle: bool = False
    encryption: bool = False
    object_lock: bool = False

    def any(self) -> bool:
        return any(getattr(self, f.name) for f in fields(self))


@dataclass
class BucketIncludeOptions:
    tags: bool = False
    versioning: bool = False
    lifecycle: bool = False
    encryption: bool = False
    object_lock: bool = False

    def any(self) -> bool:
        return any(getattr(self, f.name) for f in fields(self))


@dataclass
class PageInfo:
    cursor: str | None = None
    has_next_page: bool = False


@dataclass
class ObjectCopyInfo:
    id: str | None = None
    status: str | None = None
    source: str | None = None
    progress: str | None = None
    completion_time: datetime | None = None
    status_description: str | None = None


@dataclass
class ObjectRestoreInfo:
    ongoing_restore: bool = False
    expiry_time: datetime | None = None


@dataclass
class ObjectOwner:
    id: str | None = None
    name: str | None = None


@dataclass
class ObjectRetention:
    mode: str | None = None
    retain_until_date: datetime | None = None
    governance_bypass: bool = False


@dataclass
class StorageObject:
    """A single object as reported by a backend."""

    name: str
    client_id: str = ""
    bucket: str = ""
    size: int | None = None
    etag: str | None = None
    last_modified: datetime | None = None
    content_type: str | None = None
    content_encoding: str | None = None
    content_language: str | None = None
    content_disposition: str | None = None
    cache_control: str | None = None
    expires: datetime | None = None
    metadata: dict[str, str] | None = None
    raw_metadata: dict[str, str] | None = None
    tags: dict[str, str] | None = None
    tag_count: int | None = None
    owner: ObjectOwner | None = None
    storage_class: str | None = None
    is_directory: bool = False
    is_latest: bool | None = None
    is_delete_marker: bool | None = None
    version_id: str | None = None
    replication_status: str | None = None
    expiration: datetime | None = None
    expiration_rule_id: str | None = None
    legal_hold: bool | None = None
    retention_mode: str | None = None
    retention_until_date: datetime | None = None
    restore: ObjectRestoreInfo | None = None
    copy: ObjectCopyInfo | None = None
    checksum_crc32: str | None = None
    checksum_crc32c: str | None = None
    checksum_sha1: str | None = None
    checksum_sha256: str | None = None
    checksum_crc64nvme: str | None = None


@dataclass
class BucketVersioning:
    enabled: bool = False
    mfa_delete: bool | None = None


@dataclass
class LifecycleRule:
    id: str | None = None
    enabled: bool = True
    prefix: str | None = None
    expiration_days: int | None = None
    noncurrent_expiration_days: int | None = None
    transition_days: int | None = None
    transition_storage_class: str | None = None
    abort_incomplete_upload_days: int | None = None


@dataclass
class BucketLifecycle:
    rules: list[LifecycleRule] = field(default_factory=list)


@dataclass
class ServerSideEncryption:
    sse_algorithm: str | None = None
    kms_master_key_id: str | None = None


@dataclass
class ObjectLockConfig:
    enabled: bool = False
    mode: str | None = None
    validity: int | None = None
    unit: str | None = None


@dataclass
class StorageBucket:
    name: str
    client_id: str = ""
    creation_time: datetime | None = None
    region: str | None = None
    tags: dict[str, str] | None = None
    versioning: BucketVersioning | None = None
    lifecycle: BucketLifecycle | None = None
    encryption: ServerSideEncryption | None = None
    object_lock: ObjectLockConfig | None = None


@dataclass
class ListObjectsOptions:
    prefix: str = ""
    recursive: bool = False
    max_results: int = 0
    start_after: str = ""
    include: ObjectIncludeOptions = field(default_factory=ObjectIncludeOptions)
    num_threads: int = 1
    with_versions: bool = False


@dataclass
class ListBucketsOptions:
    prefix: str = ""
    max_results: int = 0
    start_after: str = ""
    include: BucketIncludeOptions = field(default_factory=BucketIncludeOptions)
    num_threads: int = 1


@dataclass
class MakeBucketOptions:
    name: str
    region: str | None = None
    object_lock: bool = False
    tags: dict[str, str] | None = None


@dataclass
class UpdateBucketOptions:
    tags: dict[str, str] | None = None
    versioning_enabled: bool | None = None
    lifecycle: BucketLifecycle | None = None
    encryption: ServerSideEncryption | None = None
    object_lock: ObjectLockConfig | None = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))


@dataclass
class GetObjectOptions:
    version_id: str | None = None
    part_number: int | None = None
    include: ObjectIncludeOptions = field(default_factory=ObjectIncludeOptions)


@dataclass
class PutObjectOptions:
    content_type: str | None = None
    content_encoding: str | None = None
    content_disposition: str | None = None
    content_language: str | None = None
    cache_control: str | None = None
    expires: datetime | None = None
    metadata: dict[str, str] | None = None
    tags: dict[str, str] | None = None
    storage_class: str | None = None
    retention: ObjectRetention | None = None
    legal_hold: bool | None = None
    send_content_md5: bool = False
    part_size: int | None = None
    num_threads: int | None = None


@dataclass
class UploadInfo:
    bucket: str
    name: str
    client_id: str = ""
    etag: str | None = None
    size: int | None = None
    last_modified: datetime | None = None
    location: str | None = None
    version_id: str | None = None
    checksum_crc32: str | None = None
    checksum_crc32c: str | None = None
    checksum_sha1: str | None = None
    checksum_sha256: str | None = None


@dataclass
class CopySource:
    bucket: str
    name: str
    version_id: str | None = None


@dataclass
class CopyDestination:
    bucket: str
    name: str
    metadata: dict[str, str] | None = None
    tags: dict[str, str] | None = None
    content_type: str | None = None


@dataclass
class RemoveObjectOptions:
    version_id: str | None = None
    force_delete: bool = False
    governance_bypass: bool = False


@dataclass
class RemoveObjectsOptions:
    prefix: str = ""
    recursive: bool = False
    governance_bypass: bool = False
    max_results: int = 0
    start_after: str = ""


@dataclass
class RemoveObjectError:
    object_name: str
    error: str
    version_id: str | None = None


@dataclass
class UpdateObjectOptions:
    version_id: str | None = None
    tags: dict[str, str] | None = None
    legal_hold: bool | None = None
    retention: ObjectRetention | None = None

    def is_empty(self) -> bool:
        return self.tags is None and self.legal_hold is None and self.retention is None


@dataclass
class PresignedGetOptions:
    expiry: timedelta | None = None
    request_params: dict[str, list[str]] | None = None


@dataclass
class PresignedURL:
    url: str
    expired_at: datetime


@dataclass
class IncompleteUpload:
    name: str
    upload_id: str
    initiated: datetime | None = None
    storage_class: str | None = None
    size: int | None = None


@dataclass
class ListIncompleteUploadsOptions:
    prefix: str = ""
    recursive: bool = False


# Lazy byte stream of an object body; closing it releases the connection.
ObjectStream = Generator[bytes, None, None]


@dataclass
class ClientCredentials:
    """Client selector and optional inline credentials of a request."""

    client_id: str | None = None
    client_type: str | None = None
    endpoint: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    def has_credentials(self) -> bool:
        return bool(self.endpoint or self.access_key_id or self.secret_access_key)


@dataclass
class BucketArguments(ClientCredentials):
    bucket: str = ""
