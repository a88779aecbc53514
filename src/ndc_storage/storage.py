"""Storage client capability contract and driver factory."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, BinaryIO

from ndc_storage.config import ClientConfig, RuntimeSettings
from ndc_storage.errors import NotSupportedError, UnprocessableContentError
from ndc_storage.types import (
    BucketIncludeOptions,
    BucketLifecycle,
    BucketVersioning,
    CopyDestination,
    CopySource,
    GetObjectOptions,
    IncompleteUpload,
    ListBucketsOptions,
    ListIncompleteUploadsOptions,
    ListObjectsOptions,
    MakeBucketOptions,
    ObjectLockConfig,
    ObjectRetention,
    ObjectStream,
    PageInfo,
    PostPredicate,
    PresignedGetOptions,
    PutObjectOptions,
    RemoveObjectError,
    RemoveObjectOptions,
    RemoveObjectsOptions,
    ServerSideEncryption,
    StorageBucket,
    StorageObject,
    UpdateBucketOptions,
    UpdateObjectOptions,
    UploadInfo,
)

SUPPORTED_CLIENT_TYPES = ("s3", "gcs", "azblob", "fs")


class StorageClient:
    """Capability set every backend driver exposes.

    Drivers override the operations their backend supports. Everything else
    raises :class:`NotSupportedError`, which the connector surfaces with a
    stable status instead of failing with an attribute error.
    """

    backend = "unknown"

    def _unsupported(self, operation: str) -> NotSupportedError:
        return NotSupportedError(operation, self.backend)

    def close(self) -> None:
        """Release transport resources held by the driver."""

    # --- Buckets ---

    def make_bucket(self, opts: MakeBucketOptions) -> None:
        raise self._unsupported("make_bucket")

    def remove_bucket(self, name: str) -> None:
        raise self._unsupported("remove_bucket")

    def bucket_exists(self, name: str) -> bool:
        raise self._unsupported("bucket_exists")

    def get_bucket(self, name: str, include: BucketIncludeOptions) -> StorageBucket | None:
        raise self._unsupported("get_bucket")

    def list_buckets(
        self,
        opts: ListBucketsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageBucket], PageInfo]:
        raise self._unsupported("list_buckets")

    def update_bucket(self, name: str, opts: UpdateBucketOptions) -> None:
        """Apply each present bucket setting in turn."""
        if opts.tags is not None:
            self.set_bucket_tagging(name, opts.tags)
        if opts.versioning_enabled is not None:
            self.set_bucket_versioning(name, opts.versioning_enabled)
        if opts.lifecycle is not None:
            self.set_bucket_lifecycle(name, opts.lifecycle)
        if opts.encryption is not None:
            self.set_bucket_encryption(name, opts.encryption)
        if opts.object_lock is not None:
            self.set_object_lock_config(name, opts.object_lock)

    def set_bucket_tagging(self, name: str, tags: dict[str, str]) -> None:
        raise self._unsupported("set_bucket_tagging")

    def get_bucket_tagging(self, name: str) -> dict[str, str]:
        raise self._unsupported("get_bucket_tagging")

    def remove_bucket_tagging(self, name: str) -> None:
        raise self._unsupported("remove_bucket_tagging")

    def set_bucket_versioning(self, name: str, enabled: bool) -> None:
        raise self._unsupported("set_bucket_versioning")

    def get_bucket_versioning(self, name: str) -> BucketVersioning | None:
        raise self._unsupported("get_bucket_versioning")

    def set_bucket_replication(self, name: str, config: dict[str, Any]) -> None:
        raise self._unsupported("set_bucket_replication")

    def get_bucket_replication(self, name: str) -> dict[str, Any] | None:
        raise self._unsupported("get_bucket_replication")

    def remove_bucket_replication(self, name: str) -> None:
        raise self._unsupported("remove_bucket_replication")

    def set_bucket_notification(self, name: str, config: dict[str, Any]) -> None:
        raise self._unsupported("set_bucket_notification")

    def get_bucket_notification(self, name: str) -> dict[str, Any]:
        raise self._unsupported("get_bucket_notification")

    def remove_bucket_notification(self, name: str) -> None:
        raise self._unsupported("remove_bucket_notification")

    def set_bucket_lifecycle(self, name: str, lifecycle: BucketLifecycle) -> None:
        raise self._unsupported("set_bucket_lifecycle")

    def get_bucket_lifecycle(self, name: str) -> BucketLifecycle | None:
        raise self._unsupported("get_bucket_lifecycle")

    def set_bucket_encryption(self, name: str, encryption: ServerSideEncryption) -> None:
        raise self._unsupported("set_bucket_encryption")

    def get_bucket_encryption(self, name: str) -> ServerSideEncryption | None:
        raise self._unsupported("get_bucket_encryption")

    def remove_bucket_encryption(self, name: str) -> None:
        raise self._unsupported("remove_bucket_encryption")

    def set_object_lock_config(self, name: str, config: ObjectLockConfig) -> None:
        raise self._unsupported("set_object_lock_config")

    def get_object_lock_config(self, name: str) -> ObjectLockConfig | None:
        raise self._unsupported("get_object_lock_config")

    def get_bucket_policy(self, name: str) -> str:
        raise self._unsupported("get_bucket_policy")

    # --- Objects ---

    def list_objects(
        self,
        bucket: str,
        opts: ListObjectsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageObject], PageInfo]:
        raise self._unsupported("list_objects")

    def list_incomplete_uploads(
        self, bucket: str, opts: ListIncompleteUploadsOptions
    ) -> list[IncompleteUpload]:
        raise self._unsupported("list_incomplete_uploads")

    def remove_incomplete_upload(self, bucket: str, name: str) -> None:
        raise self._unsupported("remove_incomplete_upload")

    def stat_object(self, bucket: str, name: str, opts: GetObjectOptions) -> StorageObject | None:
        raise self._unsupported("stat_object")

    def get_object(self, bucket: str, name: str, opts: GetObjectOptions) -> ObjectStream:
        raise self._unsupported("get_object")

    def put_object(
        self,
        bucket: str,
        name: str,
        opts: PutObjectOptions,
        reader: BinaryIO,
        size: int | None = None,
    ) -> UploadInfo:
        raise self._unsupported("put_object")

    def copy_object(self, dest: CopyDestination, src: CopySource) -> UploadInfo:
        raise self._unsupported("copy_object")

    def compose_object(self, dest: CopyDestination, sources: list[CopySource]) -> UploadInfo:
        raise self._unsupported("compose_object")

    def remove_object(self, bucket: str, name: str, opts: RemoveObjectOptions) -> None:
        raise self._unsupported("remove_object")

    def remove_objects(
        self,
        bucket: str,
        opts: RemoveObjectsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> list[RemoveObjectError]:
        raise self._unsupported("remove_objects")

    def update_object(self, bucket: str, name: str, opts: UpdateObjectOptions) -> None:
        """Apply tags, legal hold and retention, each only when present."""
        if opts.tags is not None:
            self.set_object_tags(bucket, name, opts.version_id, opts.tags)
        if opts.legal_hold is not None:
            self.set_object_legal_hold(bucket, name, opts.version_id, opts.legal_hold)
        if opts.retention is not None:
            self.set_object_retention(bucket, name, opts.version_id, opts.retention)

    def set_object_tags(
        self, bucket: str, name: str, version_id: str | None, tags: dict[str, str]
    ) -> None:
        raise self._unsupported("set_object_tags")

    def set_object_legal_hold(
        self, bucket: str, name: str, version_id: str | None, enabled: bool
    ) -> None:
        raise self._unsupported("set_object_legal_hold")

    def set_object_retention(
        self, bucket: str, name: str, version_id: str | None, retention: ObjectRetention
    ) -> None:
        raise self._unsupported("set_object_retention")

    def restore_object(self, bucket: str, name: str) -> None:
        raise self._unsupported("restore_object")

    def presigned_get_object(self, bucket: str, name: str, opts: PresignedGetOptions) -> str:
        raise self._unsupported("presigned_get_object")

    def presigned_put_object(self, bucket: str, name: str, expiry: timedelta) -> str:
        raise self._unsupported("presigned_put_object")


def open_storage_client(
    config: ClientConfig,
    runtime: RuntimeSettings | None = None,
) -> StorageClient:
    """Build the driver registered for ``config.type``."""
    if config.uses_native_gcs():
        from ndc_storage.storage_gcs import GCSStorageClient

        return GCSStorageClient(config, runtime)
    if config.type in ("s3", "gcs"):
        from ndc_storage.storage_s3 import S3StorageClient

        return S3StorageClient(config, runtime)
    if config.type == "azblob":
        from ndc_storage.storage_azblob import AzureBlobStorageClient

        return AzureBlobStorageClient(config, runtime)
    if config.type == "fs":
        from ndc_storage.storage_fs import FileSystemStorageClient

        return FileSystemStorageClient(config)
    raise UnprocessableContentError(
        f"unsupported storage client type: {config.type}",
        {"supported": list(SUPPORTED_CLIENT_TYPES)},
    )
