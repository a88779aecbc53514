"""Azure Blob Storage driver: containers are buckets, blobs are objects."""

from __future__ import annotations

import base64
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO, Iterator

from azure.core.exceptions import HttpResponseError, ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import (
    BlobBlock,
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    ImmutabilityPolicy,
    generate_blob_sas,
)
from loguru import logger

from ndc_storage.concurrency import raise_if_cancelled
from ndc_storage.config import (
    ClientConfig,
    ConnectionStringAuthentication,
    RuntimeSettings,
    SharedKeyAuthentication,
    resolve_env,
)
from ndc_storage.errors import ConfigurationError, StorageBackendError, UnprocessableContentError
from ndc_storage.storage import StorageClient
from ndc_storage.types import (
    BucketIncludeOptions,
    CopyDestination,
    CopySource,
    GetObjectOptions,
    ListBucketsOptions,
    ListObjectsOptions,
    MakeBucketOptions,
    ObjectCopyInfo,
    ObjectRetention,
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


def _block_id(index: int) -> str:
    return base64.b64encode(f"{index:08d}".encode()).decode("ascii")


def _object_from_blob(blob: Any) -> StorageObject:
    settings = getattr(blob, "content_settings", None)
    immutability = getattr(blob, "immutability_policy", None)
    copy = getattr(blob, "copy", None)
    md5 = getattr(settings, "content_md5", None) if settings else None
    return StorageObject(
        name=blob.name,
        size=getattr(blob, "size", None),
        etag=(blob.etag or "").strip('"') or None,
        last_modified=blob.last_modified,
        content_type=settings.content_type if settings else None,
        content_encoding=settings.content_encoding if settings else None,
        content_language=settings.content_language if settings else None,
        content_disposition=settings.content_disposition if settings else None,
        cache_control=settings.cache_control if settings else None,
        metadata=dict(blob.metadata) if blob.metadata else None,
        tags=dict(blob.tags) if getattr(blob, "tags", None) else None,
        tag_count=getattr(blob, "tag_count", None),
        storage_class=str(blob.blob_tier) if getattr(blob, "blob_tier", None) else None,
        is_latest=getattr(blob, "is_current_version", None),
        is_delete_marker=getattr(blob, "deleted", None),
        version_id=getattr(blob, "version_id", None),
        legal_hold=getattr(blob, "has_legal_hold", None),
        retention_mode=getattr(immutability, "policy_mode", None) if immutability else None,
        retention_until_date=getattr(immutability, "expiry_time", None) if immutability else None,
        copy=(
            ObjectCopyInfo(
                id=copy.id,
                status=copy.status,
                source=copy.source,
                progress=copy.progress,
                completion_time=copy.completion_time,
                status_description=copy.status_description,
            )
            if copy is not None and copy.id
            else None
        ),
        raw_metadata={"Content-MD5": base64.b64encode(md5).decode("ascii")} if md5 else None,
    )


class AzureBlobStorageClient(StorageClient):
    """Storage client for Azure Blob Storage accounts."""

    backend = "azblob"

    def __init__(self, config: ClientConfig, runtime: RuntimeSettings | None = None) -> None:
        timeout = runtime.http.timeout_seconds if runtime and runtime.http else None
        kwargs: dict[str, Any] = {"retry_total": config.max_retries}
        if timeout:
            kwargs["connection_timeout"] = timeout
            kwargs["read_timeout"] = timeout

        auth = config.authentication
        endpoint = config.resolve_endpoint()
        if isinstance(auth, ConnectionStringAuthentication):
            self._service = BlobServiceClient.from_connection_string(
                resolve_env(auth.connection_string), **kwargs
            )
        elif isinstance(auth, SharedKeyAuthentication):
            account_name = resolve_env(auth.account_name)
            account_url = endpoint or f"https://{account_name}.blob.core.windows.net"
            self._service = BlobServiceClient(
                account_url,
                credential={"account_name": account_name, "account_key": resolve_env(auth.account_key)},
                **kwargs,
            )
        else:
            raise ConfigurationError("azblob clients require connectionString or sharedKey authentication")

    @contextmanager
    def _translate(self, operation: str) -> Iterator[None]:
        try:
            yield
        except HttpResponseError as e:
            logger.warning(f"azblob {operation} failed: {e.message}")
            raise StorageBackendError(
                operation, e.reason or str(e.message), status_code=e.status_code, code=e.error_code
            ) from e

    def close(self) -> None:
        self._service.close()

    def _blob(self, bucket: str, name: str, version_id: str | None = None) -> Any:
        return self._service.get_blob_client(bucket, name, version_id=version_id)

    # --- Containers ---

    def make_bucket(self, opts: MakeBucketOptions) -> None:
        try:
            self._service.create_container(opts.name, metadata=opts.tags or None)
        except ResourceExistsError as e:
            raise UnprocessableContentError(f"bucket already exists: {opts.name}") from e
        except HttpResponseError:
            with self._translate("make_bucket"):
                raise

    def remove_bucket(self, name: str) -> None:
        with self._translate("remove_bucket"):
            self._service.delete_container(name)

    def bucket_exists(self, name: str) -> bool:
        with self._translate("bucket_exists"):
            return self._service.get_container_client(name).exists()

    def get_bucket(self, name: str, include: BucketIncludeOptions) -> StorageBucket | None:
        try:
            props = self._service.get_container_client(name).get_container_properties()
        except ResourceNotFoundError:
            return None
        except HttpResponseError:
            with self._translate("get_bucket"):
                raise
        return StorageBucket(
            name=name,
            creation_time=props.last_modified,
            tags=dict(props.metadata or {}) if include.tags else None,
        )

    def list_buckets(
        self,
        opts: ListBucketsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageBucket], PageInfo]:
        buckets: list[StorageBucket] = []
        has_next_page = False
        with self._translate("list_buckets"):
            for props in self._service.list_containers(
                name_starts_with=opts.prefix or None, include_metadata=opts.include.tags
            ):
                if opts.start_after and props.name <= opts.start_after:
                    continue
                if post_predicate is not None and not post_predicate(props.name):
                    continue
                if opts.max_results > 0 and len(buckets) >= opts.max_results:
                    has_next_page = True
                    break
                buckets.append(
                    StorageBucket(
                        name=props.name,
                        creation_time=props.last_modified,
                        tags=dict(props.metadata or {}) if opts.include.tags else None,
                    )
                )
        cursor = buckets[-1].name if buckets else None
        return buckets, PageInfo(cursor=cursor, has_next_page=has_next_page)

    def set_bucket_tagging(self, name: str, tags: dict[str, str]) -> None:
        with self._translate("set_bucket_tagging"):
            self._service.get_container_client(name).set_container_metadata(metadata=tags)

    def get_bucket_tagging(self, name: str) -> dict[str, str]:
        with self._translate("get_bucket_tagging"):
            props = self._service.get_container_client(name).get_container_properties()
        return dict(props.metadata or {})

    def remove_bucket_tagging(self, name: str) -> None:
        self.set_bucket_tagging(name, {})

    # --- Blobs ---

    def _iter_blobs(self, bucket: str, opts: ListObjectsOptions) -> Iterator[StorageObject]:
        container = self._service.get_container_client(bucket)
        include: list[str] = []
        if opts.include.metadata:
            include.append("metadata")
        if opts.include.tags:
            include.append("tags")
        if opts.include.copy:
            include.append("copy")
        if opts.include.legal_hold:
            include.append("legalhold")
        if opts.include.object_lock:
            include.append("immutabilitypolicy")
        if opts.with_versions:
            include.extend(["versions", "deleted"])

        if opts.recursive:
            pages = container.list_blobs(name_starts_with=opts.prefix or None, include=include or None).by_page()
        else:
            pages = container.walk_blobs(
                name_starts_with=opts.prefix or None, include=include or None, delimiter="/"
            ).by_page()
        for page in pages:
            raise_if_cancelled()
            for item in page:
                # BlobPrefix entries carry no etag
                if not hasattr(item, "etag"):
                    yield StorageObject(name=item.name, is_directory=True)
                else:
                    yield _object_from_blob(item)

    def list_objects(
        self,
        bucket: str,
        opts: ListObjectsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageObject], PageInfo]:
        objects: list[StorageObject] = []
        has_next_page = False
        with self._translate("list_objects"):
            for obj in self._iter_blobs(bucket, opts):
                if opts.start_after and obj.name <= opts.start_after:
                    continue
                if post_predicate is not None and not post_predicate(obj.name):
                    continue
                if opts.max_results > 0 and len(objects) >= opts.max_results:
                    has_next_page = True
                    break
                objects.append(obj)
        cursor = objects[-1].name if objects else None
        return objects, PageInfo(cursor=cursor, has_next_page=has_next_page)

    def stat_object(self, bucket: str, name: str, opts: GetObjectOptions) -> StorageObject | None:
        blob = self._blob(bucket, name, opts.version_id)
        try:
            props = blob.get_blob_properties()
        except ResourceNotFoundError:
            return None
        except HttpResponseError:
            with self._translate("stat_object"):
                raise
        obj = _object_from_blob(props)
        if opts.include.tags and obj.tag_count:
            with self._translate("get_blob_tags"):
                obj.tags = dict(blob.get_blob_tags())
        return obj

    def get_object(self, bucket: str, name: str, opts: GetObjectOptions) -> ObjectStream:
        with self._translate("get_object"):
            downloader = self._blob(bucket, name, opts.version_id).download_blob()

        def _chunks() -> ObjectStream:
            with self._translate("get_object"):
                yield from downloader.chunks()

        return _chunks()

    def put_object(
        self,
        bucket: str,
        name: str,
        opts: PutObjectOptions,
        reader: BinaryIO,
        size: int | None = None,
    ) -> UploadInfo:
        settings = ContentSettings(
            content_type=opts.content_type,
            content_encoding=opts.content_encoding,
            content_language=opts.content_language,
            content_disposition=opts.content_disposition,
            cache_control=opts.cache_control,
        )
        kwargs: dict[str, Any] = {
            "length": size,
            "overwrite": True,
            "metadata": opts.metadata,
            "tags": opts.tags,
            "content_settings": settings,
            "max_concurrency": opts.num_threads or 1,
        }
        if opts.storage_class:
            kwargs["standard_blob_tier"] = opts.storage_class
        if opts.legal_hold is not None:
            kwargs["legal_hold"] = opts.legal_hold
        if opts.retention is not None and opts.retention.retain_until_date:
            kwargs["immutability_policy"] = ImmutabilityPolicy(
                expiry_time=opts.retention.retain_until_date, policy_mode=opts.retention.mode
            )
        with self._translate("put_object"):
            resp = self._blob(bucket, name).upload_blob(reader, **kwargs)
        return UploadInfo(
            bucket=bucket,
            name=name,
            etag=(resp.get("etag") or "").strip('"') or None,
            size=size,
            last_modified=resp.get("last_modified"),
            version_id=resp.get("version_id"),
        )

    def _sas_url(self, bucket: str, name: str, permission: BlobSasPermissions, expiry: timedelta) -> str:
        credential = self._service.credential
        account_key = getattr(credential, "account_key", None)
        if not account_key:
            raise UnprocessableContentError("presigned URLs require a shared key credential")
        token = generate_blob_sas(
            account_name=self._service.account_name,
            container_name=bucket,
            blob_name=name,
            account_key=account_key,
            permission=permission,
            expiry=datetime.now(timezone.utc) + expiry,
        )
        return f"{self._blob(bucket, name).url}?{token}"

    def copy_object(self, dest: CopyDestination, src: CopySource) -> UploadInfo:
        source_url = self._blob(src.bucket, src.name, src.version_id).url
        with self._translate("copy_object"):
            resp = self._blob(dest.bucket, dest.name).start_copy_from_url(
                source_url, metadata=dest.metadata, tags=dest.tags, requires_sync=True
            )
        return UploadInfo(
            bucket=dest.bucket,
            name=dest.name,
            etag=(resp.get("etag") or "").strip('"') or None,
            last_modified=resp.get("last_modified"),
            version_id=resp.get("version_id"),
        )

    def compose_object(self, dest: CopyDestination, sources: list[CopySource]) -> UploadInfo:
        """Stage every source as a block of the destination, then commit the list."""
        target = self._blob(dest.bucket, dest.name)
        blocks: list[BlobBlock] = []
        for index, src in enumerate(sources):
            raise_if_cancelled()
            block_id = _block_id(index)
            url = self._sas_url(src.bucket, src.name, BlobSasPermissions(read=True), timedelta(hours=1))
            with self._translate("compose_object"):
                target.stage_block_from_url(block_id, url)
            blocks.append(BlobBlock(block_id=block_id))
        settings = ContentSettings(content_type=dest.content_type) if dest.content_type else None
        with self._translate("compose_object"):
            resp = target.commit_block_list(
                blocks, metadata=dest.metadata, tags=dest.tags, content_settings=settings
            )
        return UploadInfo(
            bucket=dest.bucket,
            name=dest.name,
            etag=(resp.get("etag") or "").strip('"') or None,
            last_modified=resp.get("last_modified"),
            version_id=resp.get("version_id"),
        )

    def remove_object(self, bucket: str, name: str, opts: RemoveObjectOptions) -> None:
        blob = self._blob(bucket, name, opts.version_id)
        try:
            if opts.version_id:
                blob.delete_blob()
            else:
                blob.delete_blob(delete_snapshots="include")
        except ResourceNotFoundError:
            return
        except HttpResponseError:
            with self._translate("remove_object"):
                raise

    def remove_objects(
        self,
        bucket: str,
        opts: RemoveObjectsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> list[RemoveObjectError]:
        objects, _ = self.list_objects(
            bucket,
            ListObjectsOptions(
                prefix=opts.prefix,
                recursive=opts.recursive,
                max_results=opts.max_results,
                start_after=opts.start_after,
            ),
            post_predicate,
        )
        errors: list[RemoveObjectError] = []
        for obj in objects:
            if obj.is_directory:
                continue
            try:
                self.remove_object(bucket, obj.name, RemoveObjectOptions())
            except StorageBackendError as e:
                errors.append(RemoveObjectError(object_name=obj.name, error=e.message))
        return errors

    def set_object_tags(
        self, bucket: str, name: str, version_id: str | None, tags: dict[str, str]
    ) -> None:
        with self._translate("set_object_tags"):
            self._blob(bucket, name).set_blob_tags(tags, version_id=version_id)

    def set_object_legal_hold(
        self, bucket: str, name: str, version_id: str | None, enabled: bool
    ) -> None:
        with self._translate("set_object_legal_hold"):
            self._blob(bucket, name, version_id).set_legal_hold(enabled)

    def set_object_retention(
        self, bucket: str, name: str, version_id: str | None, retention: ObjectRetention
    ) -> None:
        blob = self._blob(bucket, name, version_id)
        with self._translate("set_object_retention"):
            if retention.retain_until_date is None:
                blob.delete_immutability_policy()
            else:
                blob.set_immutability_policy(
                    ImmutabilityPolicy(expiry_time=retention.retain_until_date, policy_mode=retention.mode)
                )

    def restore_object(self, bucket: str, name: str) -> None:
        with self._translate("restore_object"):
            self._blob(bucket, name).undelete_blob()

    def presigned_get_object(self, bucket: str, name: str, opts: PresignedGetOptions) -> str:
        return self._sas_url(bucket, name, BlobSasPermissions(read=True), opts.expiry or timedelta(hours=24))

    def presigned_put_object(self, bucket: str, name: str, expiry: timedelta) -> str:
        return self._sas_url(bucket, name, BlobSasPermissions(create=True, write=True), expiry)
