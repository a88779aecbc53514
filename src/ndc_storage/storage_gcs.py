"""Google Cloud Storage driver over the JSON API, for service-account and anonymous clients."""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, BinaryIO, Iterator

import google.auth
from google.api_core.exceptions import GoogleAPICallError, NotFound
from google.auth.credentials import AnonymousCredentials, Signing
from google.auth.exceptions import DefaultCredentialsError, TransportError
from google.cloud import storage
from loguru import logger

from ndc_storage.concurrency import raise_if_cancelled
from ndc_storage.config import (
    AnonymousAuthentication,
    ClientConfig,
    CredentialsAuthentication,
    RuntimeSettings,
    resolve_env,
)
from ndc_storage.errors import ConfigurationError, StorageBackendError, UnprocessableContentError
from ndc_storage.storage import StorageClient
from ndc_storage.types import (
    BucketIncludeOptions,
    BucketVersioning,
    CopyDestination,
    CopySource,
    GetObjectOptions,
    ListBucketsOptions,
    ListObjectsOptions,
    MakeBucketOptions,
    ObjectOwner,
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

CHUNK_SIZE = 256 * 1024


def _generation(version_id: str | None) -> int | None:
    if not version_id:
        return None
    try:
        return int(version_id)
    except ValueError as e:
        raise UnprocessableContentError(f"invalid generation version: {version_id}") from e


def _object_from_blob(blob: Any, with_versions: bool = False) -> StorageObject:
    owner = blob.owner or None
    return StorageObject(
        name=blob.name,
        size=blob.size,
        etag=blob.etag,
        last_modified=blob.updated,
        content_type=blob.content_type,
        content_encoding=blob.content_encoding,
        content_language=blob.content_language,
        content_disposition=blob.content_disposition,
        cache_control=blob.cache_control,
        metadata=dict(blob.metadata) if blob.metadata else None,
        owner=ObjectOwner(id=owner.get("entityId"), name=owner.get("entity")) if owner else None,
        storage_class=blob.storage_class,
        version_id=str(blob.generation) if blob.generation is not None else None,
        is_latest=(blob.time_deleted is None) if with_versions else None,
        legal_hold=blob.temporary_hold,
        retention_until_date=blob.retention_expiration_time,
        checksum_crc32c=blob.crc32c,
        raw_metadata={"Content-MD5": blob.md5_hash} if blob.md5_hash else None,
    )


def _upload_info(bucket: str, blob: Any) -> UploadInfo:
    return UploadInfo(
        bucket=bucket,
        name=blob.name,
        etag=blob.etag,
        size=blob.size,
        last_modified=blob.updated,
        version_id=str(blob.generation) if blob.generation is not None else None,
    )


def _load_credentials(auth: CredentialsAuthentication) -> tuple[Any, str | None]:
    try:
        raw = resolve_env(auth.credentials)
        if raw:
            return google.auth.load_credentials_from_dict(json.loads(raw))
        path = resolve_env(auth.credentials_file)
        if path:
            return google.auth.load_credentials_from_file(path)
    except (ValueError, DefaultCredentialsError) as e:
        raise ConfigurationError(f"invalid gcs credentials: {e}") from e
    raise ConfigurationError("require either credential JSON or file")


class GCSStorageClient(StorageClient):
    """Storage client for Google Cloud Storage; versions are object generations."""

    backend = "gcs"

    def __init__(self, config: ClientConfig, runtime: RuntimeSettings | None = None) -> None:
        auth = config.authentication
        if isinstance(auth, CredentialsAuthentication):
            credentials, detected_project = _load_credentials(auth)
        elif isinstance(auth, AnonymousAuthentication):
            credentials, detected_project = AnonymousCredentials(), None
        else:
            raise ConfigurationError("native gcs clients require credentials or anonymous authentication")

        project = resolve_env(config.project_id) or detected_project or "<none>"
        endpoint = config.resolve_endpoint()
        self._client = storage.Client(
            project=project,
            credentials=credentials,
            client_options={"api_endpoint": endpoint} if endpoint else None,
        )
        self._public_host = resolve_env(config.public_host)
        self._timeout = runtime.http.timeout_seconds if runtime and runtime.http else 60.0

    @contextmanager
    def _translate(self, operation: str) -> Iterator[None]:
        try:
            yield
        except GoogleAPICallError as e:
            logger.warning(f"gcs {operation} failed: {e.message}")
            raise StorageBackendError(
                operation, e.message, status_code=e.code, code=type(e).__name__
            ) from e
        except TransportError as e:
            logger.warning(f"gcs {operation} failed: {e}")
            raise StorageBackendError(operation, str(e), status_code=502) from e

    def close(self) -> None:
        self._client.close()

    def _blob(self, bucket: str, name: str, version_id: str | None = None) -> Any:
        return self._client.bucket(bucket).blob(name, generation=_generation(version_id))

    # --- Buckets ---

    def make_bucket(self, opts: MakeBucketOptions) -> None:
        bucket = self._client.bucket(opts.name)
        if opts.tags:
            bucket.labels = opts.tags
        with self._translate("make_bucket"):
            self._client.create_bucket(bucket, location=opts.region, timeout=self._timeout)

    def remove_bucket(self, name: str) -> None:
        with self._translate("remove_bucket"):
            self._client.bucket(name).delete(timeout=self._timeout)

    def bucket_exists(self, name: str) -> bool:
        with self._translate("bucket_exists"):
            return self._client.bucket(name).exists(timeout=self._timeout)

    def _to_bucket(self, bucket: Any, include: BucketIncludeOptions) -> StorageBucket:
        return StorageBucket(
            name=bucket.name,
            creation_time=bucket.time_created,
            region=bucket.location,
            tags=dict(bucket.labels or {}) if include.tags else None,
            versioning=BucketVersioning(enabled=bool(bucket.versioning_enabled)) if include.versioning else None,
        )

    def get_bucket(self, name: str, include: BucketIncludeOptions) -> StorageBucket | None:
        with self._translate("get_bucket"):
            bucket = self._client.lookup_bucket(name, timeout=self._timeout)
        return self._to_bucket(bucket, include) if bucket is not None else None

    def list_buckets(
        self,
        opts: ListBucketsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageBucket], PageInfo]:
        buckets: list[StorageBucket] = []
        has_next_page = False
        with self._translate("list_buckets"):
            for bucket in self._client.list_buckets(prefix=opts.prefix or None, timeout=self._timeout):
                if opts.start_after and bucket.name <= opts.start_after:
                    continue
                if post_predicate is not None and not post_predicate(bucket.name):
                    continue
                if opts.max_results > 0 and len(buckets) >= opts.max_results:
                    has_next_page = True
                    break
                buckets.append(self._to_bucket(bucket, opts.include))
        cursor = buckets[-1].name if buckets else None
        return buckets, PageInfo(cursor=cursor, has_next_page=has_next_page)

    def _patch_bucket(self, operation: str, name: str, **attrs: Any) -> None:
        with self._translate(operation):
            bucket = self._client.get_bucket(name, timeout=self._timeout)
            for key, value in attrs.items():
                setattr(bucket, key, value)
            bucket.patch(timeout=self._timeout)

    def set_bucket_tagging(self, name: str, tags: dict[str, str]) -> None:
        self._patch_bucket("set_bucket_tagging", name, labels=tags)

    def get_bucket_tagging(self, name: str) -> dict[str, str]:
        with self._translate("get_bucket_tagging"):
            return dict(self._client.get_bucket(name, timeout=self._timeout).labels or {})

    def remove_bucket_tagging(self, name: str) -> None:
        self.set_bucket_tagging(name, {})

    def set_bucket_versioning(self, name: str, enabled: bool) -> None:
        self._patch_bucket("set_bucket_versioning", name, versioning_enabled=enabled)

    def get_bucket_versioning(self, name: str) -> BucketVersioning | None:
        with self._translate("get_bucket_versioning"):
            bucket = self._client.get_bucket(name, timeout=self._timeout)
        return BucketVersioning(enabled=bool(bucket.versioning_enabled))

    # --- Objects ---

    def _iter_objects(self, bucket: str, opts: ListObjectsOptions) -> Iterator[StorageObject]:
        iterator = self._client.list_blobs(
            bucket,
            prefix=opts.prefix or None,
            delimiter=None if opts.recursive else "/",
            start_offset=opts.start_after or None,
            versions=opts.with_versions,
            timeout=self._timeout,
        )
        for page in iterator.pages:
            raise_if_cancelled()
            entries = [_object_from_blob(blob, opts.with_versions) for blob in page]
            entries.extend(StorageObject(name=prefix, is_directory=True) for prefix in page.prefixes)
            yield from sorted(entries, key=lambda obj: obj.name)

    def list_objects(
        self,
        bucket: str,
        opts: ListObjectsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageObject], PageInfo]:
        objects: list[StorageObject] = []
        has_next_page = False
        with self._translate("list_objects"):
            for obj in self._iter_objects(bucket, opts):
                # start_offset is inclusive
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
        with self._translate("stat_object"):
            blob = self._client.bucket(bucket).get_blob(
                name, generation=_generation(opts.version_id), timeout=self._timeout
            )
        return _object_from_blob(blob) if blob is not None else None

    def get_object(self, bucket: str, name: str, opts: GetObjectOptions) -> ObjectStream:
        blob = self._blob(bucket, name, opts.version_id)

        def _chunks() -> ObjectStream:
            with self._translate("get_object"), blob.open("rb", chunk_size=CHUNK_SIZE) as reader:
                yield from iter(lambda: reader.read(CHUNK_SIZE), b"")

        return _chunks()

    def put_object(
        self,
        bucket: str,
        name: str,
        opts: PutObjectOptions,
        reader: BinaryIO,
        size: int | None = None,
    ) -> UploadInfo:
        blob = self._blob(bucket, name)
        blob.cache_control = opts.cache_control
        blob.content_disposition = opts.content_disposition
        blob.content_encoding = opts.content_encoding
        blob.content_language = opts.content_language
        blob.metadata = opts.metadata
        blob.storage_class = opts.storage_class
        blob.temporary_hold = bool(opts.legal_hold)
        with self._translate("put_object"):
            blob.upload_from_file(reader, size=size, content_type=opts.content_type, timeout=self._timeout)
        return _upload_info(bucket, blob)

    def copy_object(self, dest: CopyDestination, src: CopySource) -> UploadInfo:
        source_bucket = self._client.bucket(src.bucket)
        with self._translate("copy_object"):
            blob = source_bucket.copy_blob(
                source_bucket.blob(src.name),
                self._client.bucket(dest.bucket),
                dest.name,
                source_generation=_generation(src.version_id),
                timeout=self._timeout,
            )
            if dest.metadata or dest.content_type:
                blob.metadata = dest.metadata
                blob.content_type = dest.content_type
                blob.patch(timeout=self._timeout)
        return _upload_info(dest.bucket, blob)

    def remove_object(self, bucket: str, name: str, opts: RemoveObjectOptions) -> None:
        if opts.force_delete:
            errors = self.remove_objects(bucket, RemoveObjectsOptions(prefix=name, recursive=True))
            if errors:
                raise StorageBackendError("remove_object", errors[0].error, code="DeleteFailed")
            return
        try:
            self._client.bucket(bucket).delete_blob(
                name, generation=_generation(opts.version_id), timeout=self._timeout
            )
        except NotFound:
            return
        except GoogleAPICallError:
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
            raise_if_cancelled()
            try:
                self.remove_object(bucket, obj.name, RemoveObjectOptions())
            except StorageBackendError as e:
                errors.append(RemoveObjectError(object_name=obj.name, error=e.message))
        return errors

    def set_object_legal_hold(
        self, bucket: str, name: str, version_id: str | None, enabled: bool
    ) -> None:
        blob = self._blob(bucket, name, version_id)
        blob.temporary_hold = enabled
        with self._translate("set_object_legal_hold"):
            blob.patch(timeout=self._timeout)

    def set_object_retention(
        self, bucket: str, name: str, version_id: str | None, retention: ObjectRetention
    ) -> None:
        blob = self._blob(bucket, name, version_id)
        blob.retention.mode = retention.mode
        blob.retention.retain_until_time = retention.retain_until_date
        with self._translate("set_object_retention"):
            blob.patch(override_unlocked_retention=retention.governance_bypass, timeout=self._timeout)

    def restore_object(self, bucket: str, name: str) -> None:
        with self._translate("restore_object"):
            self._client.bucket(bucket).restore_blob(name, timeout=self._timeout)

    def _signed_url(self, bucket: str, name: str, method: str, expiry: timedelta, **kwargs: Any) -> str:
        if not isinstance(self._client._credentials, Signing):
            raise UnprocessableContentError("presigned URLs require service account credentials")
        if self._public_host:
            kwargs["api_access_endpoint"] = self._public_host
        with self._translate("presign"):
            return self._blob(bucket, name).generate_signed_url(
                version="v4", expiration=expiry, method=method, **kwargs
            )

    def presigned_get_object(self, bucket: str, name: str, opts: PresignedGetOptions) -> str:
        params = {k: v[0] for k, v in (opts.request_params or {}).items() if v}
        return self._signed_url(
            bucket, name, "GET", opts.expiry or timedelta(hours=24), query_parameters=params or None
        )

    def presigned_put_object(self, bucket: str, name: str, expiry: timedelta) -> str:
        return self._signed_url(bucket, name, "PUT", expiry)
