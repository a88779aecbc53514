"""S3-compatible storage driver backed by boto3; also serves GCS through its S3 interoperability API."""

from __future__ import annotations

import base64
import hashlib
import re
from contextlib import contextmanager
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any, BinaryIO, Iterator
from urllib.parse import urlencode

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from ndc_storage.concurrency import raise_if_cancelled, run_bounded
from ndc_storage.config import ClientConfig, RuntimeSettings, StaticAuthentication, resolve_env
from ndc_storage.errors import StorageBackendError
from ndc_storage.storage import StorageClient
from ndc_storage.types import (
    BucketIncludeOptions,
    BucketLifecycle,
    BucketVersioning,
    CopyDestination,
    CopySource,
    GetObjectOptions,
    IncompleteUpload,
    LifecycleRule,
    ListBucketsOptions,
    ListIncompleteUploadsOptions,
    ListObjectsOptions,
    MakeBucketOptions,
    ObjectIncludeOptions,
    ObjectLockConfig,
    ObjectOwner,
    ObjectRestoreInfo,
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
    UploadInfo,
)

GCS_INTEROP_ENDPOINT = "https://storage.googleapis.com"
CHUNK_SIZE = 64 * 1024
DEFAULT_PART_SIZE = 16 * 1024 * 1024
DELETE_BATCH_SIZE = 1000

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound", "NoSuchBucket", "NoSuchVersion"}
_HEADER_PAIR_RE = re.compile(r'([\w-]+)="([^"]*)"')

# Presigned GET request params mapped to boto3 parameter names.
_RESPONSE_PARAMS = {
    "response-content-type": "ResponseContentType",
    "response-content-language": "ResponseContentLanguage",
    "response-expires": "ResponseExpires",
    "response-cache-control": "ResponseCacheControl",
    "response-content-disposition": "ResponseContentDisposition",
    "response-content-encoding": "ResponseContentEncoding",
}


def _error_code(err: ClientError) -> str:
    return str(err.response.get("Error", {}).get("Code", ""))


def _is_not_found(err: Exception) -> bool:
    if isinstance(err, ClientError):
        return _error_code(err) in _NOT_FOUND_CODES
    return False


def _is_missing_config(err: Exception, *codes: str) -> bool:
    return isinstance(err, ClientError) and _error_code(err) in codes


def _strip_etag(value: Any) -> str | None:
    return value.strip('"') if isinstance(value, str) else None


def _header_pairs(value: str | None) -> dict[str, str]:
    if not value:
        return {}
    return dict(_HEADER_PAIR_RE.findall(value))


def _http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _tag_set(tags: dict[str, str]) -> dict[str, Any]:
    return {"TagSet": [{"Key": k, "Value": v} for k, v in tags.items()]}


def _tags_from(resp: dict[str, Any]) -> dict[str, str]:
    return {t["Key"]: t["Value"] for t in resp.get("TagSet", [])}


def _lifecycle_rule_to_s3(rule: LifecycleRule) -> dict[str, Any]:
    out: dict[str, Any] = {
        "Status": "Enabled" if rule.enabled else "Disabled",
        "Filter": {"Prefix": rule.prefix or ""},
    }
    if rule.id:
        out["ID"] = rule.id
    if rule.expiration_days is not None:
        out["Expiration"] = {"Days": rule.expiration_days}
    if rule.noncurrent_expiration_days is not None:
        out["NoncurrentVersionExpiration"] = {"NoncurrentDays": rule.noncurrent_expiration_days}
    if rule.transition_days is not None and rule.transition_storage_class:
        out["Transitions"] = [{"Days": rule.transition_days, "StorageClass": rule.transition_storage_class}]
    if rule.abort_incomplete_upload_days is not None:
        out["AbortIncompleteMultipartUpload"] = {"DaysAfterInitiation": rule.abort_incomplete_upload_days}
    return out


def _lifecycle_rule_from_s3(data: dict[str, Any]) -> LifecycleRule:
    transitions = data.get("Transitions") or [{}]
    prefix = data.get("Filter", {}).get("Prefix", data.get("Prefix"))
    return LifecycleRule(
        id=data.get("ID"),
        enabled=data.get("Status") == "Enabled",
        prefix=prefix,
        expiration_days=data.get("Expiration", {}).get("Days"),
        noncurrent_expiration_days=data.get("NoncurrentVersionExpiration", {}).get("NoncurrentDays"),
        transition_days=transitions[0].get("Days"),
        transition_storage_class=transitions[0].get("StorageClass"),
        abort_incomplete_upload_days=data.get("AbortIncompleteMultipartUpload", {}).get("DaysAfterInitiation"),
    )


class S3StorageClient(StorageClient):
    """Storage client for S3-compatible services."""

    backend = "s3"

    def __init__(self, config: ClientConfig, runtime: RuntimeSettings | None = None) -> None:
        self.backend = config.type
        endpoint = config.resolve_endpoint()
        if endpoint is None and config.type == "gcs":
            endpoint = GCS_INTEROP_ENDPOINT
        region = resolve_env(config.region)
        timeout = runtime.http.timeout_seconds if runtime and runtime.http else 10.0

        credentials: dict[str, Any] = {}
        if isinstance(config.authentication, StaticAuthentication):
            auth = config.authentication
            credentials = {
                "aws_access_key_id": resolve_env(auth.access_key_id),
                "aws_secret_access_key": resolve_env(auth.secret_access_key),
                "aws_session_token": resolve_env(auth.session_token),
            }

        self._session = boto3.Session(region_name=region, **credentials)
        boto_config = BotoConfig(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"max_attempts": config.max_retries, "mode": "standard"},
            s3={"addressing_style": "path"} if endpoint else None,
        )
        self._s3 = self._session.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint,
            config=boto_config,
        )
        # Presigned URLs are signed for the host clients will actually reach.
        public_host = resolve_env(config.public_host)
        self._presign = (
            self._session.client("s3", region_name=region, endpoint_url=public_host, config=boto_config)
            if public_host
            else self._s3
        )

    @contextmanager
    def _translate(self, operation: str) -> Iterator[None]:
        try:
            yield
        except ClientError as e:
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            message = e.response.get("Error", {}).get("Message") or str(e)
            logger.warning(f"{self.backend} {operation} failed: {message}")
            raise StorageBackendError(operation, message, status_code=status, code=_error_code(e)) from e
        except BotoCoreError as e:
            logger.warning(f"{self.backend} {operation} failed: {e}")
            raise StorageBackendError(operation, str(e), status_code=502) from e

    def close(self) -> None:
        self._s3.close()

    # --- Buckets ---

    def make_bucket(self, opts: MakeBucketOptions) -> None:
        kwargs: dict[str, Any] = {"Bucket": opts.name}
        if opts.region and opts.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": opts.region}
        if opts.object_lock:
            kwargs["ObjectLockEnabledForBucket"] = True
        with self._translate("make_bucket"):
            self._s3.create_bucket(**kwargs)
        if opts.tags:
            self.set_bucket_tagging(opts.name, opts.tags)

    def remove_bucket(self, name: str) -> None:
        with self._translate("remove_bucket"):
            self._s3.delete_bucket(Bucket=name)

    def bucket_exists(self, name: str) -> bool:
        try:
            self._s3.head_bucket(Bucket=name)
            return True
        except ClientError as e:
            if _is_not_found(e):
                return False
            with self._translate("bucket_exists"):
                raise

    def get_bucket(self, name: str, include: BucketIncludeOptions) -> StorageBucket | None:
        try:
            resp = self._s3.head_bucket(Bucket=name)
        except ClientError as e:
            if _is_not_found(e):
                return None
            with self._translate("get_bucket"):
                raise
        bucket = StorageBucket(name=name, region=resp.get("BucketRegion"))
        self._hydrate_bucket(bucket, include)
        return bucket

    def _hydrate_bucket(self, bucket: StorageBucket, include: BucketIncludeOptions) -> None:
        if include.tags:
            bucket.tags = self.get_bucket_tagging(bucket.name)
        if include.versioning:
            bucket.versioning = self.get_bucket_versioning(bucket.name)
        if include.lifecycle:
            bucket.lifecycle = self.get_bucket_lifecycle(bucket.name)
        if include.encryption:
            bucket.encryption = self.get_bucket_encryption(bucket.name)
        if include.object_lock:
            bucket.object_lock = self.get_object_lock_config(bucket.name)

    def list_buckets(
        self,
        opts: ListBucketsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageBucket], PageInfo]:
        with self._translate("list_buckets"):
            resp = self._s3.list_buckets()

        buckets: list[StorageBucket] = []
        has_next_page = False
        for item in sorted(resp.get("Buckets", []), key=lambda b: b["Name"]):
            name = item["Name"]
            if not name.startswith(opts.prefix) or (opts.start_after and name <= opts.start_after):
                continue
            if post_predicate is not None and not post_predicate(name):
                continue
            if opts.max_results > 0 and len(buckets) >= opts.max_results:
                has_next_page = True
                break
            buckets.append(StorageBucket(name=name, creation_time=item.get("CreationDate")))

        if opts.include.any():
            run_bounded(
                [lambda b=b: self._hydrate_bucket(b, opts.include) for b in buckets],
                opts.num_threads,
            )
        cursor = buckets[-1].name if buckets else None
        return buckets, PageInfo(cursor=cursor, has_next_page=has_next_page)

    def set_bucket_tagging(self, name: str, tags: dict[str, str]) -> None:
        if not tags:
            self.remove_bucket_tagging(name)
            return
        with self._translate("set_bucket_tagging"):
            self._s3.put_bucket_tagging(Bucket=name, Tagging=_tag_set(tags))

    def get_bucket_tagging(self, name: str) -> dict[str, str]:
        try:
            return _tags_from(self._s3.get_bucket_tagging(Bucket=name))
        except ClientError as e:
            if _is_missing_config(e, "NoSuchTagSet", "NoSuchTagSetError"):
                return {}
            with self._translate("get_bucket_tagging"):
                raise

    def remove_bucket_tagging(self, name: str) -> None:
        with self._translate("remove_bucket_tagging"):
            self._s3.delete_bucket_tagging(Bucket=name)

    def set_bucket_versioning(self, name: str, enabled: bool) -> None:
        status = "Enabled" if enabled else "Suspended"
        with self._translate("set_bucket_versioning"):
            self._s3.put_bucket_versioning(Bucket=name, VersioningConfiguration={"Status": status})

    def get_bucket_versioning(self, name: str) -> BucketVersioning | None:
        with self._translate("get_bucket_versioning"):
            resp = self._s3.get_bucket_versioning(Bucket=name)
        if "Status" not in resp:
            return None
        mfa = resp.get("MFADelete")
        return BucketVersioning(
            enabled=resp["Status"] == "Enabled",
            mfa_delete=None if mfa is None else mfa == "Enabled",
        )

    def set_bucket_replication(self, name: str, config: dict[str, Any]) -> None:
        with self._translate("set_bucket_replication"):
            self._s3.put_bucket_replication(Bucket=name, ReplicationConfiguration=config)

    def get_bucket_replication(self, name: str) -> dict[str, Any] | None:
        try:
            return self._s3.get_bucket_replication(Bucket=name).get("ReplicationConfiguration")
        except ClientError as e:
            if _is_missing_config(e, "ReplicationConfigurationNotFoundError"):
                return None
            with self._translate("get_bucket_replication"):
                raise

    def remove_bucket_replication(self, name: str) -> None:
        with self._translate("remove_bucket_replication"):
            self._s3.delete_bucket_replication(Bucket=name)

    def set_bucket_notification(self, name: str, config: dict[str, Any]) -> None:
        with self._translate("set_bucket_notification"):
            self._s3.put_bucket_notification_configuration(Bucket=name, NotificationConfiguration=config)

    def get_bucket_notification(self, name: str) -> dict[str, Any]:
        with self._translate("get_bucket_notification"):
            resp = self._s3.get_bucket_notification_configuration(Bucket=name)
        return {k: v for k, v in resp.items() if k != "ResponseMetadata"}

    def remove_bucket_notification(self, name: str) -> None:
        self.set_bucket_notification(name, {})

    def set_bucket_lifecycle(self, name: str, lifecycle: BucketLifecycle) -> None:
        if not lifecycle.rules:
            with self._translate("set_bucket_lifecycle"):
                self._s3.delete_bucket_lifecycle(Bucket=name)
            return
        with self._translate("set_bucket_lifecycle"):
            self._s3.put_bucket_lifecycle_configuration(
                Bucket=name,
                LifecycleConfiguration={"Rules": [_lifecycle_rule_to_s3(r) for r in lifecycle.rules]},
            )

    def get_bucket_lifecycle(self, name: str) -> BucketLifecycle | None:
        try:
            resp = self._s3.get_bucket_lifecycle_configuration(Bucket=name)
        except ClientError as e:
            if _is_missing_config(e, "NoSuchLifecycleConfiguration"):
                return None
            with self._translate("get_bucket_lifecycle"):
                raise
        return BucketLifecycle(rules=[_lifecycle_rule_from_s3(r) for r in resp.get("Rules", [])])

    def set_bucket_encryption(self, name: str, encryption: ServerSideEncryption) -> None:
        default: dict[str, Any] = {"SSEAlgorithm": encryption.sse_algorithm or "AES256"}
        if encryption.kms_master_key_id:
            default["KMSMasterKeyID"] = encryption.kms_master_key_id
        with self._translate("set_bucket_encryption"):
            self._s3.put_bucket_encryption(
                Bucket=name,
                ServerSideEncryptionConfiguration={"Rules": [{"ApplyServerSideEncryptionByDefault": default}]},
            )

    def get_bucket_encryption(self, name: str) -> ServerSideEncryption | None:
        try:
            resp = self._s3.get_bucket_encryption(Bucket=name)
        except ClientError as e:
            if _is_missing_config(e, "ServerSideEncryptionConfigurationNotFoundError"):
                return None
            with self._translate("get_bucket_encryption"):
                raise
        rules = resp.get("ServerSideEncryptionConfiguration", {}).get("Rules", [])
        if not rules:
            return None
        default = rules[0].get("ApplyServerSideEncryptionByDefault", {})
        return ServerSideEncryption(
            sse_algorithm=default.get("SSEAlgorithm"),
            kms_master_key_id=default.get("KMSMasterKeyID"),
        )

    def remove_bucket_encryption(self, name: str) -> None:
        with self._translate("remove_bucket_encryption"):
            self._s3.delete_bucket_encryption(Bucket=name)

    def set_object_lock_config(self, name: str, config: ObjectLockConfig) -> None:
        body: dict[str, Any] = {"ObjectLockEnabled": "Enabled"}
        if config.mode and config.validity:
            unit = "Years" if (config.unit or "").upper().startswith("Y") else "Days"
            body["Rule"] = {"DefaultRetention": {"Mode": config.mode, unit: config.validity}}
        with self._translate("set_object_lock_config"):
            self._s3.put_object_lock_configuration(Bucket=name, ObjectLockConfiguration=body)

    def get_object_lock_config(self, name: str) -> ObjectLockConfig | None:
        try:
            resp = self._s3.get_object_lock_configuration(Bucket=name)
        except ClientError as e:
            if _is_missing_config(e, "ObjectLockConfigurationNotFoundError"):
                return None
            with self._translate("get_object_lock_config"):
                raise
        conf = resp.get("ObjectLockConfiguration", {})
        retention = conf.get("Rule", {}).get("DefaultRetention", {})
        unit = "YEARS" if "Years" in retention else "DAYS" if "Days" in retention else None
        return ObjectLockConfig(
            enabled=conf.get("ObjectLockEnabled") == "Enabled",
            mode=retention.get("Mode"),
            validity=retention.get("Years", retention.get("Days")),
            unit=unit,
        )

    def get_bucket_policy(self, name: str) -> str:
        try:
            return str(self._s3.get_bucket_policy(Bucket=name).get("Policy", ""))
        except ClientError as e:
            if _is_missing_config(e, "NoSuchBucketPolicy"):
                return ""
            with self._translate("get_bucket_policy"):
                raise

    # --- Object listing ---

    def _object_from_listing(self, item: dict[str, Any]) -> StorageObject:
        owner = item.get("Owner")
        restore = item.get("RestoreStatus")
        return StorageObject(
            name=item["Key"],
            size=item.get("Size"),
            etag=_strip_etag(item.get("ETag")),
            last_modified=item.get("LastModified"),
            storage_class=item.get("StorageClass"),
            version_id=item.get("VersionId"),
            is_latest=item.get("IsLatest"),
            owner=ObjectOwner(id=owner.get("ID"), name=owner.get("DisplayName")) if owner else None,
            restore=(
                ObjectRestoreInfo(
                    ongoing_restore=bool(restore.get("IsRestoreInProgress")),
                    expiry_time=restore.get("RestoreExpiryDate"),
                )
                if restore
                else None
            ),
        )

    def _iter_listing(self, bucket: str, opts: ListObjectsOptions) -> Iterator[StorageObject]:
        kwargs: dict[str, Any] = {"Bucket": bucket, "Prefix": opts.prefix}
        if not opts.recursive:
            kwargs["Delimiter"] = "/"

        if opts.with_versions:
            if opts.start_after:
                kwargs["KeyMarker"] = opts.start_after
            while True:
                raise_if_cancelled()
                with self._translate("list_objects"):
                    page = self._s3.list_object_versions(**kwargs)
                items = [self._object_from_listing(v) for v in page.get("Versions", [])]
                for marker in page.get("DeleteMarkers", []):
                    obj = self._object_from_listing(marker)
                    obj.is_delete_marker = True
                    items.append(obj)
                items.extend(StorageObject(name=p["Prefix"], is_directory=True) for p in page.get("CommonPrefixes", []))
                yield from sorted(items, key=lambda o: o.name)
                if not page.get("IsTruncated"):
                    return
                kwargs["KeyMarker"] = page.get("NextKeyMarker")
                kwargs["VersionIdMarker"] = page.get("NextVersionIdMarker")

        if opts.start_after:
            kwargs["StartAfter"] = opts.start_after
        while True:
            raise_if_cancelled()
            with self._translate("list_objects"):
                page = self._s3.list_objects_v2(**kwargs)
            items = [self._object_from_listing(c) for c in page.get("Contents", [])]
            items.extend(StorageObject(name=p["Prefix"], is_directory=True) for p in page.get("CommonPrefixes", []))
            yield from sorted(items, key=lambda o: o.name)
            if not page.get("IsTruncated"):
                return
            kwargs["ContinuationToken"] = page["NextContinuationToken"]

    def list_objects(
        self,
        bucket: str,
        opts: ListObjectsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageObject], PageInfo]:
        objects: list[StorageObject] = []
        has_next_page = False
        for obj in self._iter_listing(bucket, opts):
            if opts.start_after and obj.name <= opts.start_after:
                continue
            if post_predicate is not None and not post_predicate(obj.name):
                continue
            if opts.max_results > 0 and len(objects) >= opts.max_results:
                # one extra match proves there is another page
                has_next_page = True
                break
            objects.append(obj)

        if _needs_hydration(opts.include):
            run_bounded(
                [lambda o=o: self._hydrate_object(bucket, o, opts.include) for o in objects if not o.is_directory],
                opts.num_threads,
            )
        cursor = objects[-1].name if objects else None
        return objects, PageInfo(cursor=cursor, has_next_page=has_next_page)

    def _hydrate_object(self, bucket: str, obj: StorageObject, include: ObjectIncludeOptions) -> None:
        stat = self.stat_object(bucket, obj.name, GetObjectOptions(version_id=obj.version_id, include=include))
        if stat is None:
            return
        for attr in (
            "content_type",
            "content_encoding",
            "content_language",
            "content_disposition",
            "cache_control",
            "expires",
            "metadata",
            "raw_metadata",
            "tags",
            "tag_count",
            "legal_hold",
            "retention_mode",
            "retention_until_date",
            "replication_status",
            "expiration",
            "expiration_rule_id",
            "checksum_crc32",
            "checksum_crc32c",
            "checksum_sha1",
            "checksum_sha256",
            "checksum_crc64nvme",
        ):
            setattr(obj, attr, getattr(stat, attr))

    # --- Single objects ---

    def stat_object(self, bucket: str, name: str, opts: GetObjectOptions) -> StorageObject | None:
        kwargs: dict[str, Any] = {"Bucket": bucket, "Key": name}
        if opts.version_id:
            kwargs["VersionId"] = opts.version_id
        if opts.part_number:
            kwargs["PartNumber"] = opts.part_number
        if opts.include.checksum:
            kwargs["ChecksumMode"] = "ENABLED"
        try:
            resp = self._s3.head_object(**kwargs)
        except ClientError as e:
            if _is_not_found(e):
                return None
            with self._translate("stat_object"):
                raise

        headers = resp.get("ResponseMetadata", {}).get("HTTPHeaders", {})
        expiration = _header_pairs(resp.get("Expiration"))
        restore = _header_pairs(resp.get("Restore"))
        tag_count = headers.get("x-amz-tagging-count")
        obj = StorageObject(
            name=name,
            size=resp.get("ContentLength"),
            etag=_strip_etag(resp.get("ETag")),
            last_modified=resp.get("LastModified"),
            content_type=resp.get("ContentType"),
            content_encoding=resp.get("ContentEncoding"),
            content_language=resp.get("ContentLanguage"),
            content_disposition=resp.get("ContentDisposition"),
            cache_control=resp.get("CacheControl"),
            expires=resp.get("Expires") if isinstance(resp.get("Expires"), datetime) else None,
            metadata=dict(resp.get("Metadata") or {}),
            raw_metadata=dict(headers) if opts.include.metadata else None,
            tag_count=int(tag_count) if tag_count and tag_count.isdigit() else None,
            storage_class=resp.get("StorageClass"),
            is_directory=name.endswith("/"),
            is_delete_marker=resp.get("DeleteMarker"),
            version_id=resp.get("VersionId"),
            replication_status=resp.get("ReplicationStatus"),
            expiration=_http_date(expiration.get("expiry-date")),
            expiration_rule_id=expiration.get("rule-id"),
            legal_hold=(
                resp["ObjectLockLegalHoldStatus"] == "ON" if "ObjectLockLegalHoldStatus" in resp else None
            ),
            retention_mode=resp.get("ObjectLockMode"),
            retention_until_date=resp.get("ObjectLockRetainUntilDate"),
            restore=(
                ObjectRestoreInfo(
                    ongoing_restore=restore.get("ongoing-request") == "true",
                    expiry_time=_http_date(restore.get("expiry-date")),
                )
                if restore
                else None
            ),
            checksum_crc32=resp.get("ChecksumCRC32"),
            checksum_crc32c=resp.get("ChecksumCRC32C"),
            checksum_sha1=resp.get("ChecksumSHA1"),
            checksum_sha256=resp.get("ChecksumSHA256"),
            checksum_crc64nvme=resp.get("ChecksumCRC64NVME"),
        )
        if opts.include.tags:
            with self._translate("get_object_tagging"):
                tagging_kwargs = {"Bucket": bucket, "Key": name}
                if opts.version_id:
                    tagging_kwargs["VersionId"] = opts.version_id
                obj.tags = _tags_from(self._s3.get_object_tagging(**tagging_kwargs))
        return obj

    def get_object(self, bucket: str, name: str, opts: GetObjectOptions) -> ObjectStream:
        kwargs: dict[str, Any] = {"Bucket": bucket, "Key": name}
        if opts.version_id:
            kwargs["VersionId"] = opts.version_id
        if opts.part_number:
            kwargs["PartNumber"] = opts.part_number
        with self._translate("get_object"):
            body = self._s3.get_object(**kwargs)["Body"]

        def _chunks() -> ObjectStream:
            try:
                for chunk in body.iter_chunks(CHUNK_SIZE):
                    yield chunk
            finally:
                body.close()

        return _chunks()

    def _put_extra_args(self, opts: PutObjectOptions) -> dict[str, Any]:
        extra: dict[str, Any] = {}
        for attr, key in (
            ("content_type", "ContentType"),
            ("content_encoding", "ContentEncoding"),
            ("content_disposition", "ContentDisposition"),
            ("content_language", "ContentLanguage"),
            ("cache_control", "CacheControl"),
            ("expires", "Expires"),
            ("storage_class", "StorageClass"),
        ):
            value = getattr(opts, attr)
            if value is not None:
                extra[key] = value
        if opts.metadata:
            extra["Metadata"] = dict(opts.metadata)
        if opts.tags:
            extra["Tagging"] = urlencode(opts.tags)
        if opts.retention is not None and opts.retention.mode:
            extra["ObjectLockMode"] = opts.retention.mode
            extra["ObjectLockRetainUntilDate"] = opts.retention.retain_until_date
        if opts.legal_hold is not None:
            extra["ObjectLockLegalHoldStatus"] = "ON" if opts.legal_hold else "OFF"
        return extra

    def put_object(
        self,
        bucket: str,
        name: str,
        opts: PutObjectOptions,
        reader: BinaryIO,
        size: int | None = None,
    ) -> UploadInfo:
        extra = self._put_extra_args(opts)
        part_size = opts.part_size or DEFAULT_PART_SIZE

        if size is not None and size <= part_size:
            body = reader.read()
            if opts.send_content_md5:
                extra["ContentMD5"] = base64.b64encode(hashlib.md5(body).digest()).decode("ascii")
            with self._translate("put_object"):
                resp = self._s3.put_object(Bucket=bucket, Key=name, Body=body, **extra)
            return UploadInfo(
                bucket=bucket,
                name=name,
                etag=_strip_etag(resp.get("ETag")),
                size=len(body),
                version_id=resp.get("VersionId"),
                checksum_crc32=resp.get("ChecksumCRC32"),
                checksum_crc32c=resp.get("ChecksumCRC32C"),
                checksum_sha1=resp.get("ChecksumSHA1"),
                checksum_sha256=resp.get("ChecksumSHA256"),
            )

        transfer = TransferConfig(
            multipart_threshold=part_size,
            multipart_chunksize=part_size,
            max_concurrency=opts.num_threads or 4,
        )
        with self._translate("put_object"):
            self._s3.upload_fileobj(reader, bucket, name, ExtraArgs=extra, Config=transfer)
        stat = self.stat_object(bucket, name, GetObjectOptions())
        return UploadInfo(
            bucket=bucket,
            name=name,
            etag=stat.etag if stat else None,
            size=stat.size if stat else size,
            last_modified=stat.last_modified if stat else None,
            version_id=stat.version_id if stat else None,
        )

    def copy_object(self, dest: CopyDestination, src: CopySource) -> UploadInfo:
        source: dict[str, Any] = {"Bucket": src.bucket, "Key": src.name}
        if src.version_id:
            source["VersionId"] = src.version_id
        kwargs: dict[str, Any] = {"Bucket": dest.bucket, "Key": dest.name, "CopySource": source}
        if dest.metadata is not None:
            kwargs["MetadataDirective"] = "REPLACE"
            kwargs["Metadata"] = dict(dest.metadata)
        if dest.content_type:
            kwargs["MetadataDirective"] = "REPLACE"
            kwargs["ContentType"] = dest.content_type
        if dest.tags is not None:
            kwargs["TaggingDirective"] = "REPLACE"
            kwargs["Tagging"] = urlencode(dest.tags)
        with self._translate("copy_object"):
            resp = self._s3.copy_object(**kwargs)
        result = resp.get("CopyObjectResult", {})
        return UploadInfo(
            bucket=dest.bucket,
            name=dest.name,
            etag=_strip_etag(result.get("ETag")),
            last_modified=result.get("LastModified"),
            version_id=resp.get("VersionId"),
        )

    def compose_object(self, dest: CopyDestination, sources: list[CopySource]) -> UploadInfo:
        """Concatenate sources server-side with a multipart upload-part-copy."""
        create_kwargs: dict[str, Any] = {"Bucket": dest.bucket, "Key": dest.name}
        if dest.metadata:
            create_kwargs["Metadata"] = dict(dest.metadata)
        if dest.content_type:
            create_kwargs["ContentType"] = dest.content_type
        if dest.tags:
            create_kwargs["Tagging"] = urlencode(dest.tags)
        with self._translate("compose_object"):
            upload_id = self._s3.create_multipart_upload(**create_kwargs)["UploadId"]

        parts: list[dict[str, Any]] = []
        try:
            for number, src in enumerate(sources, start=1):
                raise_if_cancelled()
                source: dict[str, Any] = {"Bucket": src.bucket, "Key": src.name}
                if src.version_id:
                    source["VersionId"] = src.version_id
                with self._translate("compose_object"):
                    resp = self._s3.upload_part_copy(
                        Bucket=dest.bucket,
                        Key=dest.name,
                        UploadId=upload_id,
                        PartNumber=number,
                        CopySource=source,
                    )
                parts.append({"ETag": resp["CopyPartResult"]["ETag"], "PartNumber": number})
            with self._translate("compose_object"):
                resp = self._s3.complete_multipart_upload(
                    Bucket=dest.bucket,
                    Key=dest.name,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": parts},
                )
        except Exception:
            self._s3.abort_multipart_upload(Bucket=dest.bucket, Key=dest.name, UploadId=upload_id)
            raise
        return UploadInfo(
            bucket=dest.bucket,
            name=dest.name,
            etag=_strip_etag(resp.get("ETag")),
            location=resp.get("Location"),
            version_id=resp.get("VersionId"),
        )

    def remove_object(self, bucket: str, name: str, opts: RemoveObjectOptions) -> None:
        if opts.force_delete:
            errors = self.remove_objects(
                bucket,
                RemoveObjectsOptions(prefix=name, recursive=True, governance_bypass=opts.governance_bypass),
            )
            if errors:
                raise StorageBackendError("remove_object", errors[0].error)
            return
        kwargs: dict[str, Any] = {"Bucket": bucket, "Key": name}
        if opts.version_id:
            kwargs["VersionId"] = opts.version_id
        if opts.governance_bypass:
            kwargs["BypassGovernanceRetention"] = True
        with self._translate("remove_object"):
            self._s3.delete_object(**kwargs)

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
        keys = [o.name for o in objects if not o.is_directory]
        errors: list[RemoveObjectError] = []
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            raise_if_cancelled()
            batch = keys[start : start + DELETE_BATCH_SIZE]
            kwargs: dict[str, Any] = {
                "Bucket": bucket,
                "Delete": {"Objects": [{"Key": k} for k in batch], "Quiet": True},
            }
            if opts.governance_bypass:
                kwargs["BypassGovernanceRetention"] = True
            with self._translate("remove_objects"):
                resp = self._s3.delete_objects(**kwargs)
            for err in resp.get("Errors", []):
                errors.append(
                    RemoveObjectError(
                        object_name=err.get("Key", ""),
                        version_id=err.get("VersionId"),
                        error=err.get("Message") or err.get("Code", "unknown error"),
                    )
                )
        return errors

    def set_object_tags(
        self, bucket: str, name: str, version_id: str | None, tags: dict[str, str]
    ) -> None:
        kwargs: dict[str, Any] = {"Bucket": bucket, "Key": name}
        if version_id:
            kwargs["VersionId"] = version_id
        with self._translate("set_object_tags"):
            if tags:
                self._s3.put_object_tagging(Tagging=_tag_set(tags), **kwargs)
            else:
                self._s3.delete_object_tagging(**kwargs)

    def set_object_legal_hold(
        self, bucket: str, name: str, version_id: str | None, enabled: bool
    ) -> None:
        kwargs: dict[str, Any] = {"Bucket": bucket, "Key": name}
        if version_id:
            kwargs["VersionId"] = version_id
        with self._translate("set_object_legal_hold"):
            self._s3.put_object_legal_hold(LegalHold={"Status": "ON" if enabled else "OFF"}, **kwargs)

    def set_object_retention(
        self, bucket: str, name: str, version_id: str | None, retention: ObjectRetention
    ) -> None:
        kwargs: dict[str, Any] = {
            "Bucket": bucket,
            "Key": name,
            "Retention": {"Mode": retention.mode, "RetainUntilDate": retention.retain_until_date},
        }
        if version_id:
            kwargs["VersionId"] = version_id
        if retention.governance_bypass:
            kwargs["BypassGovernanceRetention"] = True
        with self._translate("set_object_retention"):
            self._s3.put_object_retention(**kwargs)

    def restore_object(self, bucket: str, name: str) -> None:
        with self._translate("restore_object"):
            self._s3.restore_object(Bucket=bucket, Key=name, RestoreRequest={"Days": 1})

    def list_incomplete_uploads(
        self, bucket: str, opts: ListIncompleteUploadsOptions
    ) -> list[IncompleteUpload]:
        kwargs: dict[str, Any] = {"Bucket": bucket, "Prefix": opts.prefix}
        if not opts.recursive:
            kwargs["Delimiter"] = "/"
        uploads: list[IncompleteUpload] = []
        while True:
            raise_if_cancelled()
            with self._translate("list_incomplete_uploads"):
                page = self._s3.list_multipart_uploads(**kwargs)
            for item in page.get("Uploads", []):
                uploads.append(
                    IncompleteUpload(
                        name=item["Key"],
                        upload_id=item["UploadId"],
                        initiated=item.get("Initiated"),
                        storage_class=item.get("StorageClass"),
                    )
                )
            if not page.get("IsTruncated"):
                return uploads
            kwargs["KeyMarker"] = page.get("NextKeyMarker")
            kwargs["UploadIdMarker"] = page.get("NextUploadIdMarker")

    def remove_incomplete_upload(self, bucket: str, name: str) -> None:
        uploads = self.list_incomplete_uploads(bucket, ListIncompleteUploadsOptions(prefix=name, recursive=True))
        for upload in uploads:
            if upload.name != name:
                continue
            with self._translate("remove_incomplete_upload"):
                self._s3.abort_multipart_upload(Bucket=bucket, Key=name, UploadId=upload.upload_id)

    def presigned_get_object(self, bucket: str, name: str, opts: PresignedGetOptions) -> str:
        params: dict[str, Any] = {"Bucket": bucket, "Key": name}
        for key, values in (opts.request_params or {}).items():
            mapped = _RESPONSE_PARAMS.get(key.lower())
            if mapped and values:
                params[mapped] = values[0]
        return self._presign_url("get_object", params, opts.expiry or timedelta(hours=24))

    def presigned_put_object(self, bucket: str, name: str, expiry: timedelta) -> str:
        return self._presign_url("put_object", {"Bucket": bucket, "Key": name}, expiry)

    def _presign_url(self, method: str, params: dict[str, Any], expiry: timedelta) -> str:
        with self._translate(f"presigned_{method}"):
            return self._presign.generate_presigned_url(
                method, Params=params, ExpiresIn=int(expiry.total_seconds())
            )


def _needs_hydration(include: ObjectIncludeOptions) -> bool:
    return include.metadata or include.tags or include.legal_hold or include.checksum or include.object_lock
