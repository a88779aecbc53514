"""Client manager: routes requests to configured or ephemeral storage clients."""

from __future__ import annotations

import io
import mimetypes
from contextlib import closing, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator

import httpx
from loguru import logger

from ndc_storage.config import (
    ClientConfig,
    Configuration,
    ConnectionStringAuthentication,
    EnvString,
    RuntimeSettings,
    SharedKeyAuthentication,
    StaticAuthentication,
)
from ndc_storage.errors import InternalServerError, UnprocessableContentError
from ndc_storage.guards import check_download_size, check_upload_size, read_limited
from ndc_storage.storage import StorageClient, open_storage_client
from ndc_storage.types import (
    BucketArguments,
    BucketIncludeOptions,
    ClientCredentials,
    CopyDestination,
    CopySource,
    GetObjectOptions,
    IncompleteUpload,
    ListBucketsOptions,
    ListIncompleteUploadsOptions,
    ListObjectsOptions,
    MakeBucketOptions,
    PageInfo,
    PostPredicate,
    PresignedGetOptions,
    PresignedURL,
    PutObjectOptions,
    RemoveObjectError,
    RemoveObjectOptions,
    RemoveObjectsOptions,
    StorageBucket,
    StorageObject,
    UpdateBucketOptions,
    UpdateObjectOptions,
    UploadInfo,
)

ClientFactory = Callable[[ClientConfig, RuntimeSettings], StorageClient]

MAX_OBJECT_NAME_LENGTH = 1024


def validate_object_name(name: str) -> None:
    if not name:
        raise UnprocessableContentError("object name cannot be empty")
    if len(name.encode("utf-8")) > MAX_OBJECT_NAME_LENGTH:
        raise UnprocessableContentError(
            f"object name cannot be longer than {MAX_OBJECT_NAME_LENGTH} bytes"
        )


def with_bucket(creds: ClientCredentials, bucket: str) -> BucketArguments:
    return BucketArguments(
        client_id=creds.client_id,
        client_type=creds.client_type,
        endpoint=creds.endpoint,
        access_key_id=creds.access_key_id,
        secret_access_key=creds.secret_access_key,
        bucket=bucket,
    )


@dataclass
class Client:
    """A storage client together with its access rules."""

    id: str
    storage: StorageClient
    default_bucket: str = ""
    allowed_buckets: list[str] = field(default_factory=list)
    default_presigned_expiry: timedelta | None = None
    ephemeral: bool = False

    def is_bucket_allowed(self, name: str) -> bool:
        return not self.allowed_buckets or name == self.default_bucket or name in self.allowed_buckets

    def validate_bucket(self, name: str) -> str:
        """Return the effective bucket name, or fail when it is not accessible."""
        if not name:
            if self.default_bucket:
                return self.default_bucket
            raise UnprocessableContentError("bucket name is required", {"client_id": self.id})
        if not self.is_bucket_allowed(name):
            raise UnprocessableContentError(
                f"you are not allowed to access '{name}' bucket",
                {"client_id": self.id, "bucket": name},
            )
        return name


def _ephemeral_config(creds: ClientCredentials) -> ClientConfig:
    client_type = creds.client_type or "s3"
    if client_type == "azblob":
        if creds.access_key_id and creds.secret_access_key:
            return ClientConfig(
                type="azblob",
                endpoint=EnvString(value=creds.endpoint) if creds.endpoint else None,
                authentication=SharedKeyAuthentication(
                    account_name=EnvString(value=creds.access_key_id),
                    account_key=EnvString(value=creds.secret_access_key),
                ),
            )
        if not creds.endpoint:
            raise UnprocessableContentError("azblob requires either a connection string endpoint or a shared key")
        return ClientConfig(
            type="azblob",
            authentication=ConnectionStringAuthentication(
                connection_string=EnvString(value=creds.endpoint)
            ),
        )
    if client_type not in ("s3", "gcs"):
        raise UnprocessableContentError(f"unsupported client type for inline credentials: {client_type}")

    auth = None
    if creds.access_key_id or creds.secret_access_key:
        auth = StaticAuthentication(
            access_key_id=EnvString(value=creds.access_key_id),
            secret_access_key=EnvString(value=creds.secret_access_key),
        )
    return ClientConfig(
        type=client_type,
        endpoint=EnvString(value=creds.endpoint) if creds.endpoint else None,
        authentication=auth,
    )


class StorageManager:
    """Owns configured clients and maps ``(client_id, bucket)`` to one of them.

    Every public operation resolves its client through :meth:`client_and_bucket`,
    so ephemeral clients built from inline credentials are closed when the
    operation returns.
    """

    def __init__(
        self,
        clients: list[Client],
        runtime: RuntimeSettings | None = None,
        *,
        client_factory: ClientFactory = open_storage_client,
        http_transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.clients = clients
        self.runtime = runtime or RuntimeSettings()
        self._client_factory = client_factory
        self._http_transport = http_transport

    @classmethod
    def from_configuration(
        cls,
        config: Configuration,
        *,
        client_factory: ClientFactory = open_storage_client,
        http_transport: httpx.BaseTransport | None = None,
    ) -> StorageManager:
        clients: list[Client] = []
        for index, client_config in enumerate(config.clients):
            client_id = client_config.id or str(index)
            storage = client_factory(client_config, config.runtime)
            clients.append(
                Client(
                    id=client_id,
                    storage=storage,
                    default_bucket=client_config.resolve_default_bucket(),
                    allowed_buckets=list(
                        client_config.allowed_directories
                        if client_config.type == "fs"
                        else client_config.allowed_buckets
                    ),
                    default_presigned_expiry=client_config.presigned_expiry(),
                )
            )
            logger.debug(f"configured storage client {client_id} ({client_config.type})")
        return cls(
            clients,
            config.runtime,
            client_factory=client_factory,
            http_transport=http_transport,
        )

    def close(self) -> None:
        for client in self.clients:
            client.storage.close()

    @property
    def client_ids(self) -> list[str]:
        return [c.id for c in self.clients]

    def get_client(self, client_id: str | None) -> Client | None:
        """Look up a configured client; no id means the first one."""
        if not self.clients:
            return None
        if not client_id:
            return self.clients[0]
        for client in self.clients:
            if client.id == client_id:
                return client
        return None

    # --- Routing ---

    def _ephemeral_client(self, creds: ClientCredentials) -> Client:
        config = _ephemeral_config(creds)
        logger.debug(f"building ephemeral {config.type} client")
        return Client(
            id=creds.client_id or "",
            storage=self._client_factory(config, self.runtime),
            ephemeral=True,
        )

    def resolve(self, args: BucketArguments) -> tuple[Client, str]:
        """Pick the client and effective bucket for a request."""
        if args.has_credentials():
            if not args.bucket:
                raise UnprocessableContentError("bucket name is required")
            return self._ephemeral_client(args), args.bucket

        if not self.clients:
            if not args.bucket:
                raise UnprocessableContentError("bucket is required")
            return self._ephemeral_client(ClientCredentials(client_id=args.client_id)), args.bucket

        if args.client_id:
            client = self.get_client(args.client_id)
            if client is None:
                raise InternalServerError(f"client not found: {args.client_id}")
            return client, client.validate_bucket(args.bucket)

        if not args.bucket:
            client = self.clients[0]
            return client, client.validate_bucket("")

        for client in self.clients:
            if client.default_bucket == args.bucket or args.bucket in client.allowed_buckets:
                return client, args.bucket
        return self.clients[0], args.bucket

    def _resolve_client(self, creds: ClientCredentials) -> Client:
        if creds.has_credentials():
            return self._ephemeral_client(creds)
        if not self.clients:
            return self._ephemeral_client(ClientCredentials(client_id=creds.client_id))
        client = self.get_client(creds.client_id)
        if client is None:
            raise InternalServerError(f"client not found: {creds.client_id}")
        return client

    @contextmanager
    def client_and_bucket(self, args: BucketArguments) -> Iterator[tuple[Client, str]]:
        client, bucket = self.resolve(args)
        try:
            yield client, bucket
        finally:
            if client.ephemeral:
                client.storage.close()

    @contextmanager
    def client_for(self, creds: ClientCredentials) -> Iterator[Client]:
        client = self._resolve_client(creds)
        try:
            yield client
        finally:
            if client.ephemeral:
                client.storage.close()

    # --- Buckets ---

    def list_buckets(
        self,
        creds: ClientCredentials,
        opts: ListBucketsOptions,
        predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageBucket], PageInfo]:
        with self.client_for(creds) as client:
            post = predicate
            if client.allowed_buckets:
                post = _allow_list_predicate(client, predicate)
            buckets, page_info = client.storage.list_buckets(opts, post)
            for bucket in buckets:
                bucket.client_id = client.id
            return buckets, page_info

    def get_bucket(self, args: BucketArguments, include: BucketIncludeOptions) -> StorageBucket | None:
        with self.client_and_bucket(args) as (client, bucket_name):
            bucket = client.storage.get_bucket(bucket_name, include)
            if bucket is not None:
                bucket.client_id = client.id
            return bucket

    def bucket_exists(self, args: BucketArguments) -> bool:
        with self.client_and_bucket(args) as (client, bucket_name):
            return client.storage.bucket_exists(bucket_name)

    def make_bucket(self, creds: ClientCredentials, opts: MakeBucketOptions) -> None:
        if not opts.name:
            raise UnprocessableContentError("bucket name is required")
        with self.client_and_bucket(with_bucket(creds, opts.name)) as (client, bucket_name):
            opts.name = bucket_name
            client.storage.make_bucket(opts)

    def update_bucket(self, args: BucketArguments, opts: UpdateBucketOptions) -> None:
        if opts.is_empty():
            return
        with self.client_and_bucket(args) as (client, bucket_name):
            client.storage.update_bucket(bucket_name, opts)

    def remove_bucket(self, args: BucketArguments) -> None:
        with self.client_and_bucket(args) as (client, bucket_name):
            client.storage.remove_bucket(bucket_name)

    # --- Objects ---

    def list_objects(
        self,
        args: BucketArguments,
        opts: ListObjectsOptions,
        predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageObject], PageInfo]:
        with self.client_and_bucket(args) as (client, bucket_name):
            logger.debug(
                f"list objects client={client.id} bucket={bucket_name} prefix={opts.prefix!r} "
                f"start_after={opts.start_after!r} max_results={opts.max_results}"
            )
            objects, page_info = client.storage.list_objects(bucket_name, opts, predicate)
            for obj in objects:
                obj.client_id = client.id
                obj.bucket = bucket_name
            return objects, page_info

    def list_deleted_objects(
        self,
        args: BucketArguments,
        opts: ListObjectsOptions,
        predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageObject], PageInfo]:
        opts.with_versions = True
        objects, page_info = self.list_objects(args, opts, predicate)
        return [o for o in objects if o.is_delete_marker], page_info

    def list_incomplete_uploads(
        self, args: BucketArguments, opts: ListIncompleteUploadsOptions
    ) -> list[IncompleteUpload]:
        with self.client_and_bucket(args) as (client, bucket_name):
            return client.storage.list_incomplete_uploads(bucket_name, opts)

    def remove_incomplete_upload(self, args: BucketArguments, name: str) -> None:
        validate_object_name(name)
        with self.client_and_bucket(args) as (client, bucket_name):
            client.storage.remove_incomplete_upload(bucket_name, name)

    def stat_object(self, args: BucketArguments, name: str, opts: GetObjectOptions) -> StorageObject | None:
        validate_object_name(name)
        with self.client_and_bucket(args) as (client, bucket_name):
            return self._stat(client, bucket_name, name, opts)

    def _stat(self, client: Client, bucket: str, name: str, opts: GetObjectOptions) -> StorageObject | None:
        obj = client.storage.stat_object(bucket, name, opts)
        if obj is None:
            return None
        obj.client_id = client.id
        obj.bucket = bucket
        return obj

    def download_object(
        self, args: BucketArguments, name: str, opts: GetObjectOptions
    ) -> tuple[StorageObject, bytes] | None:
        """Read a whole object inline; ``None`` when it does not exist."""
        validate_object_name(name)
        limit = self.runtime.max_download_size_mbs
        with self.client_and_bucket(args) as (client, bucket_name):
            stat = self._stat(client, bucket_name, name, opts)
            if stat is None:
                return None
            if stat.is_directory:
                raise UnprocessableContentError(f"cannot download directory: {name}")
            check_download_size(stat.size, limit)
            with closing(client.storage.get_object(bucket_name, name, opts)) as stream:
                return stat, read_limited(stream, limit)

    def put_object(
        self, args: BucketArguments, name: str, opts: PutObjectOptions, data: bytes
    ) -> UploadInfo:
        validate_object_name(name)
        check_upload_size(len(data), self.runtime.max_upload_size_mbs)
        with self.client_and_bucket(args) as (client, bucket_name):
            info = client.storage.put_object(bucket_name, name, opts, io.BytesIO(data), len(data))
            info.bucket = bucket_name
            info.client_id = client.id
            return info

    def upload_from_url(
        self,
        args: BucketArguments,
        name: str,
        opts: PutObjectOptions,
        url: str,
        *,
        method: str | None = None,
        headers: dict[str, str] | None = None,
        body: str | None = None,
    ) -> UploadInfo:
        """Fetch ``url`` and store the response body as an object."""
        validate_object_name(name)
        limit = self.runtime.max_upload_size_mbs
        data, content_type, content_language = self._fetch(url, method, headers, body, limit)

        if opts.content_type is None:
            if not content_type or content_type.startswith("text/plain"):
                guessed, _ = mimetypes.guess_type(name)
                content_type = guessed or content_type
            opts.content_type = content_type
        if opts.content_language is None and content_language:
            opts.content_language = content_language
        return self.put_object(args, name, opts, data)

    def _fetch(
        self,
        url: str,
        method: str | None,
        headers: dict[str, str] | None,
        body: str | None,
        limit_mb: int,
    ) -> tuple[bytes, str | None, str | None]:
        http = self.runtime.http
        client_kwargs: dict[str, Any] = {
            "timeout": http.timeout_seconds if http else 30.0,
            "verify": not (http and http.insecure_skip_verify),
            "follow_redirects": True,
        }
        if self._http_transport is not None:
            client_kwargs["transport"] = self._http_transport
        request_headers = dict(headers or {})
        if http and http.user_agent:
            request_headers.setdefault("User-Agent", http.user_agent)

        try:
            with httpx.Client(**client_kwargs) as client:
                with client.stream(
                    (method or "GET").upper(), url, headers=request_headers, content=body
                ) as response:
                    if response.status_code >= 400:
                        raise UnprocessableContentError(
                            f"failed to fetch {url}: HTTP {response.status_code}",
                            {"statusCode": response.status_code},
                        )
                    length = response.headers.get("content-length")
                    if length and length.isdigit():
                        check_upload_size(int(length), limit_mb)
                    data = read_limited(response.iter_bytes(), limit_mb, upload=True)
                    return (
                        data,
                        response.headers.get("content-type"),
                        response.headers.get("content-language"),
                    )
        except httpx.HTTPError as e:
            raise UnprocessableContentError(f"failed to fetch {url}: {e}") from e

    def copy_object(
        self, creds: ClientCredentials, dest: CopyDestination, src: CopySource
    ) -> UploadInfo:
        validate_object_name(dest.name)
        validate_object_name(src.name)
        with self.client_and_bucket(with_bucket(creds, dest.bucket)) as (client, bucket_name):
            dest.bucket = bucket_name
            if not src.bucket:
                src.bucket = client.default_bucket
            info = client.storage.copy_object(dest, src)
            info.client_id = client.id
            return info

    def compose_object(
        self, creds: ClientCredentials, dest: CopyDestination, sources: list[CopySource]
    ) -> UploadInfo:
        validate_object_name(dest.name)
        if not sources:
            raise UnprocessableContentError("sources must not be empty")
        with self.client_and_bucket(with_bucket(creds, dest.bucket)) as (client, bucket_name):
            dest.bucket = bucket_name
            for src in sources:
                if not src.bucket:
                    src.bucket = client.default_bucket
            info = client.storage.compose_object(dest, sources)
            info.client_id = client.id
            return info

    def remove_object(self, args: BucketArguments, name: str, opts: RemoveObjectOptions) -> None:
        validate_object_name(name)
        with self.client_and_bucket(args) as (client, bucket_name):
            client.storage.remove_object(bucket_name, name, opts)

    def remove_objects(
        self,
        args: BucketArguments,
        opts: RemoveObjectsOptions,
        predicate: PostPredicate | None = None,
    ) -> list[RemoveObjectError]:
        with self.client_and_bucket(args) as (client, bucket_name):
            return client.storage.remove_objects(bucket_name, opts, predicate)

    def update_object(self, args: BucketArguments, name: str, opts: UpdateObjectOptions) -> None:
        if opts.is_empty():
            return
        validate_object_name(name)
        with self.client_and_bucket(args) as (client, bucket_name):
            client.storage.update_object(bucket_name, name, opts)

    def restore_object(self, args: BucketArguments, name: str) -> None:
        validate_object_name(name)
        with self.client_and_bucket(args) as (client, bucket_name):
            client.storage.restore_object(bucket_name, name)

    def presigned_get_object(
        self, args: BucketArguments, name: str, opts: PresignedGetOptions
    ) -> PresignedURL:
        validate_object_name(name)
        with self.client_and_bucket(args) as (client, bucket_name):
            opts.expiry = _effective_expiry(opts.expiry, client)
            url = client.storage.presigned_get_object(bucket_name, name, opts)
            return PresignedURL(url=url, expired_at=datetime.now(timezone.utc) + opts.expiry)

    def presigned_put_object(
        self, args: BucketArguments, name: str, expiry: timedelta | None
    ) -> PresignedURL:
        validate_object_name(name)
        with self.client_and_bucket(args) as (client, bucket_name):
            effective = _effective_expiry(expiry, client)
            url = client.storage.presigned_put_object(bucket_name, name, effective)
            return PresignedURL(url=url, expired_at=datetime.now(timezone.utc) + effective)


def _effective_expiry(expiry: timedelta | None, client: Client) -> timedelta:
    effective = expiry if expiry is not None else client.default_presigned_expiry
    if effective is None or effective <= timedelta(0):
        raise UnprocessableContentError("expiry is required and must be larger than 0")
    return effective


def _allow_list_predicate(client: Client, predicate: PostPredicate | None) -> PostPredicate:
    def _check(name: str) -> bool:
        if not client.is_bucket_allowed(name):
            return False
        return predicate is None or predicate(name)

    return _check
