"""Local filesystem storage driver: buckets are directories, objects are files."""

from __future__ import annotations

import base64
import hashlib
import mimetypes
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterator

from ndc_storage.concurrency import raise_if_cancelled
from ndc_storage.config import ClientConfig, FilePermissions, resolve_env
from ndc_storage.errors import StorageBackendError, UnprocessableContentError
from ndc_storage.storage import StorageClient
from ndc_storage.types import (
    BucketIncludeOptions,
    CopyDestination,
    CopySource,
    GetObjectOptions,
    ListBucketsOptions,
    ListObjectsOptions,
    MakeBucketOptions,
    ObjectStream,
    PageInfo,
    PostPredicate,
    PutObjectOptions,
    RemoveObjectError,
    RemoveObjectOptions,
    RemoveObjectsOptions,
    StorageBucket,
    StorageObject,
    UploadInfo,
)

CHUNK_SIZE = 64 * 1024


def _mtime(stat: os.stat_result) -> datetime:
    return datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)


def _etag(stat: os.stat_result) -> str:
    return f"{stat.st_mtime_ns:x}-{stat.st_size:x}"


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return base64.b64encode(digest.digest()).decode("ascii")


class FileSystemStorageClient(StorageClient):
    """Storage client over local directories."""

    backend = "fs"

    def __init__(self, config: ClientConfig) -> None:
        self._permissions = config.permissions or FilePermissions()
        self._directories: list[str] = []
        default_directory = resolve_env(config.default_directory)
        if default_directory:
            self._directories.append(default_directory)
        for directory in config.allowed_directories:
            if directory not in self._directories:
                self._directories.append(directory)

    # --- Paths ---

    def _bucket_path(self, bucket: str) -> Path:
        if not bucket:
            raise UnprocessableContentError("bucket name is required")
        return Path(bucket)

    def _object_path(self, bucket: str, name: str) -> Path:
        root = self._bucket_path(bucket).resolve()
        path = (root / name.lstrip("/")).resolve()
        if path != root and root not in path.parents:
            raise UnprocessableContentError(f"invalid object name: {name}")
        return path

    def _wrap(self, operation: str, err: OSError) -> StorageBackendError:
        return StorageBackendError(operation, str(err), code=type(err).__name__)

    # --- Buckets ---

    def make_bucket(self, opts: MakeBucketOptions) -> None:
        path = self._bucket_path(opts.name)
        if path.exists():
            raise UnprocessableContentError(f"bucket already exists: {opts.name}")
        try:
            path.mkdir(mode=self._permissions.directory, parents=True)
        except OSError as e:
            raise self._wrap("make_bucket", e) from e

    def remove_bucket(self, name: str) -> None:
        path = self._bucket_path(name)
        if not path.is_dir():
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise self._wrap("remove_bucket", e) from e

    def bucket_exists(self, name: str) -> bool:
        # Only configured directories are buckets, whatever else exists on disk.
        return name in self._directories and self._bucket_path(name).is_dir()

    def get_bucket(self, name: str, include: BucketIncludeOptions) -> StorageBucket | None:
        if not self.bucket_exists(name):
            return None
        path = self._bucket_path(name)
        stat = path.stat()
        return StorageBucket(
            name=name,
            creation_time=datetime.fromtimestamp(stat.st_ctime, tz=timezone.utc),
        )

    def list_buckets(
        self,
        opts: ListBucketsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageBucket], PageInfo]:
        candidates = [
            d
            for d in sorted(self._directories)
            if d.startswith(opts.prefix)
            and (not opts.start_after or d > opts.start_after)
            and (post_predicate is None or post_predicate(d))
        ]
        buckets: list[StorageBucket] = []
        has_next_page = False
        for index, name in enumerate(candidates):
            if opts.max_results > 0 and len(buckets) >= opts.max_results:
                has_next_page = any(self._bucket_path(d).is_dir() for d in candidates[index:])
                break
            bucket = self.get_bucket(name, opts.include)
            if bucket is not None:
                buckets.append(bucket)
        cursor = buckets[-1].name if buckets else None
        return buckets, PageInfo(cursor=cursor, has_next_page=has_next_page)

    # --- Objects ---

    def _iter_entries(self, root: Path, opts: ListObjectsOptions) -> Iterator[tuple[str, Path]]:
        if opts.recursive:
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames.sort()
                raise_if_cancelled()
                for filename in filenames:
                    path = Path(dirpath) / filename
                    yield path.relative_to(root).as_posix(), path
            return

        # Non-recursive listing groups everything below the next "/" like a
        # delimiter listing does.
        directory = opts.prefix.rsplit("/", 1)[0] if "/" in opts.prefix else ""
        base = root / directory if directory else root
        if not base.is_dir():
            return
        for entry in base.iterdir():
            rel = entry.relative_to(root).as_posix()
            yield (rel + "/" if entry.is_dir() else rel), entry

    def _to_object(self, name: str, path: Path, include_checksum: bool) -> StorageObject:
        stat = path.stat()
        if path.is_dir():
            return StorageObject(name=name, is_directory=True, last_modified=_mtime(stat))
        content_type, content_encoding = mimetypes.guess_type(name)
        return StorageObject(
            name=name,
            size=stat.st_size,
            etag=_etag(stat),
            last_modified=_mtime(stat),
            content_type=content_type or "application/octet-stream",
            content_encoding=content_encoding,
            checksum_sha256=_sha256(path) if include_checksum else None,
        )

    def list_objects(
        self,
        bucket: str,
        opts: ListObjectsOptions,
        post_predicate: PostPredicate | None = None,
    ) -> tuple[list[StorageObject], PageInfo]:
        root = self._bucket_path(bucket).resolve()
        if not root.is_dir():
            raise StorageBackendError("list_objects", f"bucket {bucket} does not exist", status_code=404, code="NoSuchBucket")

        entries = sorted(
            (name, path)
            for name, path in self._iter_entries(root, opts)
            if name.startswith(opts.prefix)
            and (not opts.start_after or name > opts.start_after)
            and (post_predicate is None or post_predicate(name))
        )
        has_next_page = opts.max_results > 0 and len(entries) > opts.max_results
        if opts.max_results > 0:
            entries = entries[: opts.max_results]

        objects = [self._to_object(name, path, opts.include.checksum) for name, path in entries]
        cursor = objects[-1].name if objects else None
        return objects, PageInfo(cursor=cursor, has_next_page=has_next_page)

    def stat_object(self, bucket: str, name: str, opts: GetObjectOptions) -> StorageObject | None:
        path = self._object_path(bucket, name)
        if not path.exists():
            return None
        return self._to_object(name, path, opts.include.checksum)

    def get_object(self, bucket: str, name: str, opts: GetObjectOptions) -> ObjectStream:
        path = self._object_path(bucket, name)
        try:
            f = open(path, "rb")
        except OSError as e:
            raise self._wrap("get_object", e) from e

        def _chunks() -> ObjectStream:
            with f:
                for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                    yield chunk

        return _chunks()

    def _write(self, path: Path, reader: BinaryIO) -> None:
        path.parent.mkdir(mode=self._permissions.directory, parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as out:
                shutil.copyfileobj(reader, out, CHUNK_SIZE)
            os.chmod(tmp_name, self._permissions.file)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _upload_info(self, bucket: str, name: str, path: Path) -> UploadInfo:
        stat = path.stat()
        return UploadInfo(
            bucket=bucket,
            name=name,
            etag=_etag(stat),
            size=stat.st_size,
            last_modified=_mtime(stat),
        )

    def put_object(
        self,
        bucket: str,
        name: str,
        opts: PutObjectOptions,
        reader: BinaryIO,
        size: int | None = None,
    ) -> UploadInfo:
        path = self._object_path(bucket, name)
        try:
            self._write(path, reader)
        except OSError as e:
            raise self._wrap("put_object", e) from e
        return self._upload_info(bucket, name, path)

    def copy_object(self, dest: CopyDestination, src: CopySource) -> UploadInfo:
        source = self._object_path(src.bucket, src.name)
        target = self._object_path(dest.bucket, dest.name)
        try:
            with open(source, "rb") as f:
                self._write(target, f)
        except OSError as e:
            raise self._wrap("copy_object", e) from e
        return self._upload_info(dest.bucket, dest.name, target)

    def compose_object(self, dest: CopyDestination, sources: list[CopySource]) -> UploadInfo:
        target = self._object_path(dest.bucket, dest.name)
        paths = [self._object_path(src.bucket, src.name) for src in sources]
        try:
            target.parent.mkdir(mode=self._permissions.directory, parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".compose-")
            with os.fdopen(fd, "wb") as out:
                for path in paths:
                    with open(path, "rb") as f:
                        shutil.copyfileobj(f, out, CHUNK_SIZE)
            os.chmod(tmp_name, self._permissions.file)
            os.replace(tmp_name, target)
        except OSError as e:
            raise self._wrap("compose_object", e) from e
        return self._upload_info(dest.bucket, dest.name, target)

    def remove_object(self, bucket: str, name: str, opts: RemoveObjectOptions) -> None:
        path = self._object_path(bucket, name)
        try:
            if path.is_dir():
                if opts.force_delete:
                    shutil.rmtree(path)
                else:
                    path.rmdir()
            else:
                path.unlink(missing_ok=True)
        except OSError as e:
            raise self._wrap("remove_object", e) from e

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
            try:
                self.remove_object(bucket, obj.name, RemoveObjectOptions())
            except StorageBackendError as e:
                errors.append(RemoveObjectError(object_name=obj.name, error=e.message))
        return errors
