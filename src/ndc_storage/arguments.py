"""Typed argument models shared by the function and procedure dispatch tables."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from ndc_storage.config import parse_duration
from ndc_storage.errors import ForbiddenError, UnprocessableContentError
from ndc_storage.filters import OP_EQ, parse_expression
from ndc_storage.manager import StorageManager, with_bucket
from ndc_storage.predicate import PredicateEvaluator, StringComparison
from ndc_storage.types import (
    BucketArguments,
    BucketLifecycle,
    ClientCredentials,
    ObjectLockConfig,
    ObjectRetention,
    PutObjectOptions,
    ServerSideEncryption,
)


@dataclass
class HandlerContext:
    """Request state handed to every function and procedure handler."""

    manager: StorageManager
    variables: dict[str, Any] = field(default_factory=dict)
    selection: dict[str, Any] | None = None
    concurrency: int = 1


@dataclass
class Handler:
    arguments: type[BaseModel]
    run: Callable[[HandlerContext, Any], Any]


def decode_arguments(model: type[BaseModel], raw: dict[str, Any] | None) -> Any:
    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in item.get('loc', ()))}: {item.get('msg', '')}"
            for item in e.errors()
        ]
        raise UnprocessableContentError("invalid arguments: " + "; ".join(problems)) from e


def parse_expiry(value: str | int | None) -> timedelta | None:
    """Accept ``30s``/``15m``/``24h`` strings or a number of seconds."""
    if value is None:
        return None
    if isinstance(value, int):
        return timedelta(seconds=value)
    try:
        return parse_duration(value)
    except ValueError as e:
        raise UnprocessableContentError(f"expiry: {e}") from e


class Arguments(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ClientArguments(Arguments):
    client_id: str | None = None
    client_type: Literal["s3", "gcs", "azblob", "fs"] | None = None
    endpoint: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    def credentials(self) -> ClientCredentials:
        return ClientCredentials(
            client_id=self.client_id,
            client_type=self.client_type,
            endpoint=self.endpoint,
            access_key_id=self.access_key_id,
            secret_access_key=self.secret_access_key,
        )


class BucketScopedArguments(ClientArguments):
    bucket: str | None = None
    where: dict[str, Any] | None = None

    def bucket_arguments(self) -> BucketArguments:
        return with_bucket(self.credentials(), self.bucket or "")

    def bucket_evaluator(self, ctx: HandlerContext) -> PredicateEvaluator:
        pre = StringComparison(OP_EQ, self.bucket) if self.bucket else None
        return PredicateEvaluator.for_buckets(
            self.credentials(), parse_expression(self.where), ctx.variables, pre=pre
        )

    def bucket_target(self, evaluator: PredicateEvaluator) -> BucketArguments:
        """Bucket reference after the ``where`` predicate has been folded in."""
        args = self.bucket_arguments()
        args.client_id = evaluator.credentials.client_id
        if evaluator.bucket_predicate.is_exact():
            args.bucket = evaluator.bucket_predicate.get_prefix()
        return args

    def require_bucket(self, ctx: HandlerContext) -> BucketArguments:
        """Bucket reference for a write, refusing when ``where`` excludes it."""
        evaluator = self.bucket_evaluator(ctx)
        if not evaluator.is_valid:
            raise ForbiddenError()
        return self.bucket_target(evaluator)


class ObjectScopedArguments(BucketScopedArguments):
    object: str

    def object_evaluator(self, ctx: HandlerContext) -> PredicateEvaluator:
        return PredicateEvaluator.for_objects(
            self.bucket_arguments(),
            parse_expression(self.where),
            ctx.variables,
            pre=StringComparison(OP_EQ, self.object),
        )

    def require_object(self, ctx: HandlerContext) -> tuple[BucketArguments, str]:
        """Bucket and key for a write, refusing when ``where`` excludes the object."""
        evaluator = self.object_evaluator(ctx)
        if not evaluator.is_valid:
            raise ForbiddenError()
        return evaluator.bucket_arguments(), evaluator.object_name_predicate.get_prefix()


# --- Functions ---


class ListBucketsArguments(ClientArguments):
    prefix: str = ""
    first: int | None = None
    after: str | None = None
    where: dict[str, Any] | None = None


class GetBucketArguments(BucketScopedArguments):
    pass


class ListObjectsArguments(BucketScopedArguments):
    prefix: str = ""
    first: int | None = None
    after: str | None = None
    recursive: bool | None = None
    hierarchy: bool = False

    def is_recursive(self) -> bool:
        if self.recursive is not None:
            return self.recursive
        return not self.hierarchy


class GetObjectArguments(ObjectScopedArguments):
    version_id: str | None = None
    part_number: int | None = None


class PresignedGetArguments(ObjectScopedArguments):
    expiry: str | int | None = None
    request_params: dict[str, list[str]] | None = None


class PresignedPutArguments(ObjectScopedArguments):
    expiry: str | int | None = None


class IncompleteUploadsArguments(BucketScopedArguments):
    prefix: str = ""
    recursive: bool = False


# --- Procedures ---


class CreateBucketArguments(ClientArguments):
    name: str
    region: str | None = None
    object_lock: bool = False
    tags: dict[str, str] | None = None


class UpdateBucketArguments(BucketScopedArguments):
    tags: dict[str, str] | None = None
    versioning_enabled: bool | None = None
    lifecycle: BucketLifecycle | None = None
    encryption: ServerSideEncryption | None = None
    object_lock: ObjectLockConfig | None = None


class RemoveBucketArguments(BucketScopedArguments):
    pass


class PutOptions(Arguments):
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

    def to_options(self) -> PutObjectOptions:
        return PutObjectOptions(**{name: getattr(self, name) for name in type(self).model_fields})


class UploadArguments(ObjectScopedArguments):
    data: str
    options: PutOptions | None = None

    def put_options(self) -> PutObjectOptions:
        return self.options.to_options() if self.options else PutObjectOptions()


class UploadFromUrlArguments(ObjectScopedArguments):
    url: str
    method: Literal["GET", "POST", "get", "post"] | None = None
    headers: dict[str, str] | None = None
    body: str | None = None
    options: PutOptions | None = None

    def put_options(self) -> PutObjectOptions:
        return self.options.to_options() if self.options else PutObjectOptions()


class CopySourceInput(Arguments):
    bucket: str | None = None
    object: str
    version_id: str | None = None


class CopyDestinationInput(Arguments):
    bucket: str | None = None
    object: str
    metadata: dict[str, str] | None = None
    tags: dict[str, str] | None = None
    content_type: str | None = None


class CopyObjectArguments(ClientArguments):
    dest: CopyDestinationInput
    source: CopySourceInput


class ComposeObjectArguments(ClientArguments):
    dest: CopyDestinationInput
    sources: list[CopySourceInput]


class UpdateObjectArguments(ObjectScopedArguments):
    version_id: str | None = None
    tags: dict[str, str] | None = None
    legal_hold: bool | None = None
    retention: ObjectRetention | None = None


class RemoveObjectArguments(ObjectScopedArguments):
    version_id: str | None = None
    force_delete: bool = False
    governance_bypass: bool = False


class RemoveObjectsArguments(BucketScopedArguments):
    prefix: str = ""
    recursive: bool = False
    governance_bypass: bool = False
    first: int | None = None
    after: str | None = None


class RemoveIncompleteUploadArguments(BucketScopedArguments):
    object: str


class RestoreObjectArguments(ObjectScopedArguments):
    pass
