"""Mutation procedures: a closed dispatch table from operation name to typed handler."""

from __future__ import annotations

import base64
import binascii
from typing import Any

from loguru import logger

from ndc_storage.arguments import (
    ComposeObjectArguments,
    CopyObjectArguments,
    CreateBucketArguments,
    Handler,
    HandlerContext,
    RemoveBucketArguments,
    RemoveIncompleteUploadArguments,
    RemoveObjectArguments,
    RemoveObjectsArguments,
    RestoreObjectArguments,
    UpdateBucketArguments,
    UpdateObjectArguments,
    UploadArguments,
    UploadFromUrlArguments,
    decode_arguments,
)
from ndc_storage.errors import HandlerNotFoundError, UnprocessableContentError
from ndc_storage.filters import OP_STARTS_WITH, parse_expression
from ndc_storage.predicate import PredicateEvaluator, StringComparison
from ndc_storage.types import (
    CopyDestination,
    CopySource,
    MakeBucketOptions,
    RemoveObjectError,
    RemoveObjectOptions,
    RemoveObjectsOptions,
    UpdateBucketOptions,
    UpdateObjectOptions,
    UploadInfo,
)

SUCCESS = {"success": True}


# --- Buckets ---


def create_storage_bucket(ctx: HandlerContext, args: CreateBucketArguments) -> dict[str, Any]:
    ctx.manager.make_bucket(
        args.credentials(),
        MakeBucketOptions(name=args.name, region=args.region, object_lock=args.object_lock, tags=args.tags),
    )
    return SUCCESS


def update_storage_bucket(ctx: HandlerContext, args: UpdateBucketArguments) -> dict[str, Any]:
    target = args.require_bucket(ctx)
    ctx.manager.update_bucket(
        target,
        UpdateBucketOptions(
            tags=args.tags,
            versioning_enabled=args.versioning_enabled,
            lifecycle=args.lifecycle,
            encryption=args.encryption,
            object_lock=args.object_lock,
        ),
    )
    return SUCCESS


def remove_storage_bucket(ctx: HandlerContext, args: RemoveBucketArguments) -> dict[str, Any]:
    ctx.manager.remove_bucket(args.require_bucket(ctx))
    return SUCCESS


# --- Uploads ---


def upload_storage_object_as_base64(ctx: HandlerContext, args: UploadArguments) -> UploadInfo:
    try:
        data = base64.b64decode(args.data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UnprocessableContentError(f"data: invalid base64 payload: {e}") from e
    target, name = args.require_object(ctx)
    return ctx.manager.put_object(target, name, args.put_options(), data)


def upload_storage_object_as_text(ctx: HandlerContext, args: UploadArguments) -> UploadInfo:
    target, name = args.require_object(ctx)
    return ctx.manager.put_object(target, name, args.put_options(), args.data.encode("utf-8"))


def upload_storage_object_from_url(ctx: HandlerContext, args: UploadFromUrlArguments) -> UploadInfo:
    target, name = args.require_object(ctx)
    return ctx.manager.upload_from_url(
        target,
        name,
        args.put_options(),
        args.url,
        method=args.method,
        headers=args.headers,
        body=args.body,
    )


# --- Server-side copies ---


def copy_storage_object(ctx: HandlerContext, args: CopyObjectArguments) -> UploadInfo:
    return ctx.manager.copy_object(
        args.credentials(),
        CopyDestination(
            bucket=args.dest.bucket or "",
            name=args.dest.object,
            metadata=args.dest.metadata,
            tags=args.dest.tags,
            content_type=args.dest.content_type,
        ),
        CopySource(bucket=args.source.bucket or "", name=args.source.object, version_id=args.source.version_id),
    )


def compose_storage_object(ctx: HandlerContext, args: ComposeObjectArguments) -> UploadInfo:
    return ctx.manager.compose_object(
        args.credentials(),
        CopyDestination(
            bucket=args.dest.bucket or "",
            name=args.dest.object,
            metadata=args.dest.metadata,
            tags=args.dest.tags,
            content_type=args.dest.content_type,
        ),
        [CopySource(bucket=s.bucket or "", name=s.object, version_id=s.version_id) for s in args.sources],
    )


# --- Object updates and removal ---


def update_storage_object(ctx: HandlerContext, args: UpdateObjectArguments) -> dict[str, Any]:
    target, name = args.require_object(ctx)
    ctx.manager.update_object(
        target,
        name,
        UpdateObjectOptions(
            version_id=args.version_id,
            tags=args.tags,
            legal_hold=args.legal_hold,
            retention=args.retention,
        ),
    )
    return SUCCESS


def remove_storage_object(ctx: HandlerContext, args: RemoveObjectArguments) -> dict[str, Any]:
    target, name = args.require_object(ctx)
    ctx.manager.remove_object(
        target,
        name,
        RemoveObjectOptions(
            version_id=args.version_id,
            force_delete=args.force_delete,
            governance_bypass=args.governance_bypass,
        ),
    )
    return SUCCESS


def remove_storage_objects(ctx: HandlerContext, args: RemoveObjectsArguments) -> list[RemoveObjectError]:
    if args.first is not None and args.first <= 0:
        raise UnprocessableContentError("$first argument must be larger than 0")
    evaluator = PredicateEvaluator.for_objects(
        args.bucket_arguments(),
        parse_expression(args.where),
        ctx.variables,
        pre=StringComparison(OP_STARTS_WITH, args.prefix) if args.prefix else None,
    )
    if not evaluator.is_valid:
        logger.debug("remove objects predicate is unsatisfiable, nothing to remove")
        return []
    return ctx.manager.remove_objects(
        evaluator.bucket_arguments(),
        RemoveObjectsOptions(
            prefix=evaluator.object_name_predicate.get_prefix(),
            recursive=args.recursive,
            governance_bypass=args.governance_bypass,
            max_results=args.first or 0,
            start_after=args.after or evaluator.start_after,
        ),
        evaluator.object_post_predicate(),
    )


def remove_incomplete_storage_upload(
    ctx: HandlerContext, args: RemoveIncompleteUploadArguments
) -> dict[str, Any]:
    ctx.manager.remove_incomplete_upload(args.require_bucket(ctx), args.object)
    return SUCCESS


def restore_storage_object(ctx: HandlerContext, args: RestoreObjectArguments) -> dict[str, Any]:
    target, name = args.require_object(ctx)
    ctx.manager.restore_object(target, name)
    return SUCCESS


PROCEDURES: dict[str, Handler] = {
    "createStorageBucket": Handler(CreateBucketArguments, create_storage_bucket),
    "updateStorageBucket": Handler(UpdateBucketArguments, update_storage_bucket),
    "removeStorageBucket": Handler(RemoveBucketArguments, remove_storage_bucket),
    "uploadStorageObjectAsBase64": Handler(UploadArguments, upload_storage_object_as_base64),
    "uploadStorageObjectAsText": Handler(UploadArguments, upload_storage_object_as_text),
    "uploadStorageObjectFromUrl": Handler(UploadFromUrlArguments, upload_storage_object_from_url),
    "copyStorageObject": Handler(CopyObjectArguments, copy_storage_object),
    "composeStorageObject": Handler(ComposeObjectArguments, compose_storage_object),
    "updateStorageObject": Handler(UpdateObjectArguments, update_storage_object),
    "removeStorageObject": Handler(RemoveObjectArguments, remove_storage_object),
    "removeStorageObjects": Handler(RemoveObjectsArguments, remove_storage_objects),
    "removeIncompleteStorageUpload": Handler(RemoveIncompleteUploadArguments, remove_incomplete_storage_upload),
    "restoreStorageObject": Handler(RestoreObjectArguments, restore_storage_object),
}


def execute_procedure(name: str, ctx: HandlerContext, raw_arguments: dict[str, Any]) -> Any:
    handler = PROCEDURES.get(name)
    if handler is None:
        raise HandlerNotFoundError("procedure", name)
    logger.debug(f"executing procedure {name}")
    return handler.run(ctx, decode_arguments(handler.arguments, raw_arguments))
