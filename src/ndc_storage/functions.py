"""Read-only functions, queried as collections that return a single ``__value`` row."""

from __future__ import annotations

import base64
from typing import Any

from ndc_storage.arguments import (
    GetBucketArguments,
    GetObjectArguments,
    Handler,
    HandlerContext,
    IncompleteUploadsArguments,
    ListBucketsArguments,
    ListObjectsArguments,
    PresignedGetArguments,
    PresignedPutArguments,
    decode_arguments,
    parse_expiry,
)
from ndc_storage.errors import HandlerNotFoundError, UnprocessableContentError
from ndc_storage.filters import OP_STARTS_WITH, parse_expression
from ndc_storage.predicate import PredicateEvaluator, StringComparison
from ndc_storage.types import (
    GetObjectOptions,
    ListBucketsOptions,
    ListIncompleteUploadsOptions,
    ListObjectsOptions,
    PageInfo,
    PresignedGetOptions,
)


def connection(nodes: list[Any], page_info: PageInfo) -> dict[str, Any]:
    """Relay-style connection; every cursor is the node name."""
    return {
        "edges": [{"node": node, "cursor": node.name} for node in nodes],
        "page_info": page_info,
    }


def _check_first(first: int | None) -> None:
    if first is not None and first <= 0:
        raise UnprocessableContentError("$first argument must be larger than 0")


def _prefix_comparison(prefix: str) -> StringComparison | None:
    return StringComparison(OP_STARTS_WITH, prefix) if prefix else None


# --- Buckets ---


def storage_bucket_connections(ctx: HandlerContext, args: ListBucketsArguments) -> dict[str, Any]:
    _check_first(args.first)
    evaluator = PredicateEvaluator.for_buckets(
        args.credentials(),
        parse_expression(args.where),
        ctx.variables,
        pre=_prefix_comparison(args.prefix),
    )
    if not evaluator.is_valid:
        return connection([], PageInfo())
    evaluator.eval_selection(ctx.selection)

    buckets, page_info = ctx.manager.list_buckets(
        evaluator.credentials,
        ListBucketsOptions(
            prefix=evaluator.bucket_predicate.get_prefix(),
            max_results=args.first or 0,
            start_after=args.after or "",
            include=evaluator.bucket_include(),
            num_threads=ctx.concurrency,
        ),
        evaluator.bucket_post_predicate(),
    )
    return connection(buckets, page_info)


def storage_bucket(ctx: HandlerContext, args: GetBucketArguments) -> Any:
    evaluator = args.bucket_evaluator(ctx)
    if not evaluator.is_valid:
        return None
    evaluator.eval_selection(ctx.selection)
    return ctx.manager.get_bucket(args.bucket_target(evaluator), evaluator.bucket_include())


def storage_bucket_exists(ctx: HandlerContext, args: GetBucketArguments) -> dict[str, Any]:
    evaluator = args.bucket_evaluator(ctx)
    if not evaluator.is_valid:
        return {"exists": False}
    return {"exists": ctx.manager.bucket_exists(args.bucket_target(evaluator))}


# --- Objects ---


def _list_objects_request(
    ctx: HandlerContext, args: ListObjectsArguments
) -> tuple[PredicateEvaluator, ListObjectsOptions]:
    _check_first(args.first)
    evaluator = PredicateEvaluator.for_objects(
        args.bucket_arguments(),
        parse_expression(args.where),
        ctx.variables,
        pre=_prefix_comparison(args.prefix),
    )
    if evaluator.is_valid:
        evaluator.eval_selection(ctx.selection)
    opts = ListObjectsOptions(
        prefix=evaluator.object_name_predicate.get_prefix(),
        recursive=args.is_recursive(),
        max_results=args.first or 0,
        start_after=args.after or evaluator.start_after,
        include=evaluator.include,
        num_threads=ctx.concurrency,
    )
    return evaluator, opts


def storage_object_connections(ctx: HandlerContext, args: ListObjectsArguments) -> dict[str, Any]:
    evaluator, opts = _list_objects_request(ctx, args)
    if not evaluator.is_valid:
        return connection([], PageInfo())
    objects, page_info = ctx.manager.list_objects(
        evaluator.bucket_arguments(), opts, evaluator.object_post_predicate()
    )
    return connection(objects, page_info)


def storage_deleted_objects(ctx: HandlerContext, args: ListObjectsArguments) -> dict[str, Any]:
    evaluator, opts = _list_objects_request(ctx, args)
    if not evaluator.is_valid:
        return connection([], PageInfo())
    objects, page_info = ctx.manager.list_deleted_objects(
        evaluator.bucket_arguments(), opts, evaluator.object_post_predicate()
    )
    return connection(objects, page_info)


def _object_request(ctx: HandlerContext, args: GetObjectArguments) -> PredicateEvaluator | None:
    evaluator = args.object_evaluator(ctx)
    if not evaluator.is_valid:
        return None
    evaluator.eval_selection(ctx.selection)
    return evaluator


def storage_object(ctx: HandlerContext, args: GetObjectArguments) -> Any:
    evaluator = _object_request(ctx, args)
    if evaluator is None:
        return None
    return ctx.manager.stat_object(
        evaluator.bucket_arguments(),
        evaluator.object_name_predicate.get_prefix(),
        GetObjectOptions(version_id=args.version_id, part_number=args.part_number, include=evaluator.include),
    )


def _download(ctx: HandlerContext, args: GetObjectArguments) -> bytes | None:
    evaluator = args.object_evaluator(ctx)
    if not evaluator.is_valid:
        return None
    result = ctx.manager.download_object(
        evaluator.bucket_arguments(),
        evaluator.object_name_predicate.get_prefix(),
        GetObjectOptions(version_id=args.version_id, part_number=args.part_number),
    )
    return result[1] if result is not None else None


def download_storage_object_as_base64(ctx: HandlerContext, args: GetObjectArguments) -> dict[str, Any]:
    data = _download(ctx, args)
    return {"data": base64.b64encode(data).decode("ascii") if data is not None else None}


def download_storage_object_as_text(ctx: HandlerContext, args: GetObjectArguments) -> dict[str, Any]:
    data = _download(ctx, args)
    return {"data": data.decode("utf-8", errors="replace") if data is not None else None}


def storage_presigned_download_url(ctx: HandlerContext, args: PresignedGetArguments) -> Any:
    evaluator = args.object_evaluator(ctx)
    if not evaluator.is_valid:
        return None
    return ctx.manager.presigned_get_object(
        evaluator.bucket_arguments(),
        evaluator.object_name_predicate.get_prefix(),
        PresignedGetOptions(expiry=parse_expiry(args.expiry), request_params=args.request_params),
    )


def storage_presigned_upload_url(ctx: HandlerContext, args: PresignedPutArguments) -> Any:
    evaluator = args.object_evaluator(ctx)
    if not evaluator.is_valid:
        return None
    return ctx.manager.presigned_put_object(
        evaluator.bucket_arguments(),
        evaluator.object_name_predicate.get_prefix(),
        parse_expiry(args.expiry),
    )


def storage_incomplete_uploads(ctx: HandlerContext, args: IncompleteUploadsArguments) -> list[Any]:
    evaluator = args.bucket_evaluator(ctx)
    if not evaluator.is_valid:
        return []
    return ctx.manager.list_incomplete_uploads(
        args.bucket_target(evaluator),
        ListIncompleteUploadsOptions(prefix=args.prefix, recursive=args.recursive),
    )


FUNCTIONS: dict[str, Handler] = {
    "storageBucketConnections": Handler(ListBucketsArguments, storage_bucket_connections),
    "storageBucket": Handler(GetBucketArguments, storage_bucket),
    "storageBucketExists": Handler(GetBucketArguments, storage_bucket_exists),
    "storageObjectConnections": Handler(ListObjectsArguments, storage_object_connections),
    "storageDeletedObjects": Handler(ListObjectsArguments, storage_deleted_objects),
    "storageObject": Handler(GetObjectArguments, storage_object),
    "downloadStorageObjectAsBase64": Handler(GetObjectArguments, download_storage_object_as_base64),
    "downloadStorageObjectAsText": Handler(GetObjectArguments, download_storage_object_as_text),
    "storagePresignedDownloadUrl": Handler(PresignedGetArguments, storage_presigned_download_url),
    "storagePresignedUploadUrl": Handler(PresignedPutArguments, storage_presigned_upload_url),
    "storageIncompleteUploads": Handler(IncompleteUploadsArguments, storage_incomplete_uploads),
}


def execute_function(name: str, ctx: HandlerContext, raw_arguments: dict[str, Any]) -> Any:
    handler = FUNCTIONS.get(name)
    if handler is None:
        raise HandlerNotFoundError("function", name)
    return handler.run(ctx, decode_arguments(handler.arguments, raw_arguments))
