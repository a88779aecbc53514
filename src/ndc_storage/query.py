"""Collection executors for storage_objects / storage_buckets and row projection."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from loguru import logger

from ndc_storage.errors import UnprocessableContentError
from ndc_storage.filters import parse_expression
from ndc_storage.manager import StorageManager
from ndc_storage.predicate import PredicateEvaluator
from ndc_storage.types import (
    BucketArguments,
    ClientCredentials,
    ListBucketsOptions,
    ListObjectsOptions,
)

COLLECTION_OBJECTS = "storage_objects"
COLLECTION_BUCKETS = "storage_buckets"

ARGUMENT_AFTER = "after"
ARGUMENT_RECURSIVE = "recursive"


def empty_row_set() -> dict[str, Any]:
    return {"aggregates": {}, "rows": []}


# --- Serialization and projection ---


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def to_json_value(value: Any) -> Any:
    """Convert dataclasses and timestamps into plain JSON values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_json_value(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, dict):
        return {k: to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(v) for v in value]
    return value


def project_nested(value: Any, nested: dict[str, Any] | None) -> Any:
    """Apply a nested field selection (``object`` or ``array``) to a JSON value."""
    if nested is None or value is None:
        return value
    kind = nested.get("type")
    if kind == "object":
        if not isinstance(value, dict):
            raise UnprocessableContentError(f"expected an object, got {type(value).__name__}")
        return project_fields(value, nested.get("fields") or {})
    if kind == "array":
        if not isinstance(value, list):
            raise UnprocessableContentError(f"expected an array, got {type(value).__name__}")
        return [project_nested(item, nested.get("fields")) for item in value]
    raise UnprocessableContentError(f"unsupported nested field type: {kind}")


def project_fields(row: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for alias, selection in fields.items():
        if selection.get("type", "column") != "column":
            raise UnprocessableContentError(f"{alias}: unsupported field type {selection.get('type')}")
        out[alias] = project_nested(row.get(selection.get("column", alias)), selection.get("fields"))
    return out


def project_rows(rows: list[dict[str, Any]], fields: dict[str, Any] | None) -> list[dict[str, Any]]:
    if fields is None:
        return rows
    return [project_fields(row, fields) for row in rows]


# --- Arguments and ordering ---


def resolve_arguments(arguments: dict[str, Any] | None, variables: dict[str, Any]) -> dict[str, Any]:
    """Resolve ``{type: literal|variable}`` query arguments to plain values."""
    resolved: dict[str, Any] = {}
    for name, argument in (arguments or {}).items():
        if not isinstance(argument, dict):
            raise UnprocessableContentError(f"{name}: invalid argument")
        kind = argument.get("type")
        if kind == "literal":
            resolved[name] = argument.get("value")
        elif kind == "variable":
            variable = argument.get("name")
            if variable not in variables:
                raise UnprocessableContentError(f"{name}: variable {variable} does not exist")
            resolved[name] = variables[variable]
        else:
            raise UnprocessableContentError(f"{name}: unsupported argument type {kind}")
    return resolved


def optional_string(arguments: dict[str, Any], name: str) -> str | None:
    value = arguments.get(name)
    if value is None or isinstance(value, str):
        return value
    raise UnprocessableContentError(f"{name}: expected a string, got {type(value).__name__}")


def optional_bool(arguments: dict[str, Any], name: str) -> bool | None:
    value = arguments.get(name)
    if value is None or isinstance(value, bool):
        return value
    raise UnprocessableContentError(f"{name}: expected a boolean, got {type(value).__name__}")


@dataclass
class ColumnOrder:
    name: str
    descending: bool = False


def parse_order_by(order_by: dict[str, Any] | None) -> list[ColumnOrder]:
    orders: list[ColumnOrder] = []
    for element in (order_by or {}).get("elements") or []:
        target = element.get("target") or {}
        if target.get("type") != "column" or target.get("path") or target.get("field_path"):
            raise UnprocessableContentError(f"unsupported order by target: {target}")
        direction = element.get("order_direction", "asc")
        if direction not in ("asc", "desc"):
            raise UnprocessableContentError(f"invalid order direction: {direction}")
        orders.append(ColumnOrder(name=target["name"], descending=direction == "desc"))
    return orders


def sort_rows(rows: list[dict[str, Any]], orders: list[ColumnOrder]) -> list[dict[str, Any]]:
    """Stable multi-column sort; missing values order lowest."""
    result = list(rows)
    for order in reversed(orders):
        result.sort(key=lambda row, name=order.name: _sort_key(row.get(name)), reverse=order.descending)
    return result


def _sort_key(value: Any) -> tuple[bool, Any]:
    return (value is not None, value if value is not None else "")


def _page(rows: list[dict[str, Any]], offset: int, limit: int | None) -> list[dict[str, Any]]:
    if offset >= len(rows):
        return []
    rows = rows[offset:]
    return rows if limit is None else rows[:limit]


# --- Executors ---


@dataclass
class _CollectionExecutor:
    manager: StorageManager
    query: dict[str, Any]
    arguments: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    concurrency: int = 1

    def _offset_limit(self) -> tuple[int, int | None]:
        offset = self.query.get("offset") or 0
        if offset < 0:
            raise UnprocessableContentError("offset must be positive")
        return offset, self.query.get("limit")

    def _max_results(self, offset: int, limit: int | None) -> int:
        return offset + limit if limit is not None else 0

    def _finish(self, rows: list[dict[str, Any]], offset: int, limit: int | None) -> dict[str, Any]:
        orders = parse_order_by(self.query.get("order_by"))
        if orders:
            rows = sort_rows(rows, orders)
        rows = _page(rows, offset, limit)
        return {"aggregates": {}, "rows": project_rows(rows, self.query.get("fields"))}


class BucketQueryExecutor(_CollectionExecutor):
    """Runs a ``storage_buckets`` collection query."""

    def execute(self) -> dict[str, Any]:
        offset, limit = self._offset_limit()
        if limit is not None and limit <= 0:
            return empty_row_set()

        evaluator = PredicateEvaluator.for_buckets(
            ClientCredentials(), parse_expression(self.query.get("predicate")), self.variables
        )
        if not evaluator.is_valid:
            return empty_row_set()
        evaluator.eval_arguments(self.arguments)
        evaluator.eval_fields(self.query.get("fields") or {})

        opts = ListBucketsOptions(
            prefix=evaluator.bucket_predicate.get_prefix(),
            max_results=self._max_results(offset, limit),
            start_after=optional_string(self.arguments, ARGUMENT_AFTER) or "",
            include=evaluator.bucket_include(),
            num_threads=self.concurrency,
        )
        buckets, _ = self.manager.list_buckets(
            evaluator.credentials, opts, evaluator.bucket_post_predicate()
        )
        return self._finish([to_json_value(b) for b in buckets], offset, limit)


class ObjectQueryExecutor(_CollectionExecutor):
    """Runs a ``storage_objects`` collection query."""

    def execute(self) -> dict[str, Any]:
        offset, limit = self._offset_limit()
        if limit is not None and limit <= 0:
            return empty_row_set()

        evaluator = PredicateEvaluator.for_objects(
            BucketArguments(), parse_expression(self.query.get("predicate")), self.variables
        )
        if not evaluator.is_valid:
            logger.debug("object predicate is unsatisfiable, skipping backend call")
            return empty_row_set()
        evaluator.eval_arguments(self.arguments)
        evaluator.eval_fields(self.query.get("fields") or {})

        opts = ListObjectsOptions(
            prefix=evaluator.object_name_predicate.get_prefix(),
            recursive=bool(optional_bool(self.arguments, ARGUMENT_RECURSIVE)),
            max_results=self._max_results(offset, limit),
            start_after=optional_string(self.arguments, ARGUMENT_AFTER) or evaluator.start_after,
            include=evaluator.include,
            num_threads=self.concurrency,
            with_versions=evaluator.include.versions,
        )
        post = evaluator.object_post_predicate()
        objects, _ = self.manager.list_objects(evaluator.bucket_arguments(), opts, post)

        bucket_check = evaluator.bucket_predicate
        rows = [
            to_json_value(obj)
            for obj in objects
            if (post is None or post(obj.name)) and bucket_check.check(obj.bucket)
        ]
        return self._finish(rows, offset, limit)
