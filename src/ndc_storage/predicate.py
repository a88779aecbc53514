"""Folding of column predicates into backend list parameters and residual filters."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from ndc_storage.errors import UnprocessableContentError
from ndc_storage.filters import (
    OP_CONTAINS,
    OP_EQ,
    OP_GT,
    OP_ICONTAINS,
    OP_IS_NULL,
    OP_STARTS_WITH,
    ComparisonExpression,
    FilterExpression,
    LogicalExpression,
)
from ndc_storage.types import (
    BucketArguments,
    BucketIncludeOptions,
    ClientCredentials,
    ObjectIncludeOptions,
    PostPredicate,
    normalize_object_path,
)

COLUMN_CLIENT_ID = "client_id"
COLUMN_BUCKET = "bucket"
COLUMN_NAME = "name"
COLUMN_OBJECT = "object"
COLUMN_LAST_MODIFIED = "last_modified"

CHECKSUM_COLUMNS = (
    "checksum_crc32",
    "checksum_crc32c",
    "checksum_sha1",
    "checksum_sha256",
    "checksum_crc64nvme",
)

# Selection containers the include walk descends into.
_NESTED_CONTAINERS = ("objects", "edges", "node")


@dataclass
class StringComparison:
    operator: str
    value: str


def _satisfies(comparison: StringComparison, value: str) -> bool:
    if comparison.operator == OP_CONTAINS:
        return comparison.value in value
    if comparison.operator == OP_ICONTAINS:
        return comparison.value.lower() in value.lower()
    if comparison.operator == OP_STARTS_WITH:
        return value.startswith(comparison.value)
    return value == comparison.value


@dataclass
class StringFilterPredicate:
    """Folded state of every string comparison on one column.

    ``pre`` holds at most one ``_eq`` or ``_starts_with`` comparison and is
    sent to the backend as prefix or exact key; ``post`` holds the substring
    checks that must be re-run on the returned rows.
    """

    pre: StringComparison | None = None
    post: list[StringComparison] = field(default_factory=list)

    def apply(self, operator: str, value: str) -> bool:
        """Fold one comparison in; returns False when the conjunction is unsatisfiable."""
        if operator not in (OP_EQ, OP_STARTS_WITH, OP_CONTAINS, OP_ICONTAINS):
            raise UnprocessableContentError(
                f"unsupported operator `{operator}` for string filter expression"
            )

        pre = self.pre
        if pre is None:
            if operator in (OP_EQ, OP_STARTS_WITH):
                self.pre = StringComparison(operator, value)
                return self._settle()
            self.post.append(StringComparison(operator, value))
            return True

        if pre.operator == OP_EQ:
            return _satisfies(StringComparison(operator, value), pre.value)

        # pre is a prefix
        if operator == OP_STARTS_WITH:
            if len(pre.value) >= len(value):
                return pre.value.startswith(value)
            if not value.startswith(pre.value):
                return False
            self.pre = StringComparison(OP_STARTS_WITH, value)
            return self._settle()
        if operator == OP_EQ:
            if not value.startswith(pre.value):
                return False
            self.pre = StringComparison(OP_EQ, value)
            return self._settle()
        if _satisfies(StringComparison(operator, value), pre.value):
            return True
        self.post.append(StringComparison(operator, value))
        return True

    def _settle(self) -> bool:
        # Re-check residuals collected before the current pre was known.
        if self.pre is None or not self.post:
            return True
        if self.pre.operator == OP_EQ:
            ok = all(_satisfies(p, self.pre.value) for p in self.post)
            self.post = []
            return ok
        self.post = [p for p in self.post if not _satisfies(p, self.pre.value)]
        return True

    def get_prefix(self) -> str:
        return self.pre.value if self.pre is not None else ""

    def is_exact(self) -> bool:
        return self.pre is not None and self.pre.operator == OP_EQ

    def has_post_predicate(self) -> bool:
        return len(self.post) > 0

    def check_post(self, value: str) -> bool:
        return all(_satisfies(p, value) for p in self.post)

    def check(self, value: str) -> bool:
        """Full check of a value against pre and post, used for write guards."""
        if self.pre is not None and not _satisfies(self.pre, value):
            return False
        return self.check_post(value)


def format_start_after(value: Any) -> str:
    """Format a timestamp literal as an RFC 3339 start-after marker."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        moment = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, datetime):
        moment = value
    elif isinstance(value, str):
        try:
            moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise UnprocessableContentError(f"invalid timestamp: {value}") from e
    else:
        raise UnprocessableContentError(f"invalid timestamp: {value!r}")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class PredicateEvaluator:
    """Structured result of evaluating a query predicate.

    Built with :meth:`for_buckets` or :meth:`for_objects`. After evaluation
    ``is_valid`` tells whether the conjunction can match anything at all.
    """

    def __init__(
        self,
        credentials: ClientCredentials | None = None,
        variables: dict[str, Any] | None = None,
    ) -> None:
        self.credentials = replace(credentials) if credentials is not None else ClientCredentials()
        self.variables = variables or {}
        self.is_valid = False
        self.include = ObjectIncludeOptions()
        self.bucket_predicate = StringFilterPredicate()
        self.object_name_predicate = StringFilterPredicate()
        self.start_after = ""

    @classmethod
    def for_buckets(
        cls,
        credentials: ClientCredentials | None,
        predicate: FilterExpression | None,
        variables: dict[str, Any] | None = None,
        *,
        pre: StringComparison | None = None,
    ) -> PredicateEvaluator:
        evaluator = cls(credentials, variables)
        if pre is not None:
            evaluator.bucket_predicate.pre = replace(pre)
        evaluator.is_valid = evaluator._evaluate(predicate, for_bucket=True)
        return evaluator

    @classmethod
    def for_objects(
        cls,
        bucket: BucketArguments,
        predicate: FilterExpression | None,
        variables: dict[str, Any] | None = None,
        *,
        pre: StringComparison | None = None,
    ) -> PredicateEvaluator:
        evaluator = cls(bucket, variables)
        if bucket.bucket:
            evaluator.bucket_predicate.pre = StringComparison(OP_EQ, bucket.bucket)
        if pre is not None:
            evaluator.object_name_predicate.pre = StringComparison(
                pre.operator, normalize_object_path(pre.value)
            )
        evaluator.is_valid = evaluator._evaluate(predicate, for_bucket=False)
        return evaluator

    # --- Results ---

    def bucket_arguments(self) -> BucketArguments:
        """Bucket reference of an object request; only an exact bucket selects one."""
        creds = self.credentials
        bucket = self.bucket_predicate.get_prefix() if self.bucket_predicate.is_exact() else ""
        return BucketArguments(
            client_id=creds.client_id,
            client_type=creds.client_type,
            endpoint=creds.endpoint,
            access_key_id=creds.access_key_id,
            secret_access_key=creds.secret_access_key,
            bucket=bucket,
        )

    def object_post_predicate(self) -> PostPredicate | None:
        """Residual check on object names, or None when the backend prefix is enough."""
        name = self.object_name_predicate
        if name.is_exact() or name.has_post_predicate():
            return name.check
        return None

    def bucket_post_predicate(self) -> PostPredicate | None:
        """Residual check on bucket names, used by bucket listings."""
        bucket = self.bucket_predicate
        if bucket.is_exact() or bucket.has_post_predicate():
            return bucket.check
        return None

    def bucket_include(self) -> BucketIncludeOptions:
        return BucketIncludeOptions(
            tags=self.include.tags,
            versioning=self.include.versions,
            lifecycle=self.include.lifecycle,
            encryption=self.include.encryption,
            object_lock=self.include.object_lock,
        )

    # --- Arguments and selection ---

    def eval_arguments(self, arguments: dict[str, Any]) -> None:
        """Read inline client credentials from request arguments."""
        for name in ("client_type", "endpoint", "access_key_id", "secret_access_key"):
            value = arguments.get(name)
            if value is None:
                continue
            if not isinstance(value, str):
                raise UnprocessableContentError(f"{name}: expected a string, got {type(value).__name__}")
            setattr(self.credentials, name, value)

    def eval_selection(self, selection: dict[str, Any] | None) -> None:
        """Walk a nested field selection and raise the include flags it needs."""
        if not selection:
            return
        kind = selection.get("type")
        if kind == "array":
            self.eval_selection(selection.get("fields"))
            return
        if kind != "object":
            raise UnprocessableContentError(f"failed to evaluate selection: unknown nested field type {kind}")
        self.eval_fields(selection.get("fields") or {})

    def eval_fields(self, fields: dict[str, Any]) -> None:
        by_column = {(f or {}).get("column", alias): f or {} for alias, f in fields.items()}
        for container in _NESTED_CONTAINERS:
            if container in by_column:
                self.eval_selection(by_column[container].get("fields"))
                return

        names = set(by_column)
        include = self.include
        if names & {"metadata", "raw_metadata"}:
            include.metadata = True
        if names.intersection(CHECKSUM_COLUMNS):
            include.checksum = True
        if "tags" in names:
            include.tags = True
        if "copy" in names:
            include.copy = True
        if names & {"version_id", "versioning"}:
            include.versions = True
        if "legal_hold" in names:
            include.legal_hold = True
        if "lifecycle" in names:
            include.lifecycle = True
        if "encryption" in names:
            include.encryption = True
        if "object_lock" in names:
            include.object_lock = True

    # --- Predicate walk ---

    def _evaluate(self, expression: FilterExpression | None, *, for_bucket: bool) -> bool:
        if expression is None:
            return True
        if isinstance(expression, LogicalExpression):
            if expression.op != "AND":
                raise UnprocessableContentError(
                    f"unsupported expression: {expression.op.lower()}",
                    {"hint": "only conjunctions of column comparisons are supported"},
                )
            for child in expression.children:
                if not self._evaluate(child, for_bucket=for_bucket):
                    return False
            return True
        if isinstance(expression, ComparisonExpression):
            return self._eval_comparison(expression, for_bucket=for_bucket)
        raise UnprocessableContentError(f"unsupported expression: {type(expression).__name__}")

    def _eval_comparison(self, expr: ComparisonExpression, *, for_bucket: bool) -> bool:
        if expr.target_type != "column" or expr.path:
            raise UnprocessableContentError(f"unsupported comparison target `{expr.column}`")

        if expr.op == OP_IS_NULL:
            is_null = self._bool_value(expr)
            return not is_null

        if expr.column == COLUMN_CLIENT_ID:
            return self._eval_client_id(expr)
        if expr.column == COLUMN_BUCKET:
            return self._eval_string(self.bucket_predicate, expr)
        if expr.column in (COLUMN_NAME, COLUMN_OBJECT):
            target = self.bucket_predicate if for_bucket else self.object_name_predicate
            return self._eval_string(target, expr)
        if expr.column == COLUMN_LAST_MODIFIED and not for_bucket:
            return self._eval_last_modified(expr)
        raise UnprocessableContentError(f"unsupported predicate on column {expr.column}")

    def _eval_client_id(self, expr: ComparisonExpression) -> bool:
        if expr.op != OP_EQ:
            raise UnprocessableContentError(f"unsupported operator `{expr.op}` for client_id")
        value = self._string_value(expr)
        if value is None:
            return True
        if not self.credentials.client_id:
            self.credentials.client_id = value
            return True
        return self.credentials.client_id == value

    def _eval_string(self, predicate: StringFilterPredicate, expr: ComparisonExpression) -> bool:
        value = self._string_value(expr)
        if value is None:
            return True
        try:
            return predicate.apply(expr.op, normalize_object_path(value))
        except UnprocessableContentError as e:
            raise UnprocessableContentError(f"{expr.column}: {e.message}") from e

    def _eval_last_modified(self, expr: ComparisonExpression) -> bool:
        if expr.op != OP_GT:
            raise UnprocessableContentError(f"unsupported operator `{expr.op}` for last_modified")
        value = self._comparison_value(expr)
        if value is None:
            return True
        marker = format_start_after(value)
        if self.start_after and self.start_after != marker:
            return False
        self.start_after = marker
        return True

    # --- Value decoding ---

    def _comparison_value(self, expr: ComparisonExpression) -> Any:
        if expr.value_kind == "scalar":
            return expr.value
        if expr.value_kind == "variable":
            if expr.value not in self.variables:
                raise UnprocessableContentError(f"{expr.column}: variable {expr.value} does not exist")
            return self.variables[expr.value]
        raise UnprocessableContentError(f"{expr.column}: unsupported comparison value type {expr.value_kind}")

    def _string_value(self, expr: ComparisonExpression) -> str | None:
        value = self._comparison_value(expr)
        if value is None or isinstance(value, str):
            return value
        raise UnprocessableContentError(
            f"{expr.column}: expected a string value, got {type(value).__name__}"
        )

    def _bool_value(self, expr: ComparisonExpression) -> bool:
        value = self._comparison_value(expr)
        if value is None:
            return False
        if isinstance(value, bool):
            return value
        raise UnprocessableContentError(
            f"{expr.column}: expected a boolean value, got {type(value).__name__}"
        )
