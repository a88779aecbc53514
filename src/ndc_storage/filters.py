"""Predicate expression tree and decoding of wire expressions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ndc_storage.errors import UnprocessableContentError

OP_EQ = "_eq"
OP_STARTS_WITH = "_starts_with"
OP_CONTAINS = "_contains"
OP_ICONTAINS = "_icontains"
OP_GT = "_gt"
OP_IS_NULL = "_is_null"

STRING_OPERATORS = (OP_EQ, OP_STARTS_WITH, OP_CONTAINS, OP_ICONTAINS)


class FilterExpression:
    """Base class for filter expressions."""

    def __and__(self, other: FilterExpression) -> LogicalExpression:
        return LogicalExpression(op="AND", children=[self, other])

    def __or__(self, other: FilterExpression) -> LogicalExpression:
        return LogicalExpression(op="OR", children=[self, other])

    def __invert__(self) -> LogicalExpression:
        return LogicalExpression(op="NOT", children=[self])


@dataclass
class ComparisonExpression(FilterExpression):
    """A binary comparison between a column and a value.

    ``value_kind`` tells how ``value`` is read:
      - "scalar": ``value`` is the literal
      - "variable": ``value`` names a variable of the current binding
      - "column": ``value`` is another column, which is never supported
    ``target_type`` and ``path`` describe the left-hand side; only a plain
    column of the queried collection is accepted by the evaluator.
    """

    column: str
    op: str
    value: Any = None
    value_kind: str = "scalar"
    target_type: str = "column"
    path: list[Any] = field(default_factory=list)


@dataclass
class LogicalExpression(FilterExpression):
    """A logical combination of filter expressions."""

    op: str  # "AND", "OR", "NOT"
    children: list[FilterExpression] = field(default_factory=list)


@dataclass
class ExistsExpression(FilterExpression):
    """Relationship or nested-collection predicate, kept only to be rejected."""

    raw: dict[str, Any]


class ColumnProxy:
    """Proxy that generates comparisons from Python operators.

    Usage: column("name").starts_with("movies/") & column("name").icontains("x")
    """

    def __init__(self, name: str) -> None:
        self._name = name

    def __eq__(self, other: object) -> ComparisonExpression:  # type: ignore[override]
        return ComparisonExpression(self._name, OP_EQ, other)

    def __gt__(self, other: Any) -> ComparisonExpression:
        return ComparisonExpression(self._name, OP_GT, other)

    def starts_with(self, prefix: str) -> ComparisonExpression:
        return ComparisonExpression(self._name, OP_STARTS_WITH, prefix)

    def contains(self, substring: str) -> ComparisonExpression:
        return ComparisonExpression(self._name, OP_CONTAINS, substring)

    def icontains(self, substring: str) -> ComparisonExpression:
        return ComparisonExpression(self._name, OP_ICONTAINS, substring)

    def is_null(self, value: bool = True) -> ComparisonExpression:
        return ComparisonExpression(self._name, OP_IS_NULL, value)

    def variable(self, op: str, name: str) -> ComparisonExpression:
        return ComparisonExpression(self._name, op, name, value_kind="variable")


def column(name: str) -> ColumnProxy:
    return ColumnProxy(name)


def _parse_target(data: Any) -> tuple[str, str, list[Any]]:
    if not isinstance(data, dict):
        raise UnprocessableContentError("invalid comparison target", {"target": data})
    target_type = str(data.get("type", "column"))
    name = data.get("name")
    if not isinstance(name, str):
        raise UnprocessableContentError("comparison target requires a column name", {"target": data})
    path = list(data.get("path") or []) + list(data.get("field_path") or [])
    return name, target_type, path


def _parse_value(data: Any) -> tuple[Any, str]:
    if not isinstance(data, dict):
        raise UnprocessableContentError("invalid comparison value", {"value": data})
    kind = data.get("type")
    if kind == "scalar":
        return data.get("value"), "scalar"
    if kind == "variable":
        return data.get("name"), "variable"
    if kind == "column":
        return data.get("column"), "column"
    raise UnprocessableContentError(f"unsupported comparison value type: {kind}")


def parse_expression(data: dict[str, Any] | None) -> FilterExpression | None:
    """Decode a wire expression into the expression tree.

    Every wire shape is decoded, including the ones the evaluator later
    rejects (``or``, ``not``, ``exists``), so that rejection happens in one place.
    """
    if data is None:
        return None
    if not isinstance(data, dict):
        raise UnprocessableContentError("invalid predicate expression", {"expression": data})

    kind = data.get("type")
    if kind == "and":
        return LogicalExpression("AND", [_require(parse_expression(e)) for e in data.get("expressions") or []])
    if kind == "or":
        return LogicalExpression("OR", [_require(parse_expression(e)) for e in data.get("expressions") or []])
    if kind == "not":
        return LogicalExpression("NOT", [_require(parse_expression(data.get("expression")))])
    if kind == "binary_comparison_operator":
        name, target_type, path = _parse_target(data.get("column"))
        value, value_kind = _parse_value(data.get("value"))
        return ComparisonExpression(
            column=name,
            op=str(data.get("operator")),
            value=value,
            value_kind=value_kind,
            target_type=target_type,
            path=path,
        )
    if kind == "unary_comparison_operator":
        name, target_type, path = _parse_target(data.get("column"))
        if data.get("operator") != "is_null":
            raise UnprocessableContentError(f"unsupported unary operator: {data.get('operator')}")
        return ComparisonExpression(name, OP_IS_NULL, True, target_type=target_type, path=path)
    if kind == "exists":
        return ExistsExpression(raw=data)
    raise UnprocessableContentError(f"unsupported expression type: {kind}")


def _require(expr: FilterExpression | None) -> FilterExpression:
    if expr is None:
        raise UnprocessableContentError("empty predicate expression")
    return expr
