"""Request dispatcher: fans queries and mutations out over bounded task groups."""

from __future__ import annotations

from functools import partial
from typing import Any

from loguru import logger

from ndc_storage.arguments import HandlerContext
from ndc_storage.concurrency import CancellationToken, cancellation_scope, run_bounded
from ndc_storage.config import Configuration
from ndc_storage.errors import HandlerNotFoundError, UnprocessableContentError
from ndc_storage.functions import FUNCTIONS, execute_function
from ndc_storage.manager import StorageManager
from ndc_storage.procedures import execute_procedure
from ndc_storage.query import (
    COLLECTION_BUCKETS,
    COLLECTION_OBJECTS,
    BucketQueryExecutor,
    ObjectQueryExecutor,
    project_nested,
    resolve_arguments,
    to_json_value,
)
from ndc_storage.schema import build_schema, capabilities

VALUE_FIELD = "__value"


class Connector:
    """Serves capabilities, schema, query and mutation requests for one configuration."""

    def __init__(self, manager: StorageManager, configuration: Configuration) -> None:
        self.manager = manager
        self.configuration = configuration
        self._schema: dict[str, Any] | None = None

    @classmethod
    def from_configuration(cls, configuration: Configuration) -> Connector:
        return cls(StorageManager.from_configuration(configuration), configuration)

    def close(self) -> None:
        self.manager.close()

    def capabilities(self) -> dict[str, Any]:
        return capabilities()

    def schema(self) -> dict[str, Any]:
        if self._schema is None:
            self._schema = build_schema(self.manager.client_ids)
        return self._schema

    # --- Query ---

    def query(self, request: dict[str, Any], token: CancellationToken | None = None) -> list[dict[str, Any]]:
        """Run a query once per variable binding; row sets follow binding order."""
        bindings = request.get("variables") or [{}]
        limit = self.configuration.concurrency.query
        logger.debug(f"query {request.get('collection')}: {len(bindings)} binding(s), limit {limit}")
        tasks = [partial(self._query_binding, request, variables or {}) for variables in bindings]
        with cancellation_scope(token or CancellationToken()):
            return run_bounded(tasks, limit)

    def _query_binding(self, request: dict[str, Any], variables: dict[str, Any]) -> dict[str, Any]:
        collection = request.get("collection")
        query = request.get("query") or {}
        arguments = resolve_arguments(request.get("arguments"), variables)
        concurrency = self.configuration.concurrency.query

        if collection == COLLECTION_OBJECTS:
            return ObjectQueryExecutor(self.manager, query, arguments, variables, concurrency).execute()
        if collection == COLLECTION_BUCKETS:
            return BucketQueryExecutor(self.manager, query, arguments, variables, concurrency).execute()
        if collection in FUNCTIONS:
            return self._query_function(collection, query, arguments, variables)
        raise HandlerNotFoundError("collection", str(collection))

    def _query_function(
        self,
        name: str,
        query: dict[str, Any],
        arguments: dict[str, Any],
        variables: dict[str, Any],
    ) -> dict[str, Any]:
        fields = query.get("fields") or {}
        value_fields = {
            alias: f for alias, f in fields.items() if (f or {}).get("column", alias) == VALUE_FIELD
        }
        if not value_fields:
            raise UnprocessableContentError(f"{VALUE_FIELD} field must exist in the query of function {name}")

        # Aliases of __value share one call; hydration follows the first selection.
        selection = next(iter(value_fields.values())).get("fields")
        ctx = HandlerContext(
            manager=self.manager,
            variables=variables,
            selection=selection,
            concurrency=self.configuration.concurrency.query,
        )
        result = to_json_value(execute_function(name, ctx, arguments))
        row = {alias: project_nested(result, f.get("fields")) for alias, f in value_fields.items()}
        return {"aggregates": {}, "rows": [row]}

    # --- Mutation ---

    def mutation(self, request: dict[str, Any], token: CancellationToken | None = None) -> dict[str, Any]:
        """Run mutation operations; there is no transaction across operations."""
        operations = request.get("operations") or []
        limit = self.configuration.concurrency.mutation
        logger.debug(f"mutation: {len(operations)} operation(s), limit {limit}")
        tasks = [partial(self._mutate, operation) for operation in operations]
        with cancellation_scope(token or CancellationToken()):
            results = run_bounded(tasks, limit)
        return {"operation_results": results}

    def _mutate(self, operation: dict[str, Any]) -> dict[str, Any]:
        kind = operation.get("type")
        if kind != "procedure":
            raise UnprocessableContentError(f"invalid operation type: {kind}")

        fields = operation.get("fields")
        ctx = HandlerContext(
            manager=self.manager,
            selection=fields,
            concurrency=self.configuration.concurrency.query,
        )
        result = execute_procedure(operation.get("name", ""), ctx, operation.get("arguments") or {})
        return {"type": "procedure", "result": project_nested(to_json_value(result), fields)}
