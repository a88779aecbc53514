"""Tests for query and mutation dispatch and the schema response."""

from __future__ import annotations

import pytest

from ndc_storage.concurrency import CancellationToken
from ndc_storage.errors import HandlerNotFoundError, RequestCancelledError, UnprocessableContentError
from ndc_storage.functions import FUNCTIONS
from ndc_storage.procedures import PROCEDURES
from ndc_storage.schema import NDC_VERSION

NAME_FIELDS = {"name": {"type": "column", "column": "name"}}


def literal(value):
    return {"type": "literal", "value": value}


def value_field(fields: dict | None = None) -> dict:
    selection = {"type": "column", "column": "__value"}
    if fields is not None:
        selection["fields"] = {"type": "object", "fields": fields}
    return selection


class TestQuery:
    def test_row_sets_follow_variable_order(self, connector):
        request = {
            "collection": "storage_objects",
            "arguments": {},
            "query": {
                "fields": NAME_FIELDS,
                "predicate": {
                    "type": "binary_comparison_operator",
                    "column": {"type": "column", "name": "name"},
                    "operator": "_starts_with",
                    "value": {"type": "variable", "name": "prefix"},
                },
            },
            "variables": [{"prefix": "movies/2010s/"}, {"prefix": "readme"}, {"prefix": "nothing/"}],
        }
        result = connector.query(request)
        assert [[row["name"] for row in rs["rows"]] for rs in result] == [
            ["movies/2010s/inception.mp4"],
            ["readme.txt"],
            [],
        ]

    def test_single_row_set_without_variables(self, connector):
        request = {"collection": "storage_buckets", "arguments": {}, "query": {"fields": NAME_FIELDS}}
        assert connector.query(request) == [{"aggregates": {}, "rows": [{"name": "a"}, {"name": "b"}]}]

    def test_function_returns_value_row(self, connector):
        request = {
            "collection": "storageObject",
            "arguments": {"object": literal("readme.txt")},
            "query": {
                "fields": {
                    "__value": value_field(
                        {"name": {"type": "column", "column": "name"}, "size": {"type": "column", "column": "size"}}
                    )
                }
            },
        }
        assert connector.query(request) == [
            {"aggregates": {}, "rows": [{"__value": {"name": "readme.txt", "size": 11}}]}
        ]

    def test_function_arguments_from_variables(self, connector):
        request = {
            "collection": "downloadStorageObjectAsText",
            "arguments": {"object": {"type": "variable", "name": "key"}},
            "query": {"fields": {"__value": value_field()}},
            "variables": [{"key": "readme.txt"}, {"key": "missing.txt"}],
        }
        result = connector.query(request)
        assert [rs["rows"][0]["__value"] for rs in result] == [{"data": "hello world"}, {"data": None}]

    def test_function_connection_selection(self, connector):
        edges = {
            "type": "column",
            "column": "edges",
            "fields": {
                "type": "array",
                "fields": {
                    "type": "object",
                    "fields": {
                        "node": {
                            "type": "column",
                            "column": "node",
                            "fields": {"type": "object", "fields": NAME_FIELDS},
                        }
                    },
                },
            },
        }
        page_info = {
            "type": "column",
            "column": "page_info",
            "fields": {"type": "object", "fields": {"has_next_page": {"type": "column", "column": "has_next_page"}}},
        }
        request = {
            "collection": "storageObjectConnections",
            "arguments": {"prefix": literal("movies/"), "first": literal(1)},
            "query": {"fields": {"__value": value_field({"edges": edges, "page_info": page_info})}},
        }
        [row_set] = connector.query(request)
        assert row_set["rows"] == [
            {
                "__value": {
                    "edges": [{"node": {"name": "movies/2000s/memento.mp4"}}],
                    "page_info": {"has_next_page": True},
                }
            }
        ]

    def test_function_requires_value_field(self, connector):
        request = {
            "collection": "storageBucketExists",
            "arguments": {"bucket": literal("a")},
            "query": {"fields": {"exists": {"type": "column", "column": "exists"}}},
        }
        with pytest.raises(UnprocessableContentError, match="__value field must exist"):
            connector.query(request)

    def test_unknown_collection(self, connector):
        with pytest.raises(HandlerNotFoundError, match="collection not found: files"):
            connector.query({"collection": "files", "query": {}})

    def test_cancelled_request(self, connector):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(RequestCancelledError):
            connector.query({"collection": "storage_buckets", "query": {}}, token)


class TestMutation:
    def test_operation_results_in_order(self, connector, fake_storage):
        request = {
            "operations": [
                {
                    "type": "procedure",
                    "name": "uploadStorageObjectAsText",
                    "arguments": {"object": "notes/a.txt", "data": "hi"},
                    "fields": {
                        "type": "object",
                        "fields": {"name": {"type": "column", "column": "name"}, "size": {"type": "column", "column": "size"}},
                    },
                },
                {"type": "procedure", "name": "removeStorageObject", "arguments": {"object": "readme.txt"}},
            ]
        }
        assert connector.mutation(request) == {
            "operation_results": [
                {"type": "procedure", "result": {"name": "notes/a.txt", "size": 2}},
                {"type": "procedure", "result": {"success": True}},
            ]
        }
        assert "readme.txt" not in fake_storage.buckets["a"]

    def test_list_result_is_serialized(self, connector):
        request = {
            "operations": [
                {"type": "procedure", "name": "removeStorageObjects", "arguments": {"prefix": "logs/"}}
            ]
        }
        assert connector.mutation(request)["operation_results"][0]["result"] == []

    def test_invalid_operation_type(self, connector):
        with pytest.raises(UnprocessableContentError, match="invalid operation type: query"):
            connector.mutation({"operations": [{"type": "query", "name": "x"}]})

    def test_unknown_procedure(self, connector):
        with pytest.raises(HandlerNotFoundError):
            connector.mutation({"operations": [{"type": "procedure", "name": "nope", "arguments": {}}]})


class TestSchema:
    def test_capabilities(self, connector):
        caps = connector.capabilities()
        assert caps["version"] == NDC_VERSION
        assert "variables" in caps["capabilities"]["query"]
        assert "nested_fields" in caps["capabilities"]["query"]

    def test_collections_functions_and_procedures(self, connector):
        schema = connector.schema()
        assert [c["name"] for c in schema["collections"]] == ["storage_objects", "storage_buckets"]
        assert {f["name"] for f in schema["functions"]} == set(FUNCTIONS)
        assert {p["name"] for p in schema["procedures"]} == set(PROCEDURES)

    def test_client_id_enum_lists_clients(self, connector):
        scalar = connector.schema()["scalar_types"]["StorageClientID"]
        assert scalar["representation"] == {"type": "enum", "one_of": ["c1"]}

    def test_filterable_columns(self, connector):
        schema = connector.schema()
        fields = schema["object_types"]["StorageObject"]["fields"]
        assert fields["name"]["type"] == {"type": "named", "name": "ObjectPath"}
        assert fields["bucket"]["type"] == {"type": "named", "name": "BucketName"}
        assert fields["size"]["type"] == {"type": "nullable", "underlying_type": {"type": "named", "name": "Int64"}}
        operators = schema["scalar_types"]["ObjectPath"]["comparison_operators"]
        assert set(operators) == {"_eq", "_starts_with", "_contains", "_icontains"}
        assert set(schema["scalar_types"]["FilterTimestamp"]["comparison_operators"]) == {"_gt"}

    def test_argument_types(self, connector):
        functions = {f["name"]: f for f in connector.schema()["functions"]}
        args = functions["storageObject"]["arguments"]
        assert args["object"]["type"] == {"type": "named", "name": "String"}
        assert args["client_id"]["type"] == {
            "type": "nullable",
            "underlying_type": {"type": "named", "name": "StorageClientID"},
        }
        assert functions["storageIncompleteUploads"]["result_type"]["type"] == "array"

    def test_connection_types(self, connector):
        object_types = connector.schema()["object_types"]
        assert set(object_types["StorageObjectConnection"]["fields"]) == {"edges", "page_info"}
        assert set(object_types["StorageObjectEdge"]["fields"]) == {"node", "cursor"}

    def test_schema_is_cached(self, connector):
        assert connector.schema() is connector.schema()
