"""Connector capabilities and schema, derived from the data model and dispatch tables."""

from __future__ import annotations

import dataclasses
import types
import typing
from datetime import date, datetime, timedelta
from typing import Any, Literal, Union

from pydantic import BaseModel

from ndc_storage import types as model
from ndc_storage.filters import OP_CONTAINS, OP_EQ, OP_GT, OP_ICONTAINS, OP_STARTS_WITH
from ndc_storage.functions import FUNCTIONS
from ndc_storage.procedures import PROCEDURES
from ndc_storage.query import ARGUMENT_AFTER, ARGUMENT_RECURSIVE, COLLECTION_BUCKETS, COLLECTION_OBJECTS

NDC_VERSION = "0.1.6"

SCALAR_CLIENT_ID = "StorageClientID"
SCALAR_BUCKET_NAME = "BucketName"
SCALAR_OBJECT_PATH = "ObjectPath"
SCALAR_FILTER_TIMESTAMP = "FilterTimestamp"


def named(name: str) -> dict[str, Any]:
    return {"type": "named", "name": name}


def nullable(underlying: dict[str, Any]) -> dict[str, Any]:
    if underlying.get("type") == "nullable":
        return underlying
    return {"type": "nullable", "underlying_type": underlying}


def array(element: dict[str, Any]) -> dict[str, Any]:
    return {"type": "array", "element_type": element}


def capabilities() -> dict[str, Any]:
    return {
        "version": NDC_VERSION,
        "capabilities": {
            "query": {"variables": {}, "nested_fields": {}},
            "mutation": {},
        },
    }


# --- Scalars ---


def _string_filter_scalar(name: str) -> dict[str, Any]:
    custom = {"type": "custom", "argument_type": named(name)}
    return {
        "aggregate_functions": {},
        "comparison_operators": {
            OP_EQ: {"type": "equal"},
            OP_STARTS_WITH: custom,
            OP_CONTAINS: custom,
            OP_ICONTAINS: custom,
        },
        "representation": {"type": "string"},
    }


def _plain_scalar(representation: str) -> dict[str, Any]:
    return {
        "aggregate_functions": {},
        "comparison_operators": {},
        "representation": {"type": representation},
    }


def scalar_types(client_ids: list[str]) -> dict[str, Any]:
    return {
        SCALAR_CLIENT_ID: {
            "aggregate_functions": {},
            "comparison_operators": {OP_EQ: {"type": "equal"}},
            "representation": {"type": "enum", "one_of": list(client_ids)},
        },
        SCALAR_BUCKET_NAME: _string_filter_scalar(SCALAR_BUCKET_NAME),
        SCALAR_OBJECT_PATH: _string_filter_scalar(SCALAR_OBJECT_PATH),
        SCALAR_FILTER_TIMESTAMP: {
            "aggregate_functions": {},
            "comparison_operators": {OP_GT: {"type": "custom", "argument_type": named("TimestampTZ")}},
            "representation": {"type": "timestamptz"},
        },
        "String": _plain_scalar("string"),
        "Boolean": _plain_scalar("boolean"),
        "Int32": _plain_scalar("int32"),
        "Int64": _plain_scalar("int64"),
        "Float64": _plain_scalar("float64"),
        "Date": _plain_scalar("date"),
        "TimestampTZ": _plain_scalar("timestamptz"),
        "JSON": _plain_scalar("json"),
    }


# --- Object types ---

# Columns whose declared type is a filterable scalar rather than a plain one.
_COLUMN_OVERRIDES: dict[str, dict[str, dict[str, Any]]] = {
    "StorageObject": {
        "client_id": named(SCALAR_CLIENT_ID),
        "bucket": named(SCALAR_BUCKET_NAME),
        "name": named(SCALAR_OBJECT_PATH),
        "last_modified": nullable(named(SCALAR_FILTER_TIMESTAMP)),
    },
    "StorageBucket": {
        "client_id": named(SCALAR_CLIENT_ID),
        "name": named(SCALAR_BUCKET_NAME),
    },
}

_SCALAR_NAMES: dict[Any, str] = {
    str: "String",
    bool: "Boolean",
    int: "Int64",
    float: "Float64",
    datetime: "TimestampTZ",
    date: "Date",
    timedelta: "Float64",
}


class _TypeRegistry:
    """Collects object types while converting Python annotations to schema types."""

    def __init__(self) -> None:
        self.object_types: dict[str, Any] = {}

    def type_of(self, annotation: Any) -> dict[str, Any]:
        origin = typing.get_origin(annotation)
        if origin in (Union, types.UnionType):
            members = [a for a in typing.get_args(annotation) if a is not type(None)]
            inner = self.type_of(members[0]) if len(members) == 1 else named("JSON")
            if len(members) < len(typing.get_args(annotation)):
                return nullable(inner)
            return inner
        if origin is Literal:
            return named("String")
        if origin in (list, tuple):
            args = typing.get_args(annotation)
            return array(self.type_of(args[0]) if args else named("JSON"))
        if origin is dict or annotation is dict or annotation is Any:
            return named("JSON")
        if annotation in _SCALAR_NAMES:
            return named(_SCALAR_NAMES[annotation])
        if isinstance(annotation, type) and dataclasses.is_dataclass(annotation):
            return named(self.register_dataclass(annotation))
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            return named(self.register_model(annotation))
        raise TypeError(f"no schema type for annotation {annotation!r}")

    def register_dataclass(self, cls: type) -> str:
        name = cls.__name__
        if name in self.object_types:
            return name
        self.object_types[name] = {}
        hints = typing.get_type_hints(cls)
        overrides = _COLUMN_OVERRIDES.get(name, {})
        fields = {}
        for f in dataclasses.fields(cls):
            fields[f.name] = {"type": overrides.get(f.name) or self.type_of(hints[f.name])}
        self.object_types[name] = _object_type(name, cls.__doc__, fields)
        return name

    def register_model(self, cls: type[BaseModel]) -> str:
        name = cls.__name__
        if name in self.object_types:
            return name
        self.object_types[name] = {}
        self.object_types[name] = _object_type(name, cls.__doc__, self.arguments_of(cls))
        return name

    def arguments_of(self, cls: type[BaseModel]) -> dict[str, Any]:
        arguments = {}
        for field_name, info in cls.model_fields.items():
            if field_name == "client_id":
                kind = named(SCALAR_CLIENT_ID)
            else:
                kind = self.type_of(info.annotation)
            if not info.is_required():
                kind = nullable(kind)
            arguments[field_name] = {"type": kind}
        return arguments

    def add(self, name: str, fields: dict[str, Any], description: str | None = None) -> dict[str, Any]:
        self.object_types[name] = _object_type(name, description, {k: {"type": v} for k, v in fields.items()})
        return named(name)


def _object_type(name: str, description: str | None, fields: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {"fields": fields}
    # dataclasses without a docstring get a generated signature as __doc__
    if description and not description.startswith(f"{name}("):
        out["description"] = description.strip().splitlines()[0]
    return out


def _connection_type(registry: _TypeRegistry, prefix: str, node: dict[str, Any]) -> dict[str, Any]:
    edge = registry.add(f"{prefix}Edge", {"node": node, "cursor": named("String")})
    return registry.add(
        f"{prefix}Connection",
        {"edges": array(edge), "page_info": named(registry.register_dataclass(model.PageInfo))},
    )


def _result_types(registry: _TypeRegistry) -> tuple[dict[str, Any], dict[str, Any]]:
    obj = named(registry.register_dataclass(model.StorageObject))
    bucket = named(registry.register_dataclass(model.StorageBucket))
    upload = named(registry.register_dataclass(model.UploadInfo))
    presigned = nullable(named(registry.register_dataclass(model.PresignedURL)))
    success = registry.add("SuccessResponse", {"success": named("Boolean")})
    exists = registry.add("ExistsResponse", {"exists": named("Boolean")})
    download = registry.add("DownloadStorageObjectResponse", {"data": nullable(named("String"))})
    object_connection = _connection_type(registry, "StorageObject", obj)
    bucket_connection = _connection_type(registry, "StorageBucket", bucket)

    functions = {
        "storageBucketConnections": bucket_connection,
        "storageBucket": nullable(bucket),
        "storageBucketExists": exists,
        "storageObjectConnections": object_connection,
        "storageDeletedObjects": object_connection,
        "storageObject": nullable(obj),
        "downloadStorageObjectAsBase64": download,
        "downloadStorageObjectAsText": download,
        "storagePresignedDownloadUrl": presigned,
        "storagePresignedUploadUrl": presigned,
        "storageIncompleteUploads": array(named(registry.register_dataclass(model.IncompleteUpload))),
    }
    procedures = {
        "createStorageBucket": success,
        "updateStorageBucket": success,
        "removeStorageBucket": success,
        "uploadStorageObjectAsBase64": upload,
        "uploadStorageObjectAsText": upload,
        "uploadStorageObjectFromUrl": upload,
        "copyStorageObject": upload,
        "composeStorageObject": upload,
        "updateStorageObject": success,
        "removeStorageObject": success,
        "removeStorageObjects": array(named(registry.register_dataclass(model.RemoveObjectError))),
        "removeIncompleteStorageUpload": success,
        "restoreStorageObject": success,
    }
    return functions, procedures


def _credential_arguments() -> dict[str, Any]:
    return {
        name: {"type": nullable(named("String"))}
        for name in ("client_type", "endpoint", "access_key_id", "secret_access_key")
    }


def build_schema(client_ids: list[str]) -> dict[str, Any]:
    """Assemble the schema response; the client id enum lists ``client_ids``."""
    registry = _TypeRegistry()
    function_results, procedure_results = _result_types(registry)

    collections = [
        {
            "name": COLLECTION_OBJECTS,
            "description": "Objects stored in the configured buckets",
            "type": "StorageObject",
            "arguments": {
                ARGUMENT_RECURSIVE: {"type": nullable(named("Boolean"))},
                ARGUMENT_AFTER: {"type": nullable(named("String"))},
                **_credential_arguments(),
            },
            "uniqueness_constraints": {},
            "foreign_keys": {},
        },
        {
            "name": COLLECTION_BUCKETS,
            "description": "Buckets of the configured storage clients",
            "type": "StorageBucket",
            "arguments": {
                ARGUMENT_AFTER: {"type": nullable(named("String"))},
                **_credential_arguments(),
            },
            "uniqueness_constraints": {},
            "foreign_keys": {},
        },
    ]

    functions = [
        {
            "name": name,
            "arguments": registry.arguments_of(handler.arguments),
            "result_type": function_results[name],
        }
        for name, handler in FUNCTIONS.items()
    ]
    procedures = [
        {
            "name": name,
            "arguments": registry.arguments_of(handler.arguments),
            "result_type": procedure_results[name],
        }
        for name, handler in PROCEDURES.items()
    ]

    return {
        "scalar_types": scalar_types(client_ids),
        "object_types": registry.object_types,
        "collections": collections,
        "functions": functions,
        "procedures": procedures,
    }
