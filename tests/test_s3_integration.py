"""S3 backend integration tests (MinIO-compatible)."""

from __future__ import annotations

import base64
import os
import uuid

import boto3
import httpx
import pytest

from ndc_storage.config import parse_configuration
from ndc_storage.connector import Connector

pytestmark = pytest.mark.s3


@pytest.fixture
def s3_backend() -> dict[str, str]:
    if os.getenv("NDC_STORAGE_S3_TEST") != "1":
        pytest.skip("S3 integration tests disabled (set NDC_STORAGE_S3_TEST=1)")

    endpoint = os.getenv("NDC_STORAGE_S3_ENDPOINT", "http://127.0.0.1:9000")
    region = os.getenv("NDC_STORAGE_S3_REGION", "us-east-1")
    bucket = f"ndc-it-{uuid.uuid4().hex[:12]}"

    s3 = boto3.client("s3", endpoint_url=endpoint, region_name=region)
    s3.create_bucket(Bucket=bucket)
    backend = {"endpoint": endpoint, "region": region, "bucket": bucket}
    yield backend

    for page in s3.get_paginator("list_objects_v2").paginate(Bucket=bucket):
        keys = [{"Key": item["Key"]} for item in page.get("Contents", [])]
        if keys:
            s3.delete_objects(Bucket=bucket, Delete={"Objects": keys})
    s3.delete_bucket(Bucket=bucket)


@pytest.fixture
def live_connector(s3_backend):
    config = parse_configuration(
        {
            "clients": [
                {
                    "id": "minio",
                    "type": "s3",
                    "endpoint": s3_backend["endpoint"],
                    "region": s3_backend["region"],
                    "defaultBucket": s3_backend["bucket"],
                    "authentication": {
                        "type": "static",
                        "accessKeyId": {"env": "AWS_ACCESS_KEY_ID"},
                        "secretAccessKey": {"env": "AWS_SECRET_ACCESS_KEY"},
                    },
                }
            ],
            "runtime": {"maxDownloadSizeMBs": 1, "maxUploadSizeMBs": 1},
        }
    )
    connector = Connector.from_configuration(config)
    yield connector
    connector.close()


def _mutate(connector: Connector, name: str, **arguments):
    request = {"operations": [{"type": "procedure", "name": name, "arguments": arguments}]}
    return connector.mutation(request)["operation_results"][0]["result"]


def _function(connector: Connector, name: str, **arguments):
    request = {
        "collection": name,
        "arguments": {k: {"type": "literal", "value": v} for k, v in arguments.items()},
        "query": {"fields": {"__value": {"type": "column", "column": "__value"}}},
    }
    return connector.query(request)[0]["rows"][0]["__value"]


def test_upload_list_download_remove(live_connector):
    for key in ("logs/app-ERROR.log", "logs/app.log", "movies/a.mp4"):
        _mutate(live_connector, "uploadStorageObjectAsText", object=key, data=key)

    request = {
        "collection": "storage_objects",
        "arguments": {},
        "query": {
            "fields": {"name": {"type": "column", "column": "name"}},
            "predicate": {
                "type": "and",
                "expressions": [
                    {
                        "type": "binary_comparison_operator",
                        "column": {"type": "column", "name": "name"},
                        "operator": "_starts_with",
                        "value": {"type": "scalar", "value": "logs/"},
                    },
                    {
                        "type": "binary_comparison_operator",
                        "column": {"type": "column", "name": "name"},
                        "operator": "_icontains",
                        "value": {"type": "scalar", "value": "error"},
                    },
                ],
            },
        },
    }
    [row_set] = live_connector.query(request)
    assert row_set["rows"] == [{"name": "logs/app-ERROR.log"}]

    downloaded = _function(live_connector, "downloadStorageObjectAsBase64", object="movies/a.mp4")
    assert base64.b64decode(downloaded["data"]) == b"movies/a.mp4"

    assert _mutate(live_connector, "removeStorageObjects", prefix="logs/", recursive=True) == []
    page = _function(live_connector, "storageObjectConnections", recursive=True)
    assert [edge["node"]["name"] for edge in page["edges"]] == ["movies/a.mp4"]


def test_compose_and_presigned_download(live_connector):
    _mutate(live_connector, "uploadStorageObjectAsText", object="part-1", data="hello ")
    _mutate(live_connector, "uploadStorageObjectAsText", object="part-2", data="world")
    _mutate(
        live_connector,
        "copyStorageObject",
        dest={"object": "copy"},
        source={"object": "part-1"},
    )
    assert _function(live_connector, "downloadStorageObjectAsText", object="copy") == {"data": "hello "}

    url = _function(live_connector, "storagePresignedDownloadUrl", object="part-2", expiry="5m")["url"]
    assert httpx.get(url).content == b"world"
