"""Tests for the read-only functions."""

from __future__ import annotations

import pytest

from ndc_storage.arguments import HandlerContext
from ndc_storage.errors import HandlerNotFoundError, UnprocessableContentError
from ndc_storage.functions import FUNCTIONS, execute_function


@pytest.fixture
def ctx(manager):
    return HandlerContext(manager=manager)


def call(ctx, function: str, /, **arguments):
    return execute_function(function, ctx, arguments)


def where(column: str, operator: str, value: str) -> dict:
    return {
        "type": "binary_comparison_operator",
        "column": {"type": "column", "name": column},
        "operator": operator,
        "value": {"type": "scalar", "value": value},
    }


class TestObjectConnections:
    def test_first_page_reports_next_page(self, ctx):
        result = call(ctx, "storageObjectConnections", prefix="movies/", first=1)
        assert [e["node"].name for e in result["edges"]] == ["movies/2000s/memento.mp4"]
        assert result["edges"][0]["cursor"] == "movies/2000s/memento.mp4"
        assert result["page_info"].has_next_page

    def test_after_continues_from_cursor(self, ctx):
        result = call(ctx, "storageObjectConnections", prefix="movies/", after="movies/2000s/memento.mp4")
        assert [e["node"].name for e in result["edges"]] == ["movies/2010s/inception.mp4"]
        assert not result["page_info"].has_next_page

    def test_hierarchy_lists_non_recursively(self, ctx, fake_storage):
        call(ctx, "storageObjectConnections", hierarchy=True)
        call(ctx, "storageObjectConnections", hierarchy=True, recursive=True)
        first, second = fake_storage.calls_to("list_objects")
        assert not first[2].recursive
        assert second[2].recursive

    def test_where_combines_with_prefix(self, ctx):
        result = call(ctx, "storageObjectConnections", prefix="logs/", where=where("name", "_contains", "report"))
        assert [e["node"].name for e in result["edges"]] == ["logs/2024/error-report.txt"]

    def test_disjoint_where_returns_empty_connection(self, ctx, fake_storage):
        result = call(ctx, "storageObjectConnections", prefix="logs/", where=where("name", "_starts_with", "movies/"))
        assert result["edges"] == []
        assert fake_storage.calls == []

    def test_first_must_be_positive(self, ctx):
        with pytest.raises(UnprocessableContentError, match="must be larger than 0"):
            call(ctx, "storageObjectConnections", first=0)

    def test_deleted_objects_request_versions(self, ctx, fake_storage):
        result = call(ctx, "storageDeletedObjects")
        assert result["edges"] == []
        assert fake_storage.calls_to("list_objects")[0][2].with_versions


class TestBuckets:
    def test_bucket_connections(self, ctx):
        result = call(ctx, "storageBucketConnections", prefix="b")
        assert [e["node"].name for e in result["edges"]] == ["b"]
        assert result["edges"][0]["node"].client_id == "c1"

    def test_bucket_connections_first(self, ctx):
        with pytest.raises(UnprocessableContentError):
            call(ctx, "storageBucketConnections", first=-1)

    def test_get_bucket(self, ctx):
        bucket = call(ctx, "storageBucket", bucket="a")
        assert bucket.name == "a"
        assert bucket.client_id == "c1"

    def test_get_bucket_excluded_by_where(self, ctx, fake_storage):
        assert call(ctx, "storageBucket", bucket="a", where=where("bucket", "_eq", "b")) is None
        assert fake_storage.calls == []

    def test_get_bucket_from_where(self, ctx):
        assert call(ctx, "storageBucket", where=where("bucket", "_eq", "b")).name == "b"

    def test_bucket_exists(self, ctx):
        assert call(ctx, "storageBucketExists", bucket="a") == {"exists": True}
        assert call(ctx, "storageBucketExists", bucket="zzz") == {"exists": False}


class TestObjects:
    def test_stat_object(self, ctx):
        obj = call(ctx, "storageObject", object="readme.txt")
        assert obj.size == 11
        assert obj.bucket == "a"
        assert obj.client_id == "c1"

    def test_stat_missing_object(self, ctx):
        assert call(ctx, "storageObject", object="missing.txt") is None

    def test_stat_object_excluded_by_where(self, ctx, fake_storage):
        assert call(ctx, "storageObject", object="readme.txt", where=where("name", "_starts_with", "logs/")) is None
        assert fake_storage.calls == []

    def test_download_as_base64(self, ctx):
        assert call(ctx, "downloadStorageObjectAsBase64", object="readme.txt") == {"data": "aGVsbG8gd29ybGQ="}

    def test_download_as_text(self, ctx):
        assert call(ctx, "downloadStorageObjectAsText", object="readme.txt") == {"data": "hello world"}

    def test_download_missing_object(self, ctx):
        assert call(ctx, "downloadStorageObjectAsText", object="missing.txt") == {"data": None}

    def test_download_excluded_by_where(self, ctx):
        result = call(ctx, "downloadStorageObjectAsText", object="readme.txt", where=where("name", "_contains", "zz"))
        assert result == {"data": None}

    def test_object_name_must_not_be_empty(self, ctx):
        with pytest.raises(UnprocessableContentError, match="object name cannot be empty"):
            call(ctx, "storageObject", object="")


class TestPresignedUrls:
    def test_download_url_with_duration(self, ctx):
        result = call(ctx, "storagePresignedDownloadUrl", object="readme.txt", expiry="1h")
        assert result.url == "https://fake.local/a/readme.txt?expires=3600"
        assert result.expired_at is not None

    def test_download_url_with_seconds(self, ctx):
        assert call(ctx, "storagePresignedDownloadUrl", object="readme.txt", expiry=60).url.endswith("=60")

    def test_upload_url_defaults_to_client_expiry(self, ctx):
        result = call(ctx, "storagePresignedUploadUrl", object="new.bin")
        assert result.url.endswith("expires=86400")

    def test_invalid_expiry(self, ctx):
        with pytest.raises(UnprocessableContentError, match="expiry: invalid duration"):
            call(ctx, "storagePresignedDownloadUrl", object="readme.txt", expiry="tomorrow")


def test_incomplete_uploads(ctx, fake_storage):
    [upload] = call(ctx, "storageIncompleteUploads", prefix="tmp/")
    assert upload.name == "tmp/pending.bin"
    assert fake_storage.calls_to("list_incomplete_uploads")[0][1] == "a"


def test_unknown_function(ctx):
    with pytest.raises(HandlerNotFoundError) as exc_info:
        call(ctx, "storageEverything")
    assert exc_info.value.status_code == 404


def test_unknown_argument_is_rejected(ctx):
    with pytest.raises(UnprocessableContentError, match="invalid arguments"):
        call(ctx, "storageObject", object="readme.txt", colour="blue")


def test_every_function_is_registered():
    assert set(FUNCTIONS) == {
        "storageBucketConnections",
        "storageBucket",
        "storageBucketExists",
        "storageObjectConnections",
        "storageDeletedObjects",
        "storageObject",
        "downloadStorageObjectAsBase64",
        "downloadStorageObjectAsText",
        "storagePresignedDownloadUrl",
        "storagePresignedUploadUrl",
        "storageIncompleteUploads",
    }
