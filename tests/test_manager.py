"""Tests for client routing, size guards and manager operations."""

from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from ndc_storage.config import RuntimeSettings, parse_configuration
from ndc_storage.errors import InternalServerError, NotSupportedError, UnprocessableContentError
from ndc_storage.guards import MIB, read_limited
from ndc_storage.manager import Client, StorageManager, validate_object_name
from ndc_storage.types import (
    BucketArguments,
    ClientCredentials,
    CopyDestination,
    CopySource,
    GetObjectOptions,
    ListObjectsOptions,
    MakeBucketOptions,
    PresignedGetOptions,
    PutObjectOptions,
    UpdateBucketOptions,
    UpdateObjectOptions,
)

UPLOAD_MESSAGE = (
    "file size > 1 MB is not allowed to be upload directly. "
    "Please use presignedPutObject function for large files"
)


@pytest.fixture
def two_clients(storage_factory):
    first = storage_factory({"a": {"x.txt": b"x"}})
    second = storage_factory({"b": {"y.txt": b"y"}})
    manager = StorageManager(
        [
            Client(id="c1", storage=first, default_bucket="a", allowed_buckets=["a"]),
            Client(id="c2", storage=second, default_bucket="b"),
        ]
    )
    return manager, first, second


class TestRouting:
    def test_no_client_and_no_bucket_uses_first_default(self, two_clients):
        manager, first, _ = two_clients
        client, bucket = manager.resolve(BucketArguments())
        assert client.storage is first
        assert bucket == "a"

    def test_bucket_selects_owning_client(self, two_clients):
        manager, _, second = two_clients
        client, bucket = manager.resolve(BucketArguments(bucket="b"))
        assert client.storage is second
        assert bucket == "b"

    def test_unknown_bucket_falls_back_to_first_client(self, two_clients):
        manager, first, _ = two_clients
        client, bucket = manager.resolve(BucketArguments(bucket="zzz"))
        assert client.storage is first
        assert bucket == "zzz"

    def test_client_isolation(self, two_clients):
        manager, _, _ = two_clients
        with pytest.raises(UnprocessableContentError) as exc_info:
            manager.resolve(BucketArguments(client_id="c1", bucket="b"))
        assert exc_info.value.message == "you are not allowed to access 'b' bucket"
        assert exc_info.value.status_code == 422

    def test_unknown_client_id(self, two_clients):
        manager, _, _ = two_clients
        with pytest.raises(InternalServerError, match="client not found: c9"):
            manager.resolve(BucketArguments(client_id="c9"))

    def test_bucket_required_without_default(self, storage_factory):
        manager = StorageManager([Client(id="c1", storage=storage_factory())])
        with pytest.raises(UnprocessableContentError, match="bucket name is required"):
            manager.resolve(BucketArguments(client_id="c1"))

    def test_inline_credentials_build_an_ephemeral_client(self, storage_factory):
        built = []

        def factory(config, runtime):
            built.append(config)
            return storage_factory({"tmp": {"k": b"v"}})

        manager = StorageManager([], client_factory=factory)
        args = BucketArguments(
            endpoint="http://localhost:9000", access_key_id="ak", secret_access_key="sk", bucket="tmp"
        )
        assert manager.bucket_exists(args)
        assert built[0].type == "s3"
        assert built[0].resolve_endpoint() == "http://localhost:9000"
        assert built[0].authentication.access_key_id.resolve() == "ak"

    def test_client_type_alone_is_not_inline_credentials(self, storage_factory):
        def factory(config, runtime):
            raise AssertionError("no ephemeral client expected")

        configured = storage_factory({"a": {}})
        manager = StorageManager(
            [Client(id="c1", storage=configured, default_bucket="a")], client_factory=factory
        )
        args = BucketArguments(client_type="azblob", bucket="a")
        assert not args.has_credentials()
        client, bucket = manager.resolve(args)
        assert client.id == "c1"
        assert bucket == "a"

    def test_ephemeral_client_is_closed_after_use(self, storage_factory):
        clients = []

        def factory(config, runtime):
            clients.append(storage_factory({"tmp": {}}))
            return clients[-1]

        manager = StorageManager([], client_factory=factory)
        manager.bucket_exists(BucketArguments(endpoint="http://localhost:9000", bucket="tmp"))
        assert clients[0].closed

    def test_inline_credentials_require_bucket(self, storage_factory):
        manager = StorageManager([], client_factory=lambda c, r: storage_factory())
        with pytest.raises(UnprocessableContentError, match="bucket name is required"):
            manager.resolve(BucketArguments(endpoint="http://localhost:9000"))

    def test_azblob_credentials_map_to_shared_key(self, storage_factory):
        built = []
        manager = StorageManager(
            [], client_factory=lambda c, r: built.append(c) or storage_factory({"box": {}})
        )
        manager.bucket_exists(
            BucketArguments(client_type="azblob", access_key_id="acct", secret_access_key="key", bucket="box")
        )
        assert built[0].type == "azblob"
        assert built[0].authentication.type == "sharedKey"

    def test_from_configuration_numbers_clients(self, storage_factory):
        config = parse_configuration(
            {
                "clients": [
                    {"type": "s3", "defaultBucket": "a"},
                    {"id": "named", "type": "s3", "defaultBucket": "b", "allowedBuckets": ["c"]},
                ]
            }
        )
        manager = StorageManager.from_configuration(config, client_factory=lambda c, r: storage_factory())
        assert manager.client_ids == ["0", "named"]
        assert manager.get_client("named").allowed_buckets == ["c"]
        assert manager.get_client(None).default_presigned_expiry == timedelta(hours=24)


class TestSizeGuards:
    def test_upload_at_limit_succeeds(self, manager, fake_storage):
        info = manager.put_object(BucketArguments(), "big.bin", PutObjectOptions(), b"x" * MIB)
        assert info.size == MIB
        assert info.client_id == "c1"
        assert len(fake_storage.buckets["a"]["big.bin"]) == MIB

    def test_upload_over_limit_fails_before_backend_call(self, manager, fake_storage):
        with pytest.raises(UnprocessableContentError) as exc_info:
            manager.put_object(BucketArguments(), "big.bin", PutObjectOptions(), b"x" * (MIB + 1))
        assert exc_info.value.message == UPLOAD_MESSAGE
        assert fake_storage.calls_to("put_object") == []

    def test_download_guard_uses_advertised_size(self, fake_storage):
        fake_storage.buckets["a"]["huge.bin"] = b"x" * (MIB + 1)
        manager = StorageManager([Client(id="c1", storage=fake_storage, default_bucket="a")], RuntimeSettings(maxDownloadSizeMBs=1))
        with pytest.raises(UnprocessableContentError, match="presignedGetObject"):
            manager.download_object(BucketArguments(), "huge.bin", GetObjectOptions())
        assert fake_storage.calls_to("get_object") == []

    def test_download_guard_while_streaming(self):
        with pytest.raises(UnprocessableContentError, match="not allowed to be downloaded directly"):
            read_limited(iter([b"x" * MIB, b"y"]), 1)

    def test_download_round_trip(self, manager):
        stat, data = manager.download_object(BucketArguments(), "readme.txt", GetObjectOptions())
        assert data == b"hello world"
        assert stat.bucket == "a"
        assert stat.client_id == "c1"

    def test_download_missing_object(self, manager):
        assert manager.download_object(BucketArguments(), "nope.txt", GetObjectOptions()) is None


class TestUploadFromUrl:
    def _manager(self, fake_storage, handler):
        return StorageManager(
            [Client(id="c1", storage=fake_storage, default_bucket="a")],
            RuntimeSettings(maxUploadSizeMBs=1),
            http_transport=httpx.MockTransport(handler),
        )

    def test_fetches_and_stores_body(self, fake_storage):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, content=b"a,b\n1,2\n", headers={"content-type": "text/plain"})

        manager = self._manager(fake_storage, handler)
        info = manager.upload_from_url(
            BucketArguments(), "data/report.csv", PutObjectOptions(), "https://example.com/r",
            headers={"Authorization": "Bearer t"},
        )
        assert info.name == "data/report.csv"
        assert fake_storage.buckets["a"]["data/report.csv"] == b"a,b\n1,2\n"
        assert requests[0].headers["authorization"] == "Bearer t"
        # text/plain falls back to the type guessed from the key
        assert fake_storage.content_types[("a", "data/report.csv")] == "text/csv"

    def test_post_with_body(self, fake_storage):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.content))
            return httpx.Response(200, content=b"ok", headers={"content-type": "application/json"})

        manager = self._manager(fake_storage, handler)
        manager.upload_from_url(
            BucketArguments(), "out.json", PutObjectOptions(), "https://example.com/r", method="post", body="{}"
        )
        assert seen == [("POST", b"{}")]
        assert fake_storage.content_types[("a", "out.json")] == "application/json"

    def test_http_error_status(self, fake_storage):
        manager = self._manager(fake_storage, lambda request: httpx.Response(404))
        with pytest.raises(UnprocessableContentError, match="HTTP 404"):
            manager.upload_from_url(BucketArguments(), "x", PutObjectOptions(), "https://example.com/missing")

    def test_body_over_limit(self, fake_storage):
        manager = self._manager(fake_storage, lambda request: httpx.Response(200, content=b"x" * (MIB + 1)))
        with pytest.raises(UnprocessableContentError) as exc_info:
            manager.upload_from_url(BucketArguments(), "x", PutObjectOptions(), "https://example.com/big")
        assert exc_info.value.message == UPLOAD_MESSAGE
        assert fake_storage.calls_to("put_object") == []


class TestOperations:
    def test_list_objects_stamps_client_and_bucket(self, manager):
        objects, page = manager.list_objects(BucketArguments(), ListObjectsOptions(prefix="movies/"))
        assert [o.name for o in objects] == ["movies/2000s/memento.mp4", "movies/2010s/inception.mp4"]
        assert {(o.client_id, o.bucket) for o in objects} == {("c1", "a")}
        assert not page.has_next_page

    def test_list_deleted_objects_requests_versions(self, manager, fake_storage):
        manager.list_deleted_objects(BucketArguments(), ListObjectsOptions())
        assert fake_storage.calls_to("list_objects")[0][2].with_versions

    def test_make_bucket_routes_by_name(self, manager, fake_storage):
        manager.make_bucket(ClientCredentials(client_id="c1"), MakeBucketOptions(name="new"))
        assert "new" in fake_storage.buckets

    def test_make_bucket_requires_name(self, manager):
        with pytest.raises(UnprocessableContentError, match="bucket name is required"):
            manager.make_bucket(ClientCredentials(), MakeBucketOptions(name=""))

    def test_empty_updates_skip_backend(self, manager, fake_storage):
        manager.update_bucket(BucketArguments(), UpdateBucketOptions())
        manager.update_object(BucketArguments(), "readme.txt", UpdateObjectOptions())
        assert fake_storage.calls == []

    def test_update_bucket_tags(self, manager, fake_storage):
        manager.update_bucket(BucketArguments(bucket="a"), UpdateBucketOptions(tags={"env": "dev"}))
        assert fake_storage.calls_to("set_bucket_tagging") == [("set_bucket_tagging", "a", {"env": "dev"})]

    def test_copy_defaults_source_bucket(self, manager, fake_storage):
        manager.copy_object(
            ClientCredentials(),
            CopyDestination(bucket="b", name="copy.txt"),
            CopySource(bucket="", name="readme.txt"),
        )
        assert fake_storage.buckets["b"]["copy.txt"] == b"hello world"

    def test_compose_requires_sources(self, manager):
        with pytest.raises(UnprocessableContentError, match="sources must not be empty"):
            manager.compose_object(ClientCredentials(), CopyDestination(bucket="a", name="all"), [])

    def test_presigned_url_uses_client_default_expiry(self, manager):
        result = manager.presigned_get_object(BucketArguments(), "readme.txt", PresignedGetOptions())
        assert result.url.endswith("?expires=86400")

    def test_presigned_url_requires_expiry(self, fake_storage):
        manager = StorageManager([Client(id="c1", storage=fake_storage, default_bucket="a")])
        with pytest.raises(UnprocessableContentError, match="expiry is required"):
            manager.presigned_put_object(BucketArguments(), "readme.txt", None)

    def test_unsupported_operation_surfaces_501(self, manager):
        with pytest.raises(NotSupportedError) as exc_info:
            manager.restore_object(BucketArguments(), "readme.txt")
        assert exc_info.value.status_code == 501
        assert exc_info.value.backend == "fake"


class TestObjectNames:
    def test_empty_name(self):
        with pytest.raises(UnprocessableContentError, match="cannot be empty"):
            validate_object_name("")

    def test_name_too_long(self):
        with pytest.raises(UnprocessableContentError, match="longer than 1024 bytes"):
            validate_object_name("é" * 513)

