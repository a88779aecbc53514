"""Tests for configuration parsing, loading and writing."""

from __future__ import annotations

from datetime import timedelta

import pytest
import yaml

from ndc_storage.config import (
    CONFIGURATION_FILENAME,
    SCHEMA_FILENAME,
    ClientConfig,
    EnvString,
    default_configuration,
    load_configuration,
    parse_configuration,
    parse_duration,
    write_configuration,
)
from ndc_storage.errors import ConfigurationError


class TestParse:
    def test_minimal_client(self):
        config = parse_configuration({"clients": [{"type": "s3", "defaultBucket": "a"}]})
        [client] = config.clients
        assert client.resolve_default_bucket() == "a"
        assert client.max_retries == 10
        assert client.presigned_expiry() == timedelta(hours=24)
        assert config.concurrency.query == 5
        assert config.concurrency.mutation == 1
        assert config.runtime.max_download_size_mbs == 20

    def test_clients_are_required(self):
        with pytest.raises(ConfigurationError, match="require at least 1 element in the clients array"):
            parse_configuration({"clients": []})

    def test_empty_document(self):
        with pytest.raises(ConfigurationError):
            parse_configuration(None)

    @pytest.mark.parametrize(
        "section, message",
        [
            ({"runtime": {"maxDownloadSizeMBs": 0}}, "maxDownloadSizeMBs must be larger than 0"),
            ({"runtime": {"maxUploadSizeMBs": -1}}, "maxUploadSizeMBs must be larger than 0"),
            ({"concurrency": {"query": 0}}, "concurrency.query must be larger than 0"),
            ({"concurrency": {"mutation": 0}}, "concurrency.mutation must be larger than 0"),
        ],
    )
    def test_limits_must_be_positive(self, section, message):
        with pytest.raises(ConfigurationError, match=message):
            parse_configuration({"clients": [{"type": "s3"}], **section})

    def test_unknown_client_type(self):
        with pytest.raises(ConfigurationError, match="clients.0.type"):
            parse_configuration({"clients": [{"type": "ftp"}]})

    def test_unknown_field_is_rejected(self):
        with pytest.raises(ConfigurationError, match="bucketName"):
            parse_configuration({"clients": [{"type": "s3", "bucketName": "a"}]})

    def test_invalid_presigned_expiry(self):
        with pytest.raises(ConfigurationError, match="defaultPresignedExpiry"):
            parse_configuration({"clients": [{"type": "s3", "defaultPresignedExpiry": "1d"}]})

    def test_authentication_variants(self):
        config = parse_configuration(
            {
                "clients": [
                    {"type": "s3", "authentication": {"type": "static", "accessKeyId": "ak", "secretAccessKey": {"env": "SK"}}},
                    {"type": "gcs", "authentication": {"type": "iam"}},
                    {"type": "azblob", "authentication": {"type": "connectionString", "connectionString": {"env": "CS"}}},
                    {"type": "azblob", "authentication": {"type": "sharedKey", "accountName": "n", "accountKey": "k"}},
                ]
            }
        )
        assert [c.authentication.type for c in config.clients] == ["static", "iam", "connectionString", "sharedKey"]
        assert config.clients[0].authentication.access_key_id.resolve() == "ak"

    def test_gcs_service_account_credentials(self):
        config = parse_configuration(
            {
                "clients": [
                    {
                        "type": "gcs",
                        "projectId": "demo",
                        "authentication": {"type": "credentials", "credentials": {"env": "GCS_CREDENTIALS"}},
                    },
                    {"type": "gcs", "authentication": {"type": "iam"}},
                ]
            }
        )
        native, interop = config.clients
        assert native.authentication.credentials.env == "GCS_CREDENTIALS"
        assert native.project_id.resolve() == "demo"
        assert native.uses_native_gcs()
        assert not interop.uses_native_gcs()

    def test_gcs_credentials_need_a_source(self):
        with pytest.raises(ConfigurationError, match="require either credential JSON or file"):
            parse_configuration({"clients": [{"type": "gcs", "authentication": {"type": "credentials"}}]})

    def test_credentials_are_gcs_only(self):
        with pytest.raises(ConfigurationError, match="credentials authentication is only supported by gcs clients"):
            parse_configuration(
                {"clients": [{"type": "s3", "authentication": {"type": "credentials", "credentialsFile": "/k.json"}}]}
            )

    def test_fs_client_uses_default_directory(self):
        config = parse_configuration(
            {"clients": [{"type": "fs", "defaultDirectory": "/data", "allowedDirectories": ["/tmp"]}]}
        )
        assert config.clients[0].resolve_default_bucket() == "/data"


class TestEnvString:
    def test_env_value_wins(self, monkeypatch):
        monkeypatch.setenv("NDC_TEST_BUCKET", "from-env")
        assert EnvString(value="fallback", env="NDC_TEST_BUCKET").resolve() == "from-env"

    def test_falls_back_to_value(self, monkeypatch):
        monkeypatch.delenv("NDC_TEST_BUCKET", raising=False)
        assert EnvString(value="fallback", env="NDC_TEST_BUCKET").resolve() == "fallback"

    def test_endpoint_scheme_is_checked(self):
        client = ClientConfig(type="s3", endpoint=EnvString(value="localhost:9000"))
        with pytest.raises(ConfigurationError, match="the scheme must be http or https"):
            client.resolve_endpoint()


@pytest.mark.parametrize(
    "raw, expected",
    [("30s", timedelta(seconds=30)), ("15m", timedelta(minutes=15)), ("24h", timedelta(hours=24))],
)
def test_parse_duration(raw, expected):
    assert parse_duration(raw) == expected


def test_parse_duration_rejects_days():
    with pytest.raises(ValueError, match="invalid duration"):
        parse_duration("2d")


class TestFiles:
    def test_write_then_load(self, tmp_path):
        path = write_configuration(tmp_path, default_configuration())
        assert path.name == CONFIGURATION_FILENAME
        assert path.read_text().startswith(f"# yaml-language-server: $schema={SCHEMA_FILENAME}\n")
        assert (tmp_path / SCHEMA_FILENAME).exists()

        config = load_configuration(tmp_path)
        assert config.clients[0].endpoint.env == "STORAGE_ENDPOINT"
        assert config.clients[0].authentication.type == "static"

    def test_written_yaml_uses_camel_case(self, tmp_path):
        write_configuration(tmp_path, default_configuration())
        data = yaml.safe_load((tmp_path / CONFIGURATION_FILENAME).read_text())
        assert "defaultBucket" in data["clients"][0]
        assert "maxDownloadSizeMBs" in data["runtime"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="configuration file not found"):
            load_configuration(tmp_path)

    def test_broken_yaml(self, tmp_path):
        (tmp_path / CONFIGURATION_FILENAME).write_text("clients: [\n")
        with pytest.raises(ConfigurationError, match="failed to parse"):
            load_configuration(tmp_path)
