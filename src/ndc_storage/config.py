"""Configuration models and loading for the storage connector."""

from __future__ import annotations

import json
import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from ndc_storage.errors import ConfigurationError

CONFIGURATION_FILENAME = "configuration.yaml"
SCHEMA_FILENAME = "configuration.schema.json"

_DURATION_RE = re.compile(r"^([0-9]+)(s|m|h)$")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours"}


def parse_duration(value: str) -> timedelta:
    """Parse a ``[0-9]+(s|m|h)`` duration such as ``24h``."""
    match = _DURATION_RE.match(value.strip())
    if match is None:
        raise ValueError(f"invalid duration '{value}', expected a pattern like 30s, 15m or 24h")
    return timedelta(**{_DURATION_UNITS[match.group(2)]: int(match.group(1))})


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class EnvString(_Model):
    """A string setting that may be read from an environment variable."""

    value: str | None = None
    env: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _accept_plain_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"value": data}
        return data

    def resolve(self) -> str | None:
        if self.env:
            env_value = os.environ.get(self.env)
            if env_value:
                return env_value
        return self.value


def resolve_env(value: EnvString | None) -> str | None:
    if value is None:
        return None
    resolved = value.resolve()
    return resolved or None


class StaticAuthentication(_Model):
    type: Literal["static"] = "static"
    access_key_id: EnvString | None = None
    secret_access_key: EnvString | None = None
    session_token: EnvString | None = None


class IAMAuthentication(_Model):
    type: Literal["iam"] = "iam"


class ConnectionStringAuthentication(_Model):
    type: Literal["connectionString"] = "connectionString"
    connection_string: EnvString


class SharedKeyAuthentication(_Model):
    type: Literal["sharedKey"] = "sharedKey"
    account_name: EnvString
    account_key: EnvString


class CredentialsAuthentication(_Model):
    """Service account or refresh token JSON, inline or from a file."""

    type: Literal["credentials"] = "credentials"
    credentials: EnvString | None = None
    credentials_file: EnvString | None = None

    @model_validator(mode="after")
    def _require_source(self) -> CredentialsAuthentication:
        if self.credentials is None and self.credentials_file is None:
            raise ValueError("require either credential JSON or file")
        return self


class AnonymousAuthentication(_Model):
    type: Literal["anonymous"] = "anonymous"


Authentication = Annotated[
    Union[
        StaticAuthentication,
        IAMAuthentication,
        ConnectionStringAuthentication,
        SharedKeyAuthentication,
        CredentialsAuthentication,
        AnonymousAuthentication,
    ],
    Field(discriminator="type"),
]


class FilePermissions(_Model):
    directory: int = 0o755
    file: int = 0o644


class ClientConfig(_Model):
    """Settings of one storage client."""

    id: str | None = None
    type: Literal["s3", "gcs", "azblob", "fs"] = "s3"
    default_bucket: EnvString | None = None
    endpoint: EnvString | None = None
    public_host: EnvString | None = None
    region: EnvString | None = None
    # gcs only
    project_id: EnvString | None = None
    max_retries: int = Field(default=10, ge=0)
    default_presigned_expiry: str | None = Field(default="24h", pattern=r"^[0-9]+(s|m|h)$")
    allowed_buckets: list[str] = Field(default_factory=list)
    authentication: Authentication | None = None
    # fs only
    default_directory: EnvString | None = None
    allowed_directories: list[str] = Field(default_factory=list)
    permissions: FilePermissions | None = None

    @model_validator(mode="after")
    def _check_authentication(self) -> ClientConfig:
        if isinstance(self.authentication, (CredentialsAuthentication, AnonymousAuthentication)) and self.type != "gcs":
            raise ValueError(f"{self.authentication.type} authentication is only supported by gcs clients")
        return self

    def uses_native_gcs(self) -> bool:
        return self.type == "gcs" and isinstance(
            self.authentication, (CredentialsAuthentication, AnonymousAuthentication)
        )

    def resolve_endpoint(self) -> str | None:
        endpoint = resolve_env(self.endpoint)
        if endpoint is None:
            return None
        if not endpoint.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"invalid endpoint url '{endpoint}': the scheme must be http or https",
                {"client": self.id},
            )
        return endpoint

    def resolve_default_bucket(self) -> str:
        if self.type == "fs":
            return resolve_env(self.default_directory) or resolve_env(self.default_bucket) or ""
        return resolve_env(self.default_bucket) or ""

    def presigned_expiry(self) -> timedelta | None:
        if not self.default_presigned_expiry:
            return None
        return parse_duration(self.default_presigned_expiry)


class ConcurrencySettings(_Model):
    query: int = 5
    mutation: int = 1


class HTTPTransportSettings(_Model):
    timeout_seconds: float = 30.0
    insecure_skip_verify: bool = False
    user_agent: str | None = None


class RuntimeSettings(_Model):
    max_download_size_mbs: int = Field(default=20, alias="maxDownloadSizeMBs")
    max_upload_size_mbs: int = Field(default=20, alias="maxUploadSizeMBs")
    http: HTTPTransportSettings | None = None


class Configuration(_Model):
    """Top-level ``configuration.yaml`` document."""

    clients: list[ClientConfig] = Field(default_factory=list)
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)

    @model_validator(mode="after")
    def _validate(self) -> Configuration:
        if not self.clients:
            raise ValueError("require at least 1 element in the clients array")
        if self.runtime.max_download_size_mbs <= 0:
            raise ValueError("maxDownloadSizeMBs must be larger than 0")
        if self.runtime.max_upload_size_mbs <= 0:
            raise ValueError("maxUploadSizeMBs must be larger than 0")
        if self.concurrency.query <= 0:
            raise ValueError("concurrency.query must be larger than 0")
        if self.concurrency.mutation <= 0:
            raise ValueError("concurrency.mutation must be larger than 0")
        return self


def default_configuration() -> Configuration:
    """Skeleton written by ``update`` when no configuration exists."""
    return Configuration(
        clients=[
            ClientConfig(
                type="s3",
                endpoint=EnvString(env="STORAGE_ENDPOINT"),
                default_bucket=EnvString(env="DEFAULT_BUCKET"),
                authentication=StaticAuthentication(
                    access_key_id=EnvString(env="ACCESS_KEY_ID"),
                    secret_access_key=EnvString(env="SECRET_ACCESS_KEY"),
                ),
            )
        ],
    )


def _format_validation_error(err: ValidationError) -> str:
    messages = []
    for item in err.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = str(item.get("msg", "")).removeprefix("Value error, ")
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages)


def parse_configuration(data: Any) -> Configuration:
    try:
        return Configuration.model_validate(data or {})
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(e)) from e


def load_configuration(directory: str | Path) -> Configuration:
    """Read and validate ``configuration.yaml`` from a directory."""
    path = Path(directory) / CONFIGURATION_FILENAME
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"configuration file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"failed to parse {path}: {e}") from e
    return parse_configuration(data)


def configuration_json_schema() -> dict[str, Any]:
    return Configuration.model_json_schema(by_alias=True)


def write_configuration(directory: str | Path, config: Configuration) -> Path:
    """Write the YAML configuration and its JSON schema into a directory."""
    root = Path(directory)
    root.mkdir(parents=True, exist_ok=True)
    schema_path = root / SCHEMA_FILENAME
    schema_path.write_text(json.dumps(configuration_json_schema(), indent=2) + "\n", encoding="utf-8")

    body = yaml.safe_dump(
        config.model_dump(mode="json", by_alias=True, exclude_none=True),
        sort_keys=False,
    )
    path = root / CONFIGURATION_FILENAME
    path.write_text(f"# yaml-language-server: $schema={SCHEMA_FILENAME}\n{body}", encoding="utf-8")
    return path
