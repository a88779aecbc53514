"""ndc-storage: data connector for object storage services."""

__version__ = "0.1.0"

from ndc_storage.concurrency import CancellationToken
from ndc_storage.config import Configuration, load_configuration, parse_configuration
from ndc_storage.connector import Connector
from ndc_storage.errors import (
    ConfigurationError,
    ConnectorError,
    ForbiddenError,
    HandlerNotFoundError,
    InternalServerError,
    NotSupportedError,
    StorageBackendError,
    UnprocessableContentError,
)
from ndc_storage.filters import column
from ndc_storage.manager import StorageManager
from ndc_storage.predicate import PredicateEvaluator, StringFilterPredicate
from ndc_storage.storage import StorageClient, open_storage_client

__all__ = [
    "__version__",
    "CancellationToken",
    "Configuration",
    "load_configuration",
    "parse_configuration",
    "Connector",
    "StorageManager",
    "StorageClient",
    "open_storage_client",
    "PredicateEvaluator",
    "StringFilterPredicate",
    "column",
    "ConnectorError",
    "ConfigurationError",
    "UnprocessableContentError",
    "ForbiddenError",
    "NotSupportedError",
    "InternalServerError",
    "HandlerNotFoundError",
    "StorageBackendError",
]
