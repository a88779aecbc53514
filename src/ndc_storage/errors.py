"""Structured error types for the storage connector."""

from __future__ import annotations

from typing import Any


class ConnectorError(Exception):
    """Base error for all connector errors.

    Every error carries an HTTP-like status code and a details mapping which
    the server renders as ``{"message": ..., "details": ...}``.
    """

    status_code: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details: dict[str, Any] = dict(details or {})
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "details": self.details}


class UnprocessableContentError(ConnectorError):
    """Raised for invalid arguments, unsupported predicates and size-guard violations."""

    status_code = 422


class ForbiddenError(ConnectorError):
    """Raised when a write targets a row its predicate does not allow."""

    status_code = 403

    def __init__(self, message: str = "permission denied", details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)


class NotSupportedError(ConnectorError):
    """Raised when the selected backend lacks a capability."""

    status_code = 501

    def __init__(self, operation: str, backend: str | None = None) -> None:
        self.operation = operation
        self.backend = backend
        target = f"{backend} storage client" if backend else "storage client"
        super().__init__(
            f"{operation} is not supported by the {target}",
            {"operation": operation, "backend": backend},
        )


class InternalServerError(ConnectorError):
    """Raised for client lookup failures and unexpected encode/decode bugs."""

    status_code = 500


class HandlerNotFoundError(ConnectorError):
    """Raised when no collection, function or procedure has the requested name."""

    status_code = 404

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} not found: {name}", {"kind": kind, "name": name})


class StorageBackendError(ConnectorError):
    """Raised when a storage service responds with an error.

    Service-side failures (status >= 500) keep their status; everything else
    surfaces as 422 with the backend error code preserved in details.
    """

    def __init__(
        self,
        operation: str,
        detail: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        self.operation = operation
        self.backend_status = status_code
        self.code = code
        self.status_code = status_code if status_code is not None and status_code >= 500 else 422
        details: dict[str, Any] = {"operation": operation}
        if status_code is not None:
            details["statusCode"] = status_code
        if code:
            details["code"] = code
        super().__init__(f"Storage backend error during {operation}: {detail}", details)


class ConfigurationError(ConnectorError):
    """Raised when the configuration file is missing or invalid."""

    status_code = 500


class RequestCancelledError(ConnectorError):
    """Raised inside a task whose request group was cancelled."""

    status_code = 500

    def __init__(self) -> None:
        super().__init__("request cancelled")
