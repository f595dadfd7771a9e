from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar


T = TypeVar("T")

VALIDATION_ERROR = "VALIDATION_ERROR"
QUERY_ERROR = "QUERY_ERROR"
GEOMETRY_ERROR = "GEOMETRY_ERROR"


class SelectionError(Exception):
    """Base class for pipeline failures."""


class ValidationError(SelectionError, ValueError):
    """Configuration or input rejected before any query is issued."""


class QueryError(SelectionError):
    """Transport or service failure of a spatial, owner or relationship query."""

    def __init__(self, message: str, *, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class Cancelled(SelectionError):
    """Raised when the cancellation token of a request has been aborted."""


def is_cancellation(exc: BaseException) -> bool:
    return isinstance(exc, (Cancelled, asyncio.CancelledError))


def parse_arcgis_error(error: Any, default_message: str) -> str:
    """Best-effort message from an ArcGIS error payload or exception."""

    if not error:
        return default_message
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        inner = error.get("error") if isinstance(error.get("error"), dict) else error
        details = inner.get("details")
        if isinstance(details, dict) and isinstance(details.get("message"), str):
            return details["message"]
        if isinstance(details, list) and details and isinstance(details[0], str):
            return details[0]
        if isinstance(inner.get("message"), str):
            return inner["message"]
        return default_message
    text = str(error)
    return text or default_message


@dataclass(frozen=True)
class ValidationResult(Generic[T]):
    valid: bool
    data: Optional[T] = None
    error_type: Optional[str] = None
    message: Optional[str] = None
    failure_reason: Optional[str] = None


def ok(data: T) -> ValidationResult[T]:
    return ValidationResult(valid=True, data=data)


def fail(error_type: str, message: str, failure_reason: str) -> ValidationResult[Any]:
    return ValidationResult(
        valid=False,
        error_type=error_type,
        message=message,
        failure_reason=failure_reason,
    )
