"""Error taxonomy and the HTTP error envelope.

All API errors are rendered as::

    {"error": {"code": "<ERROR_CODE>", "message": "<human-readable>", "details": <object|null>}}
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class CourierError(Exception):
    """Base class for errors raised by Courier components."""

    status_code: int = 500
    code: str = "INTERNAL"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidInputError(CourierError):
    """Caller-correctable input problem, raised before any store write."""

    status_code = 400
    code = "INVALID_ARGUMENT"


class NotFoundError(CourierError):
    status_code = 404
    code = "NOT_FOUND"


class TaskNotFoundError(NotFoundError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}", details={"taskId": task_id})
        self.task_id = task_id


class MessageNotFoundError(NotFoundError):
    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message not found: {message_id}", details={"messageId": message_id})
        self.message_id = message_id


class DocumentNotFoundError(CourierError):
    """Raised by :class:`courier.store.DocumentStore` when updating a missing document."""

    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"No document {doc_id!r} in {collection!r}")
        self.collection = collection
        self.doc_id = doc_id


class DispatchError(CourierError):
    """The delivery queue did not accept a task."""


class PublishError(CourierError):
    """The topic transport did not accept a message."""


class TaskInProgressError(CourierError):
    """Another delivery holds a live processing lease on the task."""

    status_code = 409
    code = "CONFLICT"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is already processing", details={"taskId": task_id})
        self.task_id = task_id


class TaskExecutionError(CourierError):
    """A task action raised while the worker was executing it."""

    def __init__(self, task_id: str, message: str) -> None:
        super().__init__(message, details={"taskId": task_id})
        self.task_id = task_id


# ---------------------------------------------------------------------------
# FastAPI handlers
# ---------------------------------------------------------------------------

_STATUS_CODE_MAP: dict[int, str] = {
    400: "INVALID_ARGUMENT",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL",
    503: "UNAVAILABLE",
}


def _error_response(
    status_code: int,
    code: str,
    message: str,
    details: dict | list | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "details": details}},
    )


async def _courier_exception_handler(request: Request, exc: CourierError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, exc.code, exc.message, exc.details)


async def _http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    code = _STATUS_CODE_MAP.get(exc.status_code, "INTERNAL")
    message = str(exc.detail) if exc.detail else code
    return _error_response(exc.status_code, code, message)


async def _validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    field_errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        # Drop the "body"/"query"/"path" prefix.
        parts = loc[1:] if loc else loc
        field_path = ".".join(str(part) for part in parts)
        field_errors.append(
            {
                "field": field_path or None,
                "message": err.get("msg", ""),
                "type": err.get("type", ""),
            }
        )
    return _error_response(422, "VALIDATION_ERROR", "Validation error", {"fields": field_errors})


async def _generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(500, "INTERNAL", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Register all custom exception handlers on the FastAPI app."""
    app.add_exception_handler(CourierError, _courier_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _generic_exception_handler)
