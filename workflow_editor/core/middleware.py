"""Request logging middleware and the engine error to HTTP status mapping."""

import logging
import time
import uuid
from datetime import datetime
from typing import Callable, Optional
from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import (
    DocumentFormatError,
    ExecutionProtocolError,
    ExecutorRegistryError,
    GraphMutationError,
    StorageError,
    UnknownStepTypeError,
    WorkflowEditorError,
    create_error_response,
)
from .logging import clear_logging_context, get_logger, log_with_context, set_logging_context

logger = get_logger(__name__)

ERROR_STATUS_CODES = (
    (UnknownStepTypeError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ExecutionProtocolError, status.HTTP_409_CONFLICT),
    (GraphMutationError, status.HTTP_400_BAD_REQUEST),
    (DocumentFormatError, status.HTTP_400_BAD_REQUEST),
    (ExecutorRegistryError, status.HTTP_400_BAD_REQUEST),
)


def status_code_for_error(error: WorkflowEditorError) -> int:
    """HTTP status code for an engine error. Unlisted errors are server errors."""
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return code
    if isinstance(error, StorageError) and error.recoverable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def session_id_from_path(path: str) -> Optional[str]:
    """``/api/v1/sessions/<id>/...`` -> ``<id>``."""
    parts = path.strip("/").split("/")
    if "sessions" in parts:
        index = parts.index("sessions") + 1
        if index < len(parts):
            return parts[index]
    return None


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id, logs it and converts engine errors to JSON responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex
        started = time.perf_counter()
        set_logging_context(request_id=request_id, session_id=session_id_from_path(request.url.path))
        route = f"{request.method} {request.url.path}"

        try:
            response = await call_next(request)
        except WorkflowEditorError as e:
            response = JSONResponse(status_code=status_code_for_error(e), content=create_error_response(e))
            log_with_context(
                logger, logging.WARNING, f"{route} rejected: {e.error_code}",
                error_details=e.to_dict()
            )
        except Exception as e:
            logger.error(f"{route} raised {type(e).__name__}: {e}", exc_info=True)
            response = JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {"error_type": type(e).__name__, "timestamp": datetime.utcnow().isoformat()},
                    "request_id": request_id,
                },
            )
        else:
            log_with_context(
                logger, logging.INFO, f"{route} -> {response.status_code}",
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
        finally:
            clear_logging_context()

        response.headers["X-Request-ID"] = request_id
        return response
