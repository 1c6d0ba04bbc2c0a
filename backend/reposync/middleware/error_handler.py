"""
Error handling middleware and exception handlers for the FastAPI application.

``BaseApplicationError`` subclasses carry their own HTTP status and are
rendered by ``application_error_handler``. Anything else that escapes a route
is caught by ``ErrorHandlingMiddleware`` and turned into an opaque JSON 500.
"""

import time
import traceback
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from logconfig.logger import get_logger, get_context_filter
from reposync.exceptions.base_exceptions import BaseApplicationError

logger = get_logger()
context_filter = get_context_filter()

REQUEST_ID_HEADER = "X-Request-ID"


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or "-"


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request id, logs request completion and converts unexpected
    exceptions to JSON 500 responses.
    """

    def __init__(self, app: ASGIApp, include_debug_info: bool = False):
        super().__init__(app)
        self.include_debug_info = include_debug_info

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()
        request_id = request.headers.get(REQUEST_ID_HEADER) or self._generate_request_id()

        request.state.request_id = request_id
        context_filter.bind(request_id=request_id)

        try:
            response = await call_next(request)
        except Exception as e:
            return self._handle_unexpected_error(request, e, request_id, start_time)

        duration = time.time() - start_time
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} ({duration:.3f}s)"
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    def _handle_unexpected_error(self, request: Request, exception: Exception, request_id: str, start_time: float) -> JSONResponse:
        elapsed = time.time() - start_time

        logger.opt(exception=exception).critical(
            f"Unexpected error on {request.method} {request.url.path}: {exception.__class__.__name__}"
        )

        response_data = {
            "error": "Internal server error",
            "message": "The request could not be completed. Retry later or contact support with the request id.",
            "request_id": request_id,
        }

        if self.include_debug_info:
            response_data["debug"] = {
                "exception": f"{exception.__class__.__name__}: {exception}",
                "traceback": traceback.format_exception(type(exception), exception, exception.__traceback__),
                "method": request.method,
                "path": request.url.path,
                "elapsed": round(elapsed, 3),
            }

        return JSONResponse(
            status_code=500,
            content=response_data,
            headers={REQUEST_ID_HEADER: request_id},
        )

    @staticmethod
    def _generate_request_id() -> str:
        return uuid.uuid4().hex[:12]


async def application_error_handler(request: Request, exception: BaseApplicationError) -> JSONResponse:
    """Render an application error with the status code it carries."""
    status_code = exception.status_code
    if status_code >= 500:
        logger.bind(error=exception.to_dict()).error(f"Application error: {exception}")
    else:
        # User-correctable outcomes (409 conflict, 400 confirmation, ...) are not failures
        logger.info(f"Request rejected with {status_code}: {exception.message} ({exception.error_code})")

    response_data = exception.to_user_dict()
    response_data["request_id"] = _request_id(request)
    if exception.troubleshooting_guide:
        response_data["troubleshooting"] = exception.troubleshooting_guide

    headers = {REQUEST_ID_HEADER: _request_id(request)}
    retry_after = getattr(exception, "retry_after", None)
    if retry_after:
        headers["Retry-After"] = str(retry_after)

    return JSONResponse(status_code=status_code, content=response_data, headers=headers)


def register_error_handlers(app: FastAPI, include_debug_info: bool = False) -> None:
    app.add_exception_handler(BaseApplicationError, application_error_handler)
    app.add_middleware(ErrorHandlingMiddleware, include_debug_info=include_debug_info)
