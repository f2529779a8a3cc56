import logging
import math
import traceback

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """An error whose message is safe to show to the client."""

    def __init__(self, status_code: int, message: str, code: str = None, headers: dict = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.headers = headers

    @classmethod
    def bad_request(cls, message: str, code: str = "BAD_REQUEST"):
        return cls(status.HTTP_400_BAD_REQUEST, message, code)

    @classmethod
    def unauthorized(cls, message: str = "Unauthorized"):
        return cls(
            status.HTTP_401_UNAUTHORIZED, message, "UNAUTHORIZED",
            headers={"WWW-Authenticate": "Bearer"},
        )

    @classmethod
    def forbidden(cls, message: str = "Forbidden"):
        return cls(status.HTTP_403_FORBIDDEN, message, "FORBIDDEN")

    @classmethod
    def not_found(cls, message: str = "Not found"):
        return cls(status.HTTP_404_NOT_FOUND, message, "NOT_FOUND")

    @classmethod
    def too_many_requests(cls, retry_after: float, message: str = "Too many requests"):
        return cls(
            status.HTTP_429_TOO_MANY_REQUESTS, message, "RATE_LIMITED",
            headers={"Retry-After": str(max(1, math.ceil(retry_after)))},
        )

    @classmethod
    def unavailable(cls, message: str = "Service unavailable"):
        return cls(status.HTTP_503_SERVICE_UNAVAILABLE, message, "UNAVAILABLE")

    def to_response(self) -> dict:
        body = {"error": self.message}
        if self.code:
            body["code"] = self.code
        return body


def _short_trace(exc: Exception, frames: int = 3) -> str:
    lines = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return "".join(lines[-frames:])


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request data"
    first = errors[0]
    ctx_error = (first.get("ctx") or {}).get("error")
    if first.get("type") == "value_error" and ctx_error is not None:
        return str(ctx_error)
    field = ".".join(str(loc) for loc in first.get("loc", ()) if loc != "body")
    if first.get("type") == "missing":
        return f"{field} is required" if field else "Invalid request data"
    return f"Invalid {field}" if field else "Invalid request data"


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error("API error on %s: %s", request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_response(), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.info("Validation error on %s", request.url.path, extra={"errors": len(exc.errors())})
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": _validation_message(exc), "code": "VALIDATION_ERROR"},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail if isinstance(exc.detail, str) else "Request failed"},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled API error",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error": str(exc),
                "stack": _short_trace(exc),
            },
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )
