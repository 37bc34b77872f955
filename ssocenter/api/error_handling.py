from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from ssocenter.api.schemas import OAuthErrorBody
from ssocenter.logging import get_logger
from ssocenter.service.errors import OAuthError
from ssocenter.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "invalid_request",
    401: "invalid_token",
    404: "not_found",
    405: "invalid_request",
    409: "conflict",
    500: "server_error",
}

_NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str | None,
    code: str | None = None,
) -> JSONResponse:
    """Build an OAuth2 ``{error, error_description}`` response."""
    body = OAuthErrorBody(
        error=code or _error_code_for_status(status_code),
        error_description=message,
    )
    headers = dict(_NO_STORE_HEADERS)
    if status_code == 401:
        headers["WWW-Authenticate"] = f'Bearer error="{body.error}"'
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install OAuth2 error handlers for protocol, validation and storage errors."""

    @app.exception_handler(OAuthError)
    async def handle_oauth_error(request: Request, exc: OAuthError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "oauth_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        missing = sorted(
            {
                str(err["loc"][-1])
                for err in exc.errors()
                if err.get("type") == "missing" and err.get("loc")
            }
        )
        message = (
            f"Missing required parameter(s): {', '.join(missing)}"
            if missing
            else "Malformed request"
        )
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            missing=missing,
        )
        return _error_response(400, message, code="invalid_request")

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, code="conflict")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=str(exc.detail),
            )
        return _error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")
