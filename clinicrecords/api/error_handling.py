from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from clinicrecords.api.schemas import Envelope, ErrorBody
from clinicrecords.logging import get_correlation_id, get_logger
from clinicrecords.service.errors import ConflictError, ErrorCode, ServiceError, status_for
from clinicrecords.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_CODE_FOR_STATUS = {
    400: ErrorCode.VALIDATION,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.VALIDATION,
    409: ErrorCode.CONFLICT,
    422: ErrorCode.VALIDATION,
    429: ErrorCode.RATE_LIMITED,
}

GENERIC_SERVER_MESSAGE = "internal server error"


def error_response(
    code: ErrorCode,
    message: str,
    details: dict | list | None = None,
    *,
    status_code: int | None = None,
) -> JSONResponse:
    """Build the error envelope; the status follows the code unless overridden."""
    envelope = Envelope(
        status="error",
        error=ErrorBody(code=code.value, message=message, details=details or None),
        request_id=get_correlation_id() or str(uuid4()),
    )
    return JSONResponse(
        status_code=status_code or status_for(code),
        content=envelope.model_dump(mode="json"),
    )


def service_error_response(exc: ServiceError) -> JSONResponse:
    return error_response(exc.code, exc.message, exc.detail)


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for err in exc.errors():
        details.append(
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": err.get("msg", "invalid value"),
            }
        )
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that turn every failure into the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        if exc.code is ErrorCode.SERVER_ERROR:
            logger.error(
                "service_error",
                path=request.url.path,
                method=request.method,
                error_code=exc.code.value,
                message=exc.message,
                detail=exc.detail,
                exc_info=exc,
            )
            return error_response(ErrorCode.SERVER_ERROR, GENERIC_SERVER_MESSAGE)
        logger.warning(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.code.value,
            message=exc.message,
        )
        return service_error_response(exc)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return service_error_response(ConflictError(exc.message, detail=exc.detail))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return error_response(ErrorCode.VALIDATION, "invalid request", details)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        code = _CODE_FOR_STATUS.get(exc.status_code, ErrorCode.SERVER_ERROR)
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=str(exc.detail),
            )
            return error_response(
                ErrorCode.SERVER_ERROR, GENERIC_SERVER_MESSAGE, status_code=exc.status_code
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return error_response(code, message, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(ErrorCode.SERVER_ERROR, GENERIC_SERVER_MESSAGE)
