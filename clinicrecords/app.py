from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from clinicrecords.api.error_handling import (
    GENERIC_SERVER_MESSAGE,
    error_response,
    register_exception_handlers,
    service_error_response,
)
from clinicrecords.api.routes import auth_router, client_ip, patients_router
from clinicrecords.config import Settings, get_settings
from clinicrecords.logging import get_logger, set_correlation_id
from clinicrecords.service.errors import ErrorCode, RateLimitedError
from clinicrecords.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_CONTENT_SECURITY_POLICY = (
    "default-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'"
)

_EXPOSED_HEADERS = ["X-Request-ID", "Retry-After"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: Runtime = app.state.runtime
    await runtime.start()
    logger.info("app_started", version=__version__)
    try:
        yield
    finally:
        await runtime.close()
        logger.info("app_stopped")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the API. Raises at construction when signing secrets are unusable."""
    settings = settings or get_settings()
    runtime = Runtime(settings)

    app = FastAPI(title="Clinic Records", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    # Starlette runs the last-registered middleware first; registration order
    # below is innermost to outermost. Responses built by the outer two
    # (429, unhandled 500) never pass through the inner ones, so they apply
    # the same headers themselves.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=_EXPOSED_HEADERS,
        max_age=3600,
    )

    def apply_security_headers(request: Request, response: Response) -> Response:
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-XSS-Protection", "1; mode=block")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("Content-Security-Policy", _CONTENT_SECURITY_POLICY)
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    def apply_cors_headers(request: Request, response: Response) -> Response:
        origin = request.headers.get("Origin")
        allowed = settings.cors_allow_origins
        if origin and ("*" in allowed or origin in allowed):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Expose-Headers"] = ", ".join(_EXPOSED_HEADERS)
            response.headers.add_vary_header("Origin")
        return response

    def finish_early_response(
        request: Request, response: Response, correlation_id: str
    ) -> Response:
        response.headers["X-Request-ID"] = correlation_id
        apply_security_headers(request, response)
        return apply_cors_headers(request, response)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        return apply_security_headers(request, response)

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                "unhandled_exception",
                exc_info=exc,
                path=request.url.path,
                method=request.method,
                error_type=type(exc).__name__,
            )
            response = error_response(ErrorCode.SERVER_ERROR, GENERIC_SERVER_MESSAGE)
            return finish_early_response(request, response, correlation_id)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def enforce_rate_limit(request: Request, call_next):
        ip = client_ip(request, settings.trust_forwarded_for)
        if not await runtime.limiter.allow(ip):
            correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
            logger.warning(
                "rate_limit_exceeded",
                rate_limit_key=ip,
                path=request.url.path,
                method=request.method,
            )
            response = service_error_response(RateLimitedError("rate limit exceeded"))
            response.headers["Retry-After"] = str(max(1, int(round(1 / settings.rate_limit_rps))))
            return finish_early_response(request, response, correlation_id)
        return await call_next(request)

    register_exception_handlers(app)
    app.include_router(auth_router)
    app.include_router(patients_router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        return {
            "status": "healthy",
            "version": __version__,
            "rate_limit_entries": len(runtime.limiter),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "clinicrecords.app:create_app",
        factory=True,
        host=settings.server_host,
        port=settings.server_port,
    )


if __name__ == "__main__":
    main()
