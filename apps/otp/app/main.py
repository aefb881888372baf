import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.trustedhost import TrustedHostMiddleware

from storefront_shared import (
    InvalidCodeError,
    InvalidIdentifierError,
    OTPAlreadyUsedError,
    OTPCooldownError,
    OTPError,
    OTPExpiredError,
    OTPLockoutError,
    OTPNotFoundError,
    OTPService,
)
from storefront_shared.rate_limit import SlidingWindowLimiter

from .config import settings
from .middleware_request_id import RequestIDMiddleware
from .otp_utils import get_otp_service
from .routers import otp as otp_router
from .utils.security import SecurityHeadersMiddleware

logger = logging.getLogger("storefront.app")

REQ = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

_ERROR_STATUS = {
    InvalidIdentifierError: 400,
    InvalidCodeError: 400,
    OTPNotFoundError: 404,
    OTPAlreadyUsedError: 409,
    OTPExpiredError: 410,
    OTPCooldownError: 429,
    OTPLockoutError: 429,
}


def otp_error_response(exc: OTPError) -> JSONResponse:
    details: dict = {}
    headers: dict = {}
    if isinstance(exc, OTPCooldownError):
        details["retryAfterSeconds"] = exc.retry_after
        headers["Retry-After"] = str(exc.retry_after)
    if isinstance(exc, InvalidCodeError):
        details["attemptsRemaining"] = exc.attempts_remaining
    if isinstance(exc, OTPLockoutError):
        details["attemptsRemaining"] = 0
    status = _ERROR_STATUS.get(type(exc), 400)
    return JSONResponse(
        status_code=status,
        content={"error": {"code": exc.code, "message": exc.message, "details": details}},
        headers=headers or None,
    )


async def _purge_loop(service: OTPService, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(service.purge_expired)
        except Exception:
            logger.exception("OTP purge failed")


def create_app(service: Optional[OTPService] = None) -> FastAPI:
    otp_service = service or get_otp_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if settings.OTP_PURGE_INTERVAL_SECS > 0:
            task = asyncio.create_task(_purge_loop(otp_service, settings.OTP_PURGE_INTERVAL_SECS))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    app = FastAPI(title="Storefront OTP API", version="0.1.0", lifespan=lifespan)
    app.state.otp_service = otp_service

    # CORS: avoid browsers blocking preflights if using wildcard origins
    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    allow_credentials = "*" not in allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
    )
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.ALLOWED_HOSTS or ["*"])
    app.add_middleware(
        SlidingWindowLimiter,
        limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
        otp_limit_per_minute=settings.RATE_LIMIT_OTP_PER_MINUTE,
        exclude_paths=["/health", "/metrics", "/docs", "/openapi.json"],
    )

    @app.exception_handler(OTPError)
    async def _otp_error_handler(request: Request, exc: OTPError):
        return otp_error_response(exc)

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        route = getattr(request.scope.get("route"), "path", None) or request.url.path
        REQ.labels(request.method, route, str(response.status_code)).inc()
        REQ_DURATION.labels(request.method, route).observe(duration)
        return response

    @app.get("/health")
    def health():
        ok = app.state.otp_service.store.ping()
        body = {"status": "ok" if ok else "degraded", "env": settings.ENV, "store": app.state.otp_service.cfg.store}
        return JSONResponse(status_code=200 if ok else 503, content=body)

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(otp_router.router)

    @app.get("/", include_in_schema=False)
    def root():
        return {
            "service": app.title,
            "links": {
                "docs": "/docs",
                "health": "/health",
                "metrics": "/metrics",
            },
        }

    return app


app = create_app()
