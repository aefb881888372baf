import json
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


logger = logging.getLogger("storefront.request")

_QUIET_PATHS = frozenset({"/metrics"})


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Echo or mint ``X-Request-ID`` and write one JSON access line per request."""

    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = req_id
        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = req_id
        if request.url.path not in _QUIET_PATHS:
            logger.info(
                json.dumps(
                    {
                        "request_id": req_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status": response.status_code,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                        "client": request.client.host if request.client else None,
                    }
                )
            )
        return response
