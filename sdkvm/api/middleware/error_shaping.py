from __future__ import annotations

import logging
import traceback
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from sdkvm.core.observability.metrics import inc_named

log = logging.getLogger("sdkvm.errors")


class SafeErrorMiddleware(BaseHTTPMiddleware):
    """
    Last line for errors nothing else mapped: the client gets a generic 500
    with its request id, the traceback stays in the server log.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            rid = getattr(request.state, "request_id", None) or request.headers.get("x-request-id")
            inc_named("http_unhandled_errors")
            log.error(
                "Unhandled error: %s rid=%s path=%s\n%s",
                str(e),
                rid,
                request.url.path,
                traceback.format_exc(),
            )
            payload = {"detail": "Internal Server Error", "code": "internal_error"}
            if rid:
                payload["request_id"] = rid
            return JSONResponse(status_code=500, content=payload)
