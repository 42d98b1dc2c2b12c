from __future__ import annotations

from fastapi import FastAPI

from sdkvm.api.endpoints import cache, engines, forks, health, installs, releases
from sdkvm.api.endpoints import metrics_export
from sdkvm.api.errors import sdk_error_handler
from sdkvm.api.middleware.error_shaping import SafeErrorMiddleware
from sdkvm.api.middleware.request_id import RequestIdMiddleware
from sdkvm.core.errors import SdkError

app = FastAPI(
    title="sdkvm API",
    version="0.1.0",
)

# ------------------------------------------------------------
# Middleware stack
# Starlette reverses add_middleware order: the LAST call is the OUTERMOST wrapper.
#   SafeErrorMiddleware -> RequestIdMiddleware -> handler
# ------------------------------------------------------------
app.add_middleware(RequestIdMiddleware)
app.add_middleware(SafeErrorMiddleware)

app.add_exception_handler(SdkError, sdk_error_handler)

app.include_router(health.router)
app.include_router(metrics_export.router)
app.include_router(releases.router)
app.include_router(installs.router)
app.include_router(engines.router)
app.include_router(forks.router)
app.include_router(cache.router)

