from __future__ import annotations

import logging

from fastapi import Request
from starlette.responses import JSONResponse

from sdkvm.core.errors import (
    CatalogError,
    ConfigError,
    DownloadError,
    InstallTimeoutError,
    InvalidVersionError,
    LockContentionError,
    NotInstalledError,
    SdkError,
    UnknownForkError,
)

log = logging.getLogger("sdkvm.errors")

# Most specific first: NotInstalledError is an InvalidVersionError.
_STATUS = (
    (NotInstalledError, 404),
    (UnknownForkError, 404),
    (InvalidVersionError, 400),
    (ConfigError, 400),
    (LockContentionError, 409),
    (DownloadError, 502),
    (CatalogError, 502),
    (InstallTimeoutError, 504),
)


def status_for(err: SdkError) -> int:
    for cls, status in _STATUS:
        if isinstance(err, cls):
            return status
    return 500


async def sdk_error_handler(request: Request, exc: SdkError) -> JSONResponse:
    status = status_for(exc)
    rid = getattr(request.state, "request_id", None)
    if status >= 500:
        log.warning("%s failed: %s (%s) rid=%s", request.url.path, exc, exc.code, rid)

    payload = {"detail": str(exc), "code": exc.code, "details": exc.details}
    if rid:
        payload["request_id"] = rid
    return JSONResponse(status_code=status, content=payload)
