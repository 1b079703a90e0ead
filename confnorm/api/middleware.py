from __future__ import annotations

import logging
import re
import time
from typing import Callable, Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

log = logging.getLogger("confnorm.api")

REQUEST_ID_HEADER = "X-Request-ID"
ELAPSED_HEADER = "X-Elapsed-Ms"

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def accept_request_id(candidate: Optional[str]) -> str:
    """Reuse a caller's correlation id when it is a plain token, else mint one."""

    if candidate and _REQUEST_ID_RE.match(candidate):
        return candidate
    return uuid4().hex


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Correlate a conversion request with its logs and progress stream.

    Security notes:
    - Only `[A-Za-z0-9._:-]` ids up to 128 chars are echoed back; anything else
      is replaced to keep log lines single-line and header-safe.

    """

    def __init__(self, app, *, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self._header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable):
        rid = accept_request_id(request.headers.get(self._header_name))
        request.state.request_id = rid
        response: Response = await call_next(request)
        response.headers[self._header_name] = rid
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """One `api_request` record per request plus an elapsed-time header.

    Upload size comes from Content-Length only; bodies, file names and
    converted output are never read here.

    """

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.monotonic()
        response: Optional[Response] = None
        try:
            response = await call_next(request)
            return response
        finally:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            if response is not None:
                response.headers[ELAPSED_HEADER] = str(elapsed_ms)
            declared = request.headers.get("content-length")
            log.info(
                "api_request",
                extra={
                    "request_id": getattr(request.state, "request_id", None),
                    "method": request.method,
                    "route": request.url.path,
                    "status_code": response.status_code if response is not None else 500,
                    "request_bytes": int(declared) if declared and declared.isdigit() else None,
                    "elapsed_ms": elapsed_ms,
                },
            )
