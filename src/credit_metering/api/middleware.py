"""
Request context middleware.

Assigns every request a correlation id (from ``X-Request-Id`` when the
client sends one), exposes it on ``request.state.correlation_id`` for the
ledger, echoes it on the response and logs the request outcome.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: Any,
        *,
        request_id_header: str = "X-Request-Id",
        user_id_header: str = "X-User-Id",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.request_id_header = request_id_header
        self.user_id_header = user_id_header
        self.skip_paths = tuple(skip_paths or ())

    def _should_log(self, path: str) -> bool:
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        correlation_id = request.headers.get(self.request_id_header) or uuid.uuid4().hex
        request.state.correlation_id = correlation_id

        started = time.perf_counter()
        response = await call_next(request)
        response.headers[self.request_id_header] = correlation_id

        if self._should_log(request.url.path):
            logger.info(
                "%s %s -> %s (%.1f ms)",
                request.method,
                request.url.path,
                response.status_code,
                (time.perf_counter() - started) * 1000,
                extra={
                    "correlation_id": correlation_id,
                    "user_id": request.headers.get(self.user_id_header),
                },
            )
        return response
