"""
middleware/chain.py -- Ordered request interceptors for the /api/ surface.

Pattern: Chain of Responsibility. MiddlewareChain is registered once with
app.middleware("http") and runs its stages in order for every request under
its prefix. A stage is any object with

    async def dispatch(self, request, call_next) -> Response

that either awaits call_next(request) to continue or returns its own
response to stop the chain. Stages reach the Manager through
request.app.state.manager and record the caller's identity on request.state.

Requests outside the prefix (/auth/login, /health) skip every stage.
"""

from __future__ import annotations

import logging
from functools import partial

from fastapi.responses import JSONResponse

from core.errors import ControllerError

logger = logging.getLogger("crmctl.middleware")

API_PREFIX = "/api/"


def error_response(exc: ControllerError, detail: str | None = None) -> JSONResponse:
    """Render a ControllerError as the standard error envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message, "detail": detail}},
    )


class MiddlewareChain:
    def __init__(self, stages, prefix: str = API_PREFIX) -> None:
        self.prefix = prefix
        self.stages = []
        seen: set[type] = set()
        for stage in stages:
            # Each stage type runs at most once per request.
            if type(stage) in seen:
                logger.warning("Dropping duplicate %s stage", type(stage).__name__)
                continue
            seen.add(type(stage))
            self.stages.append(stage)

    async def __call__(self, request, call_next):
        if not request.url.path.startswith(self.prefix):
            return await call_next(request)
        handler = call_next
        for stage in reversed(self.stages):
            handler = partial(stage.dispatch, call_next=handler)
        return await handler(request)
