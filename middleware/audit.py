"""
middleware/audit.py -- Auditor stage: record an "api" event per request.
"""

from __future__ import annotations

import logging
import re

from starlette.concurrency import run_in_threadpool

logger = logging.getLogger("crmctl.middleware.audit")


class Auditor:
    def __init__(self, excludes=()) -> None:
        # re.error on a bad pattern surfaces at startup, not per request.
        self.excludes = [re.compile(pattern) for pattern in excludes]

    def excluded(self, path: str) -> bool:
        return any(pattern.search(path) for pattern in self.excludes)

    async def dispatch(self, request, call_next):
        username = getattr(request.state, "username", "")
        path = request.url.path
        if username and path and not self.excluded(path):
            manager = request.app.state.manager
            await run_in_threadpool(
                manager.log_event,
                "api",
                f"{request.method} {path}",
                ["api", request.method.lower()],
                username,
            )
        logger.debug("%s: %s", request.method, path)
        return await call_next(request)
