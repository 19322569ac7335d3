"""
middleware/access.py -- AccessRequired stage: check the caller's access level.

Runs after AuthRequired. Whitelisted and service-key callers are trusted.
Paths under /api/account/ act on the caller's own account and are open to
any authenticated user. Everything else needs a role whose rules allow the
request method on the request path.
"""

from __future__ import annotations

import logging

from starlette.concurrency import run_in_threadpool

from core.errors import AccessDenied, AccountDoesNotExist
from middleware.chain import error_response

logger = logging.getLogger("crmctl.middleware.access")

SELF_SERVICE_PREFIX = "/api/account/"
TRUSTED_METHODS = ("whitelist", "service_key")


class AccessRequired:
    @staticmethod
    def allowed(manager, username: str, method: str, path: str) -> bool:
        try:
            account = manager.account(username)
        except AccountDoesNotExist:
            return False
        return manager.can_access(account, method, path)

    async def dispatch(self, request, call_next):
        auth_method = getattr(request.state, "auth_method", "")
        if auth_method in TRUSTED_METHODS:
            return await call_next(request)

        username = getattr(request.state, "username", "")
        path = request.url.path
        if username and path.startswith(SELF_SERVICE_PREFIX):
            return await call_next(request)

        manager = request.app.state.manager
        if not username or not await run_in_threadpool(self.allowed, manager, username, request.method, path):
            logger.warning("Access denied: %s %s for %r", request.method, path, username)
            return error_response(AccessDenied())
        return await call_next(request)
