"""
middleware/auth.py -- AuthRequired stage: establish who is calling.

Accepted credentials, checked in order:
  1. client address inside one of app.auth_whitelist_cidrs (no identity)
  2. X-Access-Token: <username>:<token>   (token from POST /auth/login)
  3. X-Service-Key: <key>                  (key from POST /api/servicekeys)
  4. a session cookie whose session holds a username

On success request.state.username and request.state.auth_method are set.
Otherwise the request is answered with 401 before any route or store runs.
"""

from __future__ import annotations

import ipaddress
import logging

from starlette.concurrency import run_in_threadpool

from core.errors import ControllerError, Unauthorized
from middleware.chain import error_response

logger = logging.getLogger("crmctl.middleware.auth")

ACCESS_TOKEN_HEADER = "X-Access-Token"
SERVICE_KEY_HEADER = "X-Service-Key"


class AuthRequired:
    def __init__(self, whitelist_cidrs=()) -> None:
        # ValueError on a malformed CIDR surfaces at startup.
        self.networks = [ipaddress.ip_network(cidr, strict=False) for cidr in whitelist_cidrs]

    def whitelisted(self, host: str) -> bool:
        if not host or not self.networks:
            return False
        try:
            addr = ipaddress.ip_address(host)
        except ValueError:
            return False
        return any(addr in net for net in self.networks)

    def identify(self, manager, request) -> tuple[str, str]:
        """Return (username, auth_method) or raise a ControllerError."""
        header = request.headers.get(ACCESS_TOKEN_HEADER)
        if header:
            username, _, token = header.partition(":")
            manager.verify_auth_token(username, token)
            return username, "token"

        key = request.headers.get(SERVICE_KEY_HEADER)
        if key:
            record = manager.verify_service_key(key)
            return f"servicekey:{record.key_prefix}", "service_key"

        username = manager.session_username(request)
        if username:
            return username, "session"
        raise Unauthorized()

    async def dispatch(self, request, call_next):
        host = request.client.host if request.client else ""
        if self.whitelisted(host):
            request.state.username = ""
            request.state.auth_method = "whitelist"
            return await call_next(request)

        manager = request.app.state.manager
        try:
            username, method = await run_in_threadpool(self.identify, manager, request)
        except ControllerError as exc:
            logger.info("Rejected %s %s from %s: %s", request.method, request.url.path, host, exc.code)
            return error_response(exc)

        request.state.username = username
        request.state.auth_method = method
        return await call_next(request)
