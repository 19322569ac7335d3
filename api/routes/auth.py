"""
api/routes/auth.py -- Login endpoint.

Routes:
  POST /auth/login  -- public, rate limited; exchanges credentials for a token

Flow:
  1. Decode {"username", "password"}. A payload that does not decode answers
     500 decode_error (existing clients rely on that status).
  2. Manager.authenticate(); a rejection answers 403 login_failure with the
     same message for unknown users and wrong passwords.
  3. If the authenticator provisions accounts (LDAP autocreate), create a
     local account with the default role on first login.
  4. Issue an auth token bound to the username and User-Agent. With a session
     store configured any presented session is discarded and a fresh one, recording
     the username, is set as the cookie.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, login_rate_limit
from api.models import Credentials, LoginResponse
from core.errors import AccountDoesNotExist, AccountExists, CredentialsDecodeError
from core.models import Account, AuthToken
from manager.manager import Manager

logger = logging.getLogger("crmctl.api.auth")

router = APIRouter()


def decode_credentials(raw: bytes) -> Credentials:
    try:
        return Credentials.model_validate_json(raw)
    except ValidationError as exc:
        logger.warning("Could not decode credentials: %d error(s)", exc.error_count())
        raise CredentialsDecodeError() from exc


def _provision(manager: Manager, username: str) -> None:
    policy = manager.get_authenticator().provisioning_policy()
    if not policy.autocreate:
        return
    try:
        manager.account(username)
        return
    except AccountDoesNotExist:
        pass
    try:
        manager.save_account(Account(username=username, roles=[policy.default_role]))
        logger.info("Provisioned account %s with role %s", username, policy.default_role)
    except AccountExists:
        logger.debug("Account %s was provisioned by a concurrent login", username)


def _login(manager: Manager, creds: Credentials, user_agent: str) -> AuthToken:
    manager.authenticate(creds.username, creds.password)
    _provision(manager, creds.username)
    return manager.new_auth_token(creds.username, user_agent)


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
async def login(request: Request) -> JSONResponse:
    """Authenticate with username and password; return an auth token."""
    creds = decode_credentials(await request.body())
    manager: Manager = request.app.state.manager
    token = await run_in_threadpool(_login, manager, creds, request.headers.get("user-agent", ""))

    resp = JSONResponse(
        content=LoginResponse(
            username=token.username,
            auth_token=token.token,
            expires_at=token.expires_at,
        ).model_dump(mode="json"),
    )
    session = await run_in_threadpool(manager.new_session, request)
    if session is not None:
        session.set("username", token.username)
        await run_in_threadpool(manager.save_session, session, resp)
    resp.headers["Cache-Control"] = "no-store"
    return resp
