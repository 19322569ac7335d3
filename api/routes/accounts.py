"""
api/routes/accounts.py -- Account management routes.

Routes (mounted under /api, so every one passes the middleware chain):
  GET    /accounts                -- list accounts
  POST   /accounts                -- create account (201)
  GET    /accounts/{username}     -- fetch one account
  DELETE /accounts/{username}     -- remove one account (204)
  POST   /account/changepassword  -- change the session user's own password

Access control happens in middleware/access.py, not here. Handlers raise
core.errors exceptions; api/main.py renders them.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request, Response
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from api.models import AccountCreate, AccountResponse, NewPassword
from api.routes.auth import decode_credentials
from core.errors import Unauthorized
from core.models import Account
from manager.manager import Manager

logger = logging.getLogger("crmctl.api.accounts")

router = APIRouter()


@router.get("/accounts", response_model=list[AccountResponse])
def list_accounts(request: Request) -> list[AccountResponse]:
    manager: Manager = request.app.state.manager
    return [AccountResponse.from_account(a) for a in manager.accounts()]


@router.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(request: Request, body: AccountCreate) -> AccountResponse:
    """Create an account. Roles must name existing access levels.

    Accounts without a password can only log in through an external
    authenticator (LDAP).
    """
    manager: Manager = request.app.state.manager
    account = Account(
        username=body.username,
        roles=body.roles,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    saved = manager.save_account(account, password=body.password)
    return AccountResponse.from_account(saved)


@router.get("/accounts/{username}", response_model=AccountResponse)
def get_account(request: Request, username: str) -> AccountResponse:
    manager: Manager = request.app.state.manager
    return AccountResponse.from_account(manager.account(username))


@router.delete("/accounts/{username}", status_code=204)
def delete_account(request: Request, username: str) -> Response:
    manager: Manager = request.app.state.manager
    manager.delete_account(username)
    return Response(status_code=204)


def _change_password(manager: Manager, request: Request, password: str) -> None:
    username = manager.session_username(request)
    if not username:
        raise Unauthorized()
    manager.change_password(username, password)


@router.post("/account/changepassword")
async def change_password(request: Request) -> dict:
    """Change the password of the account logged in on this session.

    The username in the body is ignored; only the session decides whose
    password changes.
    """
    creds = decode_credentials(await request.body())
    try:
        new = NewPassword(password=creds.password)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors(include_url=False, include_context=False)) from exc
    await run_in_threadpool(_change_password, request.app.state.manager, request, new.password)
    return {"message": "Password changed."}
