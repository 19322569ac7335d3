"""
manager/manager.py -- The controller facade.

Manager is the single point of access the HTTP layer and the middleware use
for authentication, sessions, accounts, tokens, service keys and audit
events. It owns its collaborators, which are built from configuration by
api/main.py and passed in explicitly:

  store          -- store.sql.SQLStore (accounts, events, service keys)
  authenticator  -- auth.authenticator.Authenticator (builtin or LDAP)
  sessions       -- store.sessions.SessionStore, or None when [session] is blank
  tokens         -- store.kv.RedisTokenStore, or None to keep tokens in `store`

All methods are synchronous and safe to call from worker threads: every
collaborator is thread safe by contract.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth.authenticator import Authenticator
from auth.models import ACL, default_acls
from auth.tokens import digest, generate_auth_token, generate_service_key, hash_password
from core.errors import (
    AccountDoesNotExist,
    AccountExists,
    InvalidAuthToken,
    InvalidServiceKey,
    LoginFailure,
    RoleDoesNotExist,
    ServiceKeyDoesNotExist,
)
from core.models import Account, AuthToken, Event, ServiceKey, now_utc
from store.sessions import Session, SessionStore
from store.sql import SQLStore

logger = logging.getLogger("crmctl.manager")

DEFAULT_ADMIN_USERNAME = "admin"


class Manager:
    def __init__(
        self,
        store: SQLStore,
        authenticator: Authenticator,
        secret_key: str,
        sessions: SessionStore | None = None,
        tokens=None,
        token_lifetime: int = 24 * 60 * 60,
    ) -> None:
        self.store = store
        self.authenticator = authenticator
        self.sessions = sessions
        self.tokens = tokens if tokens is not None else store
        self.token_lifetime = token_lifetime
        self._secret_key = secret_key

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def get_authenticator(self) -> Authenticator:
        return self.authenticator

    def authenticate(self, username: str, password: str) -> bool:
        """Verify credentials. Returns True or raises LoginFailure.

        Authenticators that check a local hash get the account's stored hash;
        an unknown username fails here without reaching the authenticator.
        Others receive an empty hash. AuthenticatorError (backend down)
        propagates unchanged so callers can tell it apart from bad credentials.
        """
        password_hash = ""
        if self.authenticator.needs_password_hash:
            try:
                account = self.account(username)
            except AccountDoesNotExist as exc:
                logger.warning("login: no account for %s", username)
                raise LoginFailure() from exc
            password_hash = account.password_hash or ""

        if not self.authenticator.authenticate(username, password, password_hash):
            logger.warning("login: %s authenticator rejected %s", self.authenticator.name, username)
            raise LoginFailure()
        return True

    def new_auth_token(self, username: str, user_agent: str) -> AuthToken:
        """Issue a token for username. The returned instance carries the raw token."""
        raw = generate_auth_token()
        issued = now_utc()
        token = AuthToken(
            username=username,
            token=raw,
            user_agent=user_agent,
            created_at=issued,
            expires_at=issued + timedelta(seconds=self.token_lifetime),
        )
        self.tokens.save_token(digest(self._secret_key, raw), token)
        logger.debug("issued auth token for %s (%s)", username, user_agent)
        return token

    def verify_auth_token(self, username: str, token: str) -> None:
        """Raise InvalidAuthToken unless token is live and was issued to username."""
        if not username or not token:
            raise InvalidAuthToken()
        if self.tokens.get_token(username, digest(self._secret_key, token)) is None:
            raise InvalidAuthToken()

    def change_password(self, username: str, password: str) -> None:
        if not self.store.update_password(username, hash_password(password)):
            raise AccountDoesNotExist()
        logger.info("password changed for %s", username)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def accounts(self) -> list[Account]:
        return self.store.list_accounts()

    def account(self, username: str) -> Account:
        account = self.store.get_account(username)
        if account is None:
            raise AccountDoesNotExist()
        return account

    def save_account(self, account: Account, password: str | None = None) -> Account:
        """Create account. Raises AccountExists or RoleDoesNotExist.

        When password is given it is hashed into account.password_hash.
        """
        for name in account.roles:
            self.role(name)
        if self.store.get_account(account.username) is not None:
            raise AccountExists()
        if password:
            account.password_hash = hash_password(password)
        try:
            self.store.create_account(account)
        except IntegrityError as exc:
            # A concurrent request created the same username first.
            raise AccountExists() from exc
        logger.info("account created: %s roles=%s", account.username, account.roles)
        return self.account(account.username)

    def delete_account(self, username: str) -> None:
        if not self.store.delete_account(username):
            raise AccountDoesNotExist()
        if self.tokens is not self.store:
            self.tokens.delete_tokens(username)
        logger.info("account deleted: %s", username)

    def ensure_admin(self, password: str) -> bool:
        """Seed the admin account on an empty store. Returns True if one was created."""
        if not password or self.store.count_accounts() > 0:
            return False
        self.save_account(Account(username=DEFAULT_ADMIN_USERNAME, roles=["admin"]), password=password)
        return True

    # ------------------------------------------------------------------
    # Access levels
    # ------------------------------------------------------------------

    def roles(self) -> list[ACL]:
        return default_acls()

    def role(self, name: str) -> ACL:
        for acl in self.roles():
            if acl.role_name == name:
                return acl
        raise RoleDoesNotExist()

    def can_access(self, account: Account, method: str, path: str) -> bool:
        """True when any of the account's roles allows method on path."""
        for name in account.roles:
            try:
                acl = self.role(name)
            except RoleDoesNotExist:
                logger.warning("account %s references unknown role %s", account.username, name)
                continue
            if acl.allows(method, path):
                return True
        return False

    # ------------------------------------------------------------------
    # Service keys
    # ------------------------------------------------------------------

    def new_service_key(self, description: str) -> tuple[str, ServiceKey]:
        """Create a service key. Returns (raw_key, record); the raw key is not stored."""
        raw = generate_service_key()
        key = ServiceKey(description=description, key_hash=digest(self._secret_key, raw), key_prefix=raw[:12])
        key.id = self.store.create_service_key(key)
        logger.info("service key created: %s (%s)", key.key_prefix, description)
        return raw, key

    def service_keys(self) -> list[ServiceKey]:
        return self.store.list_service_keys()

    def delete_service_key(self, key_id: int) -> None:
        if not self.store.delete_service_key(key_id):
            raise ServiceKeyDoesNotExist()

    def verify_service_key(self, key: str) -> ServiceKey:
        if not key:
            raise InvalidServiceKey()
        record = self.store.get_service_key_by_hash(digest(self._secret_key, key))
        if record is None:
            raise InvalidServiceKey()
        return record

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def save_event(self, evt: Event) -> None:
        evt.id = self.store.save_event(evt)

    def events(self, limit: int | None = None) -> list[Event]:
        return self.store.list_events(limit)

    def purge_events(self) -> int:
        return self.store.purge_events()

    def log_event(self, event_type: str, message: str, tags: list[str] | None = None, username: str = "") -> None:
        """Record an audit event. Failures are logged, never raised."""
        evt = Event(type=event_type, time=now_utc(), message=message, username=username, tags=list(tags or []))
        try:
            self.save_event(evt)
        except Exception:
            logger.exception("logging event error: %s %s", event_type, message)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def session(self, request) -> Session | None:
        """Return the request's session (new if it has none), or None without a session store."""
        if self.sessions is None:
            return None
        return self.sessions.start(request.cookies.get(self.sessions.cookie_name))

    def new_session(self, request) -> Session | None:
        """Discard the request's session, if any, and start one under a fresh id.

        Called on login so an id issued before authentication never carries
        the authenticated identity.
        """
        if self.sessions is None:
            return None
        old_id = request.cookies.get(self.sessions.cookie_name)
        if old_id:
            self.sessions.destroy(old_id)
        return self.sessions.start(None)

    def session_username(self, request) -> str:
        session = self.session(request)
        if session is None or session.is_new:
            return ""
        return session.get("username", "") or ""

    def save_session(self, session: Session, response) -> None:
        if self.sessions is None:
            return
        self.sessions.save(session)
        self.sessions.set_cookie(response, session)

    def gc_sessions(self) -> int:
        removed = 0 if self.sessions is None else self.sessions.gc()
        removed += self.tokens.purge_expired_tokens()
        return removed

    def close(self) -> None:
        self.store.close()
