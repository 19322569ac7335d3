"""
store/sql.py -- SQLAlchemy Core persistence for accounts, events, service keys
and (when no key-value store is configured) auth tokens.

Pattern: Repository + Data Mapper. SQLStore is the repository; the _row_to_*
functions are the mappers. The Manager never touches SQL directly.

Backends: MySQL (mysqlclient driver) when the [mysql] section is complete,
otherwise a local SQLite file. Tests use named shared-memory SQLite URIs.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Only digests of auth tokens and service keys are stored.

Layer rule: no imports from api/, manager/ or middleware/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from core.models import Account, AuthToken, Event, ServiceKey, now_utc

logger = logging.getLogger("crmctl.store.sql")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for LDAP-provisioned accounts
    Column("roles", Text, nullable=False),  # JSON list of role names
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("created_at", String(40), nullable=False),
)

_events = Table(
    "events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(64), nullable=False),
    Column("time", String(40), nullable=False),
    Column("message", Text, nullable=False),
    Column("username", String(255), nullable=False, server_default=""),
    Column("tags", Text, nullable=False),  # JSON list
)

_service_keys = Table(
    "service_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("description", String(255), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(16), nullable=False),  # display only
    Column("created_at", String(40), nullable=False),
)

_auth_tokens = Table(
    "auth_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("user_agent", Text, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block on writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _iso(value: datetime) -> str:
    # Fixed-width UTC timestamps compare correctly as strings.
    return value.isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SQLStore:
    """Repository for the controller's relational data.

    Usage:
        store = SQLStore("sqlite:///:memory:")
        store.create_account(Account(username="admin", roles=["admin"], password_hash=hash_password("secret")))
        account = store.get_account("admin")
        store.close()
    """

    def __init__(self, db_url: str, timeout: int = 10) -> None:
        connect_args: dict = {}
        engine_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        elif db_url.startswith("mysql"):
            connect_args["connect_timeout"] = timeout
            engine_args.update(pool_pre_ping=True, pool_recycle=3600, pool_timeout=timeout)
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        logger.debug("Relational store ready (%s)", self.engine.url.render_as_string(hide_password=True))

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def count_accounts(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_accounts)).scalar() or 0

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists;
        the Manager turns that into AccountExists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    username=account.username,
                    password_hash=account.password_hash,
                    roles=json.dumps(account.roles),
                    first_name=account.first_name,
                    last_name=account.last_name,
                    created_at=_iso(now_utc()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_account(self, username: str) -> Account | None:
        """Look up an account by exact username. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        with self.engine.connect() as conn:
            rows = conn.execute(_accounts.select().order_by(_accounts.c.username)).fetchall()
        return [_row_to_account(r) for r in rows]

    def update_password(self, username: str, password_hash: str) -> bool:
        """Returns True if a row was updated, False if the username was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.username == username).values(password_hash=password_hash)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_account(self, username: str) -> bool:
        """Delete an account and its auth tokens. Returns False if not found."""
        with self.engine.connect() as conn:
            result = conn.execute(_accounts.delete().where(_accounts.c.username == username))
            conn.execute(_auth_tokens.delete().where(_auth_tokens.c.username == username))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def save_event(self, evt: Event) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _events.insert().values(
                    type=evt.type,
                    time=_iso(evt.time),
                    message=evt.message,
                    username=evt.username,
                    tags=json.dumps(evt.tags),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_events(self, limit: int | None = None) -> list[Event]:
        """Return events newest first; limit=None returns all of them."""
        query = _events.select().order_by(_events.c.id.desc())
        if limit is not None:
            query = query.limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_event(r) for r in rows]

    def purge_events(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_events.delete())
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Service keys
    # ------------------------------------------------------------------

    def create_service_key(self, key: ServiceKey) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _service_keys.insert().values(
                    description=key.description,
                    key_hash=key.key_hash,
                    key_prefix=key.key_prefix,
                    created_at=_iso(now_utc()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_service_key_by_hash(self, key_hash: str) -> ServiceKey | None:
        """O(1) via the UNIQUE index on key_hash."""
        with self.engine.connect() as conn:
            row = conn.execute(_service_keys.select().where(_service_keys.c.key_hash == key_hash)).fetchone()
        return _row_to_service_key(row) if row is not None else None

    def list_service_keys(self) -> list[ServiceKey]:
        with self.engine.connect() as conn:
            rows = conn.execute(_service_keys.select().order_by(_service_keys.c.id)).fetchall()
        return [_row_to_service_key(r) for r in rows]

    def delete_service_key(self, key_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_service_keys.delete().where(_service_keys.c.id == key_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Auth tokens (same interface as store.kv.RedisTokenStore)
    # ------------------------------------------------------------------

    def save_token(self, token_hash: str, token: AuthToken) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _auth_tokens.insert().values(
                    username=token.username,
                    token_hash=token_hash,
                    user_agent=token.user_agent,
                    created_at=_iso(token.created_at),
                    expires_at=_iso(token.expires_at),
                )
            )
            conn.commit()

    def get_token(self, username: str, token_hash: str) -> AuthToken | None:
        """Return the unexpired token with this digest issued to username, else None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _auth_tokens.select().where(
                    (_auth_tokens.c.token_hash == token_hash)
                    & (_auth_tokens.c.username == username)
                    & (_auth_tokens.c.expires_at > _iso(now_utc()))
                )
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def purge_expired_tokens(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_auth_tokens.delete().where(_auth_tokens.c.expires_at <= _iso(now_utc())))
            conn.commit()
        return result.rowcount

    def delete_tokens(self, username: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_auth_tokens.delete().where(_auth_tokens.c.username == username))
            conn.commit()

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        password_hash=row.password_hash,
        roles=json.loads(row.roles),
        first_name=row.first_name,
        last_name=row.last_name,
        created_at=row.created_at,
    )


def _row_to_event(row) -> Event:
    return Event(
        id=row.id,
        type=row.type,
        time=datetime.fromisoformat(row.time),
        message=row.message,
        username=row.username,
        tags=json.loads(row.tags),
    )


def _row_to_service_key(row) -> ServiceKey:
    return ServiceKey(
        id=row.id,
        description=row.description,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        created_at=row.created_at,
    )


def _row_to_token(row) -> AuthToken:
    return AuthToken(
        username=row.username,
        token="",
        user_agent=row.user_agent,
        created_at=datetime.fromisoformat(row.created_at),
        expires_at=datetime.fromisoformat(row.expires_at),
    )
