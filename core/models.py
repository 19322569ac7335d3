"""
core/models.py -- Domain dataclasses shared by every layer.

Pattern: Data class (pure data container, zero logic beyond small helpers).
Stores and the Manager do the work; api/models.py owns the HTTP contract.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    """An identity allowed to use the controller.

    password_hash is None for accounts provisioned from LDAP -- they never
    authenticate against a local hash.
    """

    username: str
    roles: list[str] = field(default_factory=list)
    password_hash: str | None = None
    first_name: str = ""
    last_name: str = ""
    id: int | None = None
    created_at: str | None = None


@dataclass
class AuthToken:
    """An opaque login token bound to one username and client.

    `token` holds the raw value only on the instance returned at issue time;
    stores persist the digest and hand back instances with token="".
    """

    username: str
    token: str
    user_agent: str
    created_at: datetime
    expires_at: datetime

    @property
    def expired(self) -> bool:
        return self.expires_at <= now_utc()


@dataclass
class ServiceKey:
    """A long-lived credential for non-interactive clients.

    Only key_hash (HMAC-SHA256 of the raw key) and key_prefix are persisted;
    the raw key is returned once by Manager.new_service_key().
    """

    description: str
    key_hash: str
    key_prefix: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class Event:
    type: str
    time: datetime
    message: str
    username: str = ""
    tags: list[str] = field(default_factory=list)
    id: int | None = None
