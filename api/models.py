"""
API request and response models for the crmctl REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: core/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import ACL
from core.models import Account, Event, ServiceKey

# Usernames end up in DNs, redis keys and URL paths.
USERNAME_PATTERN = r"^[A-Za-z0-9_.@-]+$"

BCRYPT_MAX_BYTES = 72
MIN_PASSWORD_LENGTH = 8


def _fits_bcrypt(value: Optional[str]) -> Optional[str]:
    """Reject passwords bcrypt cannot hash. Its limit is in bytes, not characters."""
    if value is not None and len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValueError(f"password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class Credentials(BaseModel):
    """Body of POST /auth/login and POST /api/account/changepassword."""

    username: str
    # Strength rules live in NewPassword; a wrong login password answers 403.
    password: str = Field(max_length=BCRYPT_MAX_BYTES)


class AccountCreate(BaseModel):
    """Request body for POST /api/accounts."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255, pattern=USERNAME_PATTERN)
    password: Optional[str] = Field(default=None, min_length=MIN_PASSWORD_LENGTH, max_length=BCRYPT_MAX_BYTES)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    roles: list[str] = Field(default_factory=list, max_length=20)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: Optional[str]) -> Optional[str]:
        return _fits_bcrypt(value)


class NewPassword(BaseModel):
    """Policy a replacement password must meet; the same rules as AccountCreate."""

    password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=BCRYPT_MAX_BYTES)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: Optional[str]) -> Optional[str]:
        return _fits_bcrypt(value)


class ServiceKeyCreate(BaseModel):
    """Request body for POST /api/servicekeys."""

    model_config = ConfigDict(str_strip_whitespace=True)

    description: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public view of an account. The password hash never leaves the server."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    username: str
    first_name: str
    last_name: str
    roles: list[str]
    created_at: Optional[str]

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            username=account.username,
            first_name=account.first_name,
            last_name=account.last_name,
            roles=list(account.roles),
            created_at=account.created_at,
        )


class LoginResponse(BaseModel):
    """Response for POST /auth/login.

    Clients send the token back as `X-Access-Token: <username>:<auth_token>`.
    """

    model_config = ConfigDict(frozen=True)

    username: str
    auth_token: str
    expires_at: datetime


class AccessRuleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    methods: list[str]


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    role_name: str
    description: str
    rules: list[AccessRuleResponse]

    @classmethod
    def from_acl(cls, acl: ACL) -> "RoleResponse":
        return cls(
            role_name=acl.role_name,
            description=acl.description,
            rules=[AccessRuleResponse(path=r.path, methods=list(r.methods)) for r in acl.rules],
        )


class EventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    type: str
    time: datetime
    message: str
    username: str
    tags: list[str]

    @classmethod
    def from_event(cls, evt: Event) -> "EventResponse":
        return cls(
            id=evt.id,
            type=evt.type,
            time=evt.time,
            message=evt.message,
            username=evt.username,
            tags=list(evt.tags),
        )


class PurgeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    deleted: int


class ServiceKeyResponse(BaseModel):
    """A service key as listed -- prefix only, never the key itself."""

    model_config = ConfigDict(frozen=True)

    id: int
    description: str
    key_prefix: str
    created_at: Optional[str]

    @classmethod
    def from_service_key(cls, key: ServiceKey) -> "ServiceKeyResponse":
        return cls(id=key.id, description=key.description, key_prefix=key.key_prefix, created_at=key.created_at)


class ServiceKeyCreatedResponse(ServiceKeyResponse):
    """Returned once by POST /api/servicekeys. `key` is not retrievable later."""

    key: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
