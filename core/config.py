"""
core/config.py -- Centralized controller configuration via pydantic-settings.

All configuration reads for crmctl happen here. No module should call
os.getenv() or parse config/config.ini itself -- import get_settings() instead.

Sources, highest priority first:
  1. Keyword arguments passed to Settings(...) (tests, the CLI).
  2. Environment variables: CRMCTL_<SECTION>__<KEY>, e.g. CRMCTL_REDIS__HOST.
  3. A .env file in the working directory (same names).
  4. The INI file at config/config.ini, or the path in CRMCTL_CONFIG.

The INI file has one section per collaborator (app, auth, session, redis,
mysql). Blank values fall back to the defaults below. A collaborator whose
required keys are blank is disabled -- see the `configured` properties.

List keys are comma-separated in the INI file but JSON arrays in the
environment, e.g. CRMCTL_APP__AUDIT_EXCLUDES='["^/api/events"]'.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, manager/, middleware/ or store/.
"""

from __future__ import annotations

import configparser
import logging
import os
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, field_validator, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

logger = logging.getLogger("crmctl.config")

DEFAULT_CONFIG_PATH = "config/config.ini"
DEFAULT_LISTEN = ":5525"
DEFAULT_SQLITE_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'crmctl.db'}"


def _split_list(value: Any) -> Any:
    """Accept comma-separated strings (INI style) for list fields."""
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


CommaList = Annotated[list[str], BeforeValidator(_split_list)]


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class AppSection(BaseModel):
    host: str = ""
    debug: bool = False
    # Empty string is the sentinel for "not configured". Settings' validator
    # either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    token_lifetime: int = 24 * 60 * 60
    login_rate_limit: str = "10/minute"
    auth_whitelist_cidrs: CommaList = []
    audit_excludes: CommaList = []
    cors: bool = False
    tls_ca_cert: str = ""
    tls_cert: str = ""
    tls_key: str = ""
    allow_insecure: bool = False

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_cert and self.tls_key)


class AuthSection(BaseModel):
    authenticator: str = "builtin"
    # Seeds an "admin" account on an empty account store when set.
    admin_password: str = ""
    ldap_server: str = ""
    ldap_base_dn: str = ""
    ldap_autocreate_users: bool = False
    ldap_default_access_level: str = "readonly"
    ldap_timeout: float = 5.0

    @field_validator("authenticator")
    @classmethod
    def known_authenticator(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("builtin", "ldap"):
            raise ValueError(f"unknown authenticator {value!r}; expected 'builtin' or 'ldap'")
        return value


class SessionSection(BaseModel):
    cookiename: str = "crmctlsessionid"
    gclifetime: int = 3600
    maxpoolsize: int = 100
    host: str = ""
    port: int | None = None
    password: str = ""
    timeout: float = 5.0

    @property
    def configured(self) -> bool:
        return bool(self.host and self.port and self.password)


class RedisSection(BaseModel):
    host: str = ""
    port: int | None = None
    password: str = ""
    timeout: float = 5.0

    @property
    def configured(self) -> bool:
        return bool(self.host and self.port and self.password)


class MySQLSection(BaseModel):
    user: str = ""
    password: str = ""
    host: str = ""
    port: int | None = None
    dbname: str = ""
    charset: str = "utf8"
    timeout: int = 10

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password and self.host and self.port and self.dbname)

    @property
    def url(self) -> str:
        return f"mysql://{self.user}:{self.password}@{self.host}:{self.port}/{self.dbname}?charset={self.charset}"


# ---------------------------------------------------------------------------
# INI source
# ---------------------------------------------------------------------------


class IniSettingsSource(PydanticBaseSettingsSource):
    """Settings source reading one INI section per top-level Settings field.

    A missing file yields no values, so Settings() works in tests and on a
    fresh checkout. Blank keys are dropped so the field defaults apply.
    """

    def __init__(self, settings_cls: type[BaseSettings], ini_file: str) -> None:
        super().__init__(settings_cls)
        self.ini_file = ini_file
        self._sections = self._read()

    def _read(self) -> dict[str, dict[str, str]]:
        parser = configparser.ConfigParser(interpolation=None)
        if not parser.read(self.ini_file, encoding="utf-8"):
            logger.debug("No config file at %s; using defaults", self.ini_file)
            return {}
        return {
            section: {key: value for key, value in parser.items(section) if value.strip() != ""}
            for section in parser.sections()
        }

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._sections.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        return {name: values for name, values in self._sections.items() if name in self.settings_cls.model_fields}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Controller settings.

    All fields have defaults so Settings() can be instantiated in test
    environments without a config file. The model_validator enforces the
    production-safety rule for the secret key at startup.
    """

    model_config = SettingsConfigDict(
        env_prefix="CRMCTL_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSection = AppSection()
    auth: AuthSection = AuthSection()
    session: SessionSection = SessionSection()
    redis: RedisSection = RedisSection()
    mysql: MySQLSection = MySQLSection()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        ini_file = os.environ.get("CRMCTL_CONFIG", DEFAULT_CONFIG_PATH)
        return init_settings, env_settings, dotenv_settings, IniSettingsSource(settings_cls, ini_file)

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Require a secret key outside debug mode.

        The key feeds the HMAC digests of auth tokens and service keys, so a
        random key in production would invalidate every issued token on
        restart. Debug mode generates one with a warning.
        """
        if not self.app.secret_key:
            if self.app.debug:
                self.app.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated secret key. Auth tokens will not survive a restart.")
            else:
                raise ValueError(
                    "app.secret_key is required unless app.debug is enabled. "
                    "Set it in config/config.ini or CRMCTL_APP__SECRET_KEY."
                )
        if len(self.app.secret_key) < 32:
            raise ValueError("app.secret_key must be at least 32 characters.")
        return self

    @property
    def database_url(self) -> str:
        """MySQL when configured, otherwise the local SQLite file."""
        return self.mysql.url if self.mysql.configured else DEFAULT_SQLITE_URL


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    In tests: call get_settings.cache_clear() between cases that change the
    environment, or build Settings(...) directly.
    """
    return Settings()
