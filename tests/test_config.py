"""
tests/test_config.py -- Settings loading from INI file and environment.

Each test points CRMCTL_CONFIG at its own temporary INI file and clears
the CRMCTL_APP__DEBUG default that conftest sets for the rest of the suite.
"""

from __future__ import annotations

import textwrap

import pytest
from pydantic import ValidationError

from core.config import DEFAULT_SQLITE_URL, Settings, get_settings

SECRET = "0123456789abcdef0123456789abcdef"


@pytest.fixture
def ini(tmp_path, monkeypatch):
    """Write an INI file and make it the active config. Returns the writer."""
    monkeypatch.delenv("CRMCTL_APP__DEBUG", raising=False)
    path = tmp_path / "config.ini"
    monkeypatch.setenv("CRMCTL_CONFIG", str(path))

    def write(body: str) -> None:
        path.write_text(textwrap.dedent(body), encoding="utf-8")

    return write


def test_reads_sections_from_ini(ini) -> None:
    ini(
        f"""
        [app]
        secret_key = {SECRET}
        host = 127.0.0.1:9000
        auth_whitelist_cidrs = 10.0.0.0/8, 192.168.1.0/24
        audit_excludes = ^/api/events,^/api/roles
        cors = true

        [auth]
        authenticator = LDAP
        ldap_server = ldap://dir.example.com
        ldap_autocreate_users = yes

        [session]
        host = localhost
        port = 6379
        password = pw
        """
    )
    settings = Settings()
    assert settings.app.host == "127.0.0.1:9000"
    assert settings.app.auth_whitelist_cidrs == ["10.0.0.0/8", "192.168.1.0/24"]
    assert settings.app.audit_excludes == ["^/api/events", "^/api/roles"]
    assert settings.app.cors is True
    assert settings.auth.authenticator == "ldap"
    assert settings.auth.ldap_autocreate_users is True
    assert settings.session.configured
    assert settings.session.cookiename == "crmctlsessionid"


def test_blank_values_use_defaults(ini) -> None:
    ini(
        f"""
        [app]
        secret_key = {SECRET}
        token_lifetime =

        [session]
        gclifetime =
        host = localhost
        port =
        password = pw

        [redis]
        host =
        """
    )
    settings = Settings()
    assert settings.app.token_lifetime == 24 * 60 * 60
    assert settings.session.gclifetime == 3600
    assert settings.session.maxpoolsize == 100
    assert not settings.session.configured
    assert not settings.redis.configured


def test_environment_overrides_file(ini, monkeypatch) -> None:
    ini(
        f"""
        [app]
        secret_key = {SECRET}
        token_lifetime = 60
        """
    )
    monkeypatch.setenv("CRMCTL_APP__TOKEN_LIFETIME", "120")
    assert Settings().app.token_lifetime == 120


def test_missing_file_uses_defaults(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("CRMCTL_CONFIG", str(tmp_path / "absent.ini"))
    monkeypatch.setenv("CRMCTL_APP__DEBUG", "true")
    settings = Settings()
    assert settings.auth.authenticator == "builtin"
    assert settings.database_url == DEFAULT_SQLITE_URL


def test_secret_key_required_outside_debug(ini) -> None:
    ini("[app]\ndebug = false\n")
    with pytest.raises(ValidationError, match="secret_key is required"):
        Settings()


def test_debug_generates_secret_key(ini) -> None:
    ini("[app]\ndebug = true\n")
    assert len(Settings().app.secret_key) >= 32


def test_short_secret_key_rejected(ini) -> None:
    ini("[app]\nsecret_key = short\n")
    with pytest.raises(ValidationError, match="at least 32"):
        Settings()


def test_unknown_authenticator_rejected(ini) -> None:
    ini(f"[app]\nsecret_key = {SECRET}\n[auth]\nauthenticator = kerberos\n")
    with pytest.raises(ValidationError, match="unknown authenticator"):
        Settings()


def test_mysql_url_when_configured(ini) -> None:
    ini(
        f"""
        [app]
        secret_key = {SECRET}

        [mysql]
        user = crm
        password = pw
        host = db.internal
        port = 3306
        dbname = crm
        """
    )
    settings = Settings()
    assert settings.mysql.configured
    assert settings.database_url == "mysql://crm:pw@db.internal:3306/crm?charset=utf8"


def test_partial_mysql_falls_back_to_sqlite(ini) -> None:
    ini(f"[app]\nsecret_key = {SECRET}\n[mysql]\nuser = crm\nhost = db.internal\n")
    assert Settings().database_url == DEFAULT_SQLITE_URL


def test_tls_enabled_needs_cert_and_key(ini) -> None:
    ini(f"[app]\nsecret_key = {SECRET}\ntls_cert = /etc/crm/cert.pem\n")
    assert not Settings().app.tls_enabled


def test_get_settings_is_cached(monkeypatch) -> None:
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()
