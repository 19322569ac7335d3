"""
tests/test_ldap.py -- LDAP authenticator with ldap3 mocked out.

No directory server is contacted: auth.ldap.Server and auth.ldap.Connection
are patched, so these tests check what the authenticator asks ldap3 to do.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from ldap3.core.exceptions import LDAPSocketOpenError

from auth.authenticator import BuiltinAuthenticator, build_authenticator
from auth.ldap import LdapAuthenticator
from core.config import AuthSection
from core.errors import AuthenticatorError


@pytest.fixture
def ldap_auth() -> LdapAuthenticator:
    return LdapAuthenticator("ldap://dir.example.com", "ou=people,dc=example,dc=com", timeout=2.0)


def test_successful_bind(ldap_auth) -> None:
    with patch("auth.ldap.Server") as server_cls, patch("auth.ldap.Connection") as conn_cls:
        conn_cls.return_value.bind.return_value = True
        assert ldap_auth.authenticate("alice", "pw", "") is True

    server_cls.assert_called_once_with("ldap://dir.example.com", connect_timeout=2.0)
    _, kwargs = conn_cls.call_args
    assert kwargs["user"] == "cn=alice,ou=people,dc=example,dc=com"
    assert kwargs["password"] == "pw"
    conn_cls.return_value.unbind.assert_called_once()


def test_rejected_bind(ldap_auth) -> None:
    with patch("auth.ldap.Server"), patch("auth.ldap.Connection") as conn_cls:
        conn_cls.return_value.bind.return_value = False
        assert ldap_auth.authenticate("alice", "bad", "") is False


def test_empty_password_never_binds(ldap_auth) -> None:
    with patch("auth.ldap.Server"), patch("auth.ldap.Connection") as conn_cls:
        assert ldap_auth.authenticate("alice", "", "") is False
    conn_cls.assert_not_called()


def test_server_failure_raises_authenticator_error(ldap_auth) -> None:
    with patch("auth.ldap.Server"), patch("auth.ldap.Connection") as conn_cls:
        conn_cls.return_value.bind.side_effect = LDAPSocketOpenError("unreachable")
        with pytest.raises(AuthenticatorError):
            ldap_auth.authenticate("alice", "pw", "")
        conn_cls.return_value.unbind.assert_called_once()


def test_username_is_escaped_in_dn(ldap_auth) -> None:
    assert ldap_auth.user_dn("a,b=c") == "cn=a\\,b\\=c,ou=people,dc=example,dc=com"


def test_provisioning_policy() -> None:
    assert LdapAuthenticator("s", "dc=x").provisioning_policy().autocreate is False
    policy = LdapAuthenticator("s", "dc=x", autocreate_users=True, default_access_level="events:ro").provisioning_policy()
    assert policy.autocreate is True
    assert policy.default_role == "events:ro"


def test_builtin_has_no_provisioning() -> None:
    assert BuiltinAuthenticator().provisioning_policy().autocreate is False


def test_build_authenticator_from_config() -> None:
    assert isinstance(build_authenticator(AuthSection()), BuiltinAuthenticator)
    ldap = build_authenticator(AuthSection(authenticator="ldap", ldap_server="ldap://x", ldap_base_dn="dc=x"))
    assert isinstance(ldap, LdapAuthenticator)
    assert ldap.name == "ldap"
    assert not ldap.needs_password_hash


def test_bind_returns_mock_result_type(ldap_auth) -> None:
    # ldap3 may return truthy non-bool values; the authenticator normalises them.
    with patch("auth.ldap.Server"), patch("auth.ldap.Connection") as conn_cls:
        conn_cls.return_value.bind.return_value = MagicMock()
        assert ldap_auth.authenticate("alice", "pw", "") is True


def test_unknown_default_access_level_is_rejected() -> None:
    with pytest.raises(ValueError, match="nosuchrole"):
        LdapAuthenticator("ldap://x", "dc=x", autocreate_users=True, default_access_level="nosuchrole")


def test_build_authenticator_rejects_unknown_default_access_level() -> None:
    cfg = AuthSection(authenticator="ldap", ldap_server="ldap://x", ldap_base_dn="dc=x", ldap_default_access_level="admn")
    with pytest.raises(ValueError):
        build_authenticator(cfg)
