"""
auth/ldap.py -- LDAP simple-bind authenticator (ldap3).

A login succeeds when the directory accepts a simple bind as
cn=<username>,<base_dn> with the supplied password. The username is escaped
as an RDN value so it cannot inject extra DN components.

Empty passwords are rejected before contacting the server: most directories
treat a bind with a DN and no password as an anonymous bind and report
success.
"""

from __future__ import annotations

import logging

from ldap3 import Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.dn import escape_rdn

from auth.authenticator import Authenticator
from auth.models import ProvisioningPolicy, default_acls
from core.errors import AuthenticatorError

logger = logging.getLogger("crmctl.auth.ldap")


class LdapAuthenticator(Authenticator):
    name = "ldap"

    def __init__(
        self,
        server: str,
        base_dn: str,
        autocreate_users: bool = False,
        default_access_level: str = "readonly",
        timeout: float = 5.0,
    ) -> None:
        roles = [acl.role_name for acl in default_acls()]
        if default_access_level not in roles:
            raise ValueError(f"unknown ldap default access level {default_access_level!r}; expected one of {roles}")
        self.server = server
        self.base_dn = base_dn
        self.autocreate_users = autocreate_users
        self.default_access_level = default_access_level
        self.timeout = timeout

    def user_dn(self, username: str) -> str:
        return f"cn={escape_rdn(username)},{self.base_dn}"

    def authenticate(self, username: str, password: str, password_hash: str) -> bool:
        if not username or not password:
            return False
        server = Server(self.server, connect_timeout=self.timeout)
        conn = Connection(server, user=self.user_dn(username), password=password, receive_timeout=self.timeout)
        try:
            bound = conn.bind()
        except LDAPException as exc:
            logger.error("ldap: bind for %s against %s failed: %s", username, self.server, exc)
            raise AuthenticatorError() from exc
        finally:
            conn.unbind()
        if not bound:
            logger.debug("ldap: bind rejected for %s: %s", username, conn.result)
        return bool(bound)

    def provisioning_policy(self) -> ProvisioningPolicy:
        if not self.autocreate_users:
            return ProvisioningPolicy()
        return ProvisioningPolicy(autocreate=True, default_role=self.default_access_level)
