"""
auth/authenticator.py -- Pluggable credential verification.

Pattern: Strategy. The Manager holds exactly one Authenticator and never
inspects its concrete type. Variant-specific behaviour is exposed through
capabilities every variant implements:

  needs_password_hash   -- the Manager must load the account's stored hash
                           and pass it to authenticate() (builtin only).
  provisioning_policy() -- whether a successful login for an unknown user
                           should create a local account (LDAP only).

Layer rule: no imports from api/, manager/, middleware/ or store/.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from auth.models import NO_PROVISIONING, ProvisioningPolicy
from auth.tokens import verify_password
from core.config import AuthSection

logger = logging.getLogger("crmctl.auth")


class Authenticator(ABC):
    name: str = ""
    needs_password_hash: bool = False

    @abstractmethod
    def authenticate(self, username: str, password: str, password_hash: str) -> bool:
        """Return True when the credentials are valid.

        Raise core.errors.AuthenticatorError when the backend itself fails;
        a plain False means the credentials were rejected.
        """

    def provisioning_policy(self) -> ProvisioningPolicy:
        return NO_PROVISIONING


class BuiltinAuthenticator(Authenticator):
    """Compares the password against the account's bcrypt hash."""

    name = "builtin"
    needs_password_hash = True

    def authenticate(self, username: str, password: str, password_hash: str) -> bool:
        if not password_hash:
            return False
        return verify_password(password, password_hash)


def build_authenticator(cfg: AuthSection) -> Authenticator:
    """Construct the authenticator named by the [auth] config section."""
    if cfg.authenticator == "ldap":
        from auth.ldap import LdapAuthenticator

        logger.info("Using LDAP authenticator (server=%s)", cfg.ldap_server)
        return LdapAuthenticator(
            server=cfg.ldap_server,
            base_dn=cfg.ldap_base_dn,
            autocreate_users=cfg.ldap_autocreate_users,
            default_access_level=cfg.ldap_default_access_level,
            timeout=cfg.ldap_timeout,
        )
    logger.info("Using builtin authenticator")
    return BuiltinAuthenticator()
