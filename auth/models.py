"""
auth/models.py -- Access levels and provisioning policy dataclasses.

Pattern: Data class. Access levels are a fixed in-memory set (default_acls());
they are never persisted, and accounts reference them by role_name.

Layer rule: no imports from api/, manager/, middleware/ or store/.
"""

from __future__ import annotations

from dataclasses import dataclass, field

ALL_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")


@dataclass(frozen=True)
class AccessRule:
    """Grants `methods` on `path` and everything below it."""

    path: str
    methods: tuple[str, ...]

    def matches(self, method: str, path: str) -> bool:
        if method.upper() not in self.methods:
            return False
        prefix = self.path.rstrip("/")
        return path == prefix or path.startswith(prefix + "/")


@dataclass(frozen=True)
class ACL:
    role_name: str
    description: str
    rules: tuple[AccessRule, ...] = field(default_factory=tuple)

    def allows(self, method: str, path: str) -> bool:
        return any(rule.matches(method, path) for rule in self.rules)


@dataclass(frozen=True)
class ProvisioningPolicy:
    """Whether first-time external logins get a local account, and with which role."""

    autocreate: bool = False
    default_role: str | None = None


NO_PROVISIONING = ProvisioningPolicy()


def default_acls() -> list[ACL]:
    """Return the built-in access levels, admin first."""
    read = ("GET", "HEAD")
    return [
        ACL("admin", "Administrator", (AccessRule("/api", ALL_METHODS),)),
        ACL("readonly", "Read only access to everything", (AccessRule("/api", read),)),
        ACL(
            "accounts:ro",
            "Accounts read only",
            (AccessRule("/api/accounts", read), AccessRule("/api/roles", read)),
        ),
        ACL(
            "accounts:rw",
            "Accounts",
            (AccessRule("/api/accounts", ("GET", "HEAD", "POST", "DELETE")), AccessRule("/api/roles", read)),
        ),
        ACL("events:ro", "Events read only", (AccessRule("/api/events", read),)),
        ACL("events:rw", "Events", (AccessRule("/api/events", ("GET", "HEAD", "DELETE")),)),
    ]
