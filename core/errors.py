"""
core/errors.py -- Controller exception taxonomy.

Every error the Manager and its collaborators raise on purpose derives from
ControllerError. Each class carries the HTTP status and machine-readable code
the API layer answers with; api/main.py registers one exception handler for
the whole family.

The message is fixed per class. Collaborator detail (SQL errors, LDAP
diagnostics, redis failures) goes to the log via exception chaining and never
into the response body.

Layer rule: no imports from api/, auth/, manager/, middleware/ or store/.
"""

from __future__ import annotations


class ControllerError(Exception):
    status_code: int = 500
    code: str = "internal_error"
    message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class LoginFailure(ControllerError):
    status_code = 403
    code = "login_failure"
    message = "Invalid username or password."


class Unauthorized(ControllerError):
    status_code = 401
    code = "unauthorized"
    message = "Authentication required."


class AccessDenied(ControllerError):
    status_code = 403
    code = "access_denied"
    message = "Insufficient access level."


class AccountExists(ControllerError):
    status_code = 409
    code = "account_exists"
    message = "An account with that username already exists."


class AccountDoesNotExist(ControllerError):
    status_code = 404
    code = "account_not_found"
    message = "Account does not exist."


class RoleDoesNotExist(ControllerError):
    status_code = 404
    code = "role_not_found"
    message = "Role does not exist."


class InvalidAuthToken(ControllerError):
    status_code = 401
    code = "invalid_auth_token"
    message = "Invalid auth token."


class InvalidServiceKey(ControllerError):
    status_code = 401
    code = "invalid_service_key"
    message = "Invalid service key."


class ServiceKeyDoesNotExist(ControllerError):
    status_code = 404
    code = "service_key_not_found"
    message = "Service key does not exist."


class CredentialsDecodeError(ControllerError):
    # Kept at 500: clients already depend on this status for bad payloads.
    status_code = 500
    code = "decode_error"
    message = "Could not decode credentials."


class AuthenticatorError(ControllerError):
    status_code = 502
    code = "authenticator_error"
    message = "The authentication backend is unavailable."
