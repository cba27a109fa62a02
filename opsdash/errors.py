"""
opsdash.errors — Typed Failure Taxonomy
========================================

Every failure that can cross a component boundary is one of the classes
below.  Each carries a stable ``kind`` string (surfaced to clients in the
``error`` field) and the HTTP status it maps to.  The HTTP layer never
inspects messages; it only looks at the class.

    DashboardError
    ├── ValidationError        400
    │   └── InvalidInput       400   (store-level field problems)
    ├── Unauthenticated        401
    │   ├── SessionError       401   malformed / bad_signature
    │   │   └── SessionExpired 401   expired
    │   └── IdentityError      401   identity provider rejected the credential
    │       ├── InvalidFormat, UntrustedIssuer, IdentityExpired
    │       └── NetworkError, ProviderUnavailable 503
    ├── Forbidden              403
    ├── NotFound               404
    ├── Conflict               409
    │   └── DuplicateEmail     409
    └── StorageUnavailable     503
"""

from __future__ import annotations


class DashboardError(Exception):
    """Base class for all typed failures."""

    kind: str = "internal_error"
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None, **details) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# ---------------------------------------------------------------------------
# 400
# ---------------------------------------------------------------------------
class ValidationError(DashboardError):
    kind = "validation_error"
    status_code = 400
    default_message = "Invalid request"


class InvalidInput(ValidationError):
    kind = "invalid_input"


# ---------------------------------------------------------------------------
# 401 — session tokens
# ---------------------------------------------------------------------------
class Unauthenticated(DashboardError):
    kind = "unauthenticated"
    status_code = 401
    default_message = "Authentication required"


class SessionError(Unauthenticated):
    """A first-party session token could not be accepted."""

    kind = "malformed"
    default_message = "Invalid session token"


class BadSignature(SessionError):
    kind = "bad_signature"


class SessionExpired(SessionError):
    kind = "expired"
    default_message = "Session expired, please login again"


# ---------------------------------------------------------------------------
# 401 / 503 — third-party identity
# ---------------------------------------------------------------------------
class IdentityError(Unauthenticated):
    """The identity provider did not vouch for the credential."""

    kind = "invalid_format"
    default_message = "Invalid Google credential"


class InvalidFormat(IdentityError):
    kind = "invalid_format"


class UntrustedIssuer(IdentityError):
    kind = "untrusted_issuer"
    default_message = "Credential was not issued by a trusted provider"


class IdentityExpired(IdentityError):
    kind = "expired"
    default_message = "Google credential has expired"


class NetworkError(IdentityError):
    kind = "network_error"
    status_code = 503
    default_message = "Could not reach the identity provider"


class ProviderUnavailable(IdentityError):
    kind = "provider_unavailable"
    status_code = 503
    default_message = "Identity provider unavailable, try again"


# ---------------------------------------------------------------------------
# 403 / 404 / 409 / 503
# ---------------------------------------------------------------------------
class Forbidden(DashboardError):
    kind = "forbidden"
    status_code = 403
    default_message = "Insufficient permissions"


class NotFound(DashboardError):
    kind = "not_found"
    status_code = 404
    default_message = "Not found"


class Conflict(DashboardError):
    kind = "conflict"
    status_code = 409
    default_message = "Conflicting record"


class DuplicateEmail(Conflict):
    kind = "duplicate_email"
    default_message = "A user with this email already exists"


class StorageUnavailable(DashboardError):
    kind = "storage_unavailable"
    status_code = 503
    default_message = "Database unavailable, try again"


class ConfigError(Exception):
    """Raised at startup when the environment cannot be turned into a config."""
