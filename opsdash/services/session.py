"""
opsdash.services.session — First-Party Session Tokens
======================================================

Session tokens are HS256 JWTs signed with ``JWT_SECRET``.  They are
self-contained: the payload carries everything the auth dependency needs
(subject id, email, name, picture, role) plus ``iat``/``exp``, so verifying a
request never touches the database.

Expiry is checked against the authority's clock (``now < exp``) rather than
PyJWT's own wall-clock check so the lifetime rules are testable.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt
from jwt.exceptions import DecodeError, InvalidSignatureError, InvalidTokenError

from opsdash.clock import utcnow
from opsdash.database.models import Role
from opsdash.errors import BadSignature, SessionError, SessionExpired

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
SESSION_LIFETIME = timedelta(hours=24)
REFRESH_THRESHOLD = 0.25  # re-issue when less than a quarter of the lifetime is left
REFRESH_HEADER = "X-New-Token"

DEV_SECRET = "opsdash-dev-secret-do-not-use-in-production"
_MIN_SECRET_LENGTH = 32


@dataclass(frozen=True, slots=True)
class Claims:
    """Verified contents of a session token."""
    subject_id: int
    email: str
    name: str
    picture: str | None
    role: Role
    issued_at: datetime
    expires_at: datetime
    role_locked: bool = False

    @property
    def lifetime(self) -> timedelta:
        return self.expires_at - self.issued_at

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now

    def with_role(self, role: Role) -> Claims:
        return Claims(
            subject_id=self.subject_id,
            email=self.email,
            name=self.name,
            picture=self.picture,
            role=role,
            issued_at=self.issued_at,
            expires_at=self.expires_at,
            role_locked=self.role_locked,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.subject_id,
            "email": self.email,
            "name": self.name,
            "picture": self.picture,
            "role": str(self.role),
        }


def resolve_secret(secret: str | None) -> str:
    """Return *secret*, or the developer default with a loud warning."""
    if not secret:
        logger.warning(
            "JWT_SECRET is not set; using the built-in development secret. "
            "Sessions can be forged by anyone who reads the source. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
        return DEV_SECRET
    if len(secret) < _MIN_SECRET_LENGTH:
        logger.warning(
            "JWT_SECRET is only %d characters; use at least %d.",
            len(secret), _MIN_SECRET_LENGTH,
        )
    return secret


class SessionAuthority:
    """Mints and verifies session tokens with a process-wide signing key."""

    def __init__(
        self,
        secret: str | None,
        *,
        lifetime: timedelta = SESSION_LIFETIME,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._secret = resolve_secret(secret)
        self.lifetime = lifetime
        self._clock = clock

    def __repr__(self) -> str:
        # never print the key
        return f"<SessionAuthority lifetime={self.lifetime}>"

    def mint(
        self,
        *,
        subject_id: int,
        email: str,
        name: str,
        picture: str | None,
        role: Role | str,
        role_locked: bool = False,
    ) -> str:
        issued_at = self._clock()
        expires_at = issued_at + self.lifetime
        payload = {
            "sub": str(subject_id),
            "email": email,
            "name": name,
            "picture": picture,
            "role": str(Role(role)),
            "role_locked": bool(role_locked),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def mint_for(self, user) -> str:
        """Mint a token from a stored user row."""
        return self.mint(
            subject_id=user.id,
            email=user.email,
            name=user.name,
            picture=user.picture,
            role=user.role,
            role_locked=bool(user.role_locked),
        )

    def verify(self, token: str) -> Claims:
        """Decode *token*; raise a :class:`SessionError` subclass on failure."""
        if not token:
            raise SessionError("No token provided")
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["sub", "iat", "exp"],
                },
            )
        except InvalidSignatureError:
            raise BadSignature("Token signature is invalid") from None
        except (DecodeError, InvalidTokenError):
            raise SessionError("Token is malformed") from None

        try:
            claims = Claims(
                subject_id=int(payload["sub"]),
                email=str(payload["email"]),
                name=str(payload.get("name") or ""),
                picture=payload.get("picture"),
                role=Role(payload.get("role", Role.USER)),
                issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=UTC),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=UTC),
                role_locked=bool(payload.get("role_locked", False)),
            )
        except (KeyError, TypeError, ValueError):
            raise SessionError("Token payload is incomplete") from None

        if self._clock() >= claims.expires_at:
            raise SessionExpired()
        return claims

    def needs_refresh(self, claims: Claims) -> bool:
        """True when less than 25 % of the token's lifetime remains."""
        total = claims.lifetime.total_seconds()
        if total <= 0:
            return True
        remaining = claims.remaining(self._clock()).total_seconds()
        return remaining < total * REFRESH_THRESHOLD
