"""
opsdash.services.identity — Google Credential Verification
===========================================================

Turns whatever the browser's Google sign-in handed us into a canonical
:class:`Identity`, trying in order:

1. **ID token** — verify the credential as a Google-signed JWT: signature
   against Google's published certificates, expiry, and audience equal to
   ``GOOGLE_CLIENT_ID`` (``google-auth``).
2. **Access token** — unless step 1 proved the token came from an untrusted
   issuer, call the userinfo endpoint with the credential as a bearer
   (``httpx``, 10 s timeout).
3. **Client-supplied profile** — only when ``ALLOW_CLIENT_IDENTITY`` is on:
   accept the ``userInfo`` object posted with the request, flagged
   ``email_verified=False``.

Failures are raised as :class:`~opsdash.errors.IdentityError` subclasses.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token

from opsdash.errors import (
    IdentityError,
    IdentityExpired,
    InvalidFormat,
    NetworkError,
    ProviderUnavailable,
    UntrustedIssuer,
)

logger = logging.getLogger(__name__)

USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
USERINFO_TIMEOUT_SECONDS = 10.0

IdTokenVerifier = Callable[[str, str], dict[str, Any]]


@dataclass(frozen=True, slots=True)
class Identity:
    """Verified facts about a principal, as attested by the provider."""
    subject: str | None
    email: str
    name: str
    picture: str | None
    email_verified: bool


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def canonicalize(payload: dict[str, Any], *, trusted: bool = True) -> Identity:
    """Map a provider payload (ID-token claims or userinfo body) to Identity."""
    email = str(payload.get("email") or "").strip().lower()
    if not email:
        raise InvalidFormat("Credential does not carry an email address")
    name = str(payload.get("name") or "").strip() or email.split("@", 1)[0]
    return Identity(
        subject=str(payload["sub"]) if payload.get("sub") else None,
        email=email,
        name=name,
        picture=payload.get("picture") or None,
        email_verified=trusted and _as_bool(payload.get("email_verified", False)),
    )


def google_id_token_verifier(token: str, audience: str) -> dict[str, Any]:
    """Blocking verification through google-auth; fetches Google's certs."""
    return google_id_token.verify_oauth2_token(
        token, google_requests.Request(), audience=audience
    )


def _classify_id_token_error(exc: Exception) -> IdentityError:
    message = str(exc).lower()
    if "issuer" in message:
        return UntrustedIssuer(str(exc))
    if "expired" in message or "too late" in message:
        return IdentityExpired(str(exc))
    return InvalidFormat(str(exc))


class IdentityVerifier:
    """Two-path (plus optional third) verifier for Google credentials."""

    def __init__(
        self,
        client_id: str | None,
        *,
        allow_client_identity: bool = False,
        id_token_verifier: IdTokenVerifier = google_id_token_verifier,
        transport: httpx.AsyncBaseTransport | None = None,
        userinfo_url: str = USERINFO_URL,
        timeout: float = USERINFO_TIMEOUT_SECONDS,
    ) -> None:
        self.client_id = client_id
        self.allow_client_identity = allow_client_identity
        self._id_token_verifier = id_token_verifier
        self._transport = transport
        self._userinfo_url = userinfo_url
        self._timeout = timeout
        if not client_id:
            logger.warning(
                "GOOGLE_CLIENT_ID is not set; ID-token verification is disabled "
                "and only the userinfo lookup will be used."
            )
        if allow_client_identity:
            logger.warning(
                "ALLOW_CLIENT_IDENTITY is on; unverifiable logins will trust "
                "the client-supplied profile (email_verified=false)."
            )

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    async def verify_id_token(self, credential: str) -> Identity:
        if not self.client_id:
            raise InvalidFormat("ID-token verification is not configured")
        try:
            claims = await asyncio.to_thread(
                self._id_token_verifier, credential, self.client_id
            )
        except google_exceptions.TransportError as exc:
            raise NetworkError(str(exc)) from exc
        except (ValueError, google_exceptions.GoogleAuthError) as exc:
            raise _classify_id_token_error(exc) from exc
        return canonicalize(claims)

    async def fetch_userinfo(self, credential: str) -> Identity:
        headers = {"Authorization": f"Bearer {credential}"}
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.get(self._userinfo_url, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable("Userinfo lookup timed out") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Userinfo lookup failed: {exc}") from exc

        if resp.status_code >= 500:
            raise ProviderUnavailable(f"Userinfo endpoint returned {resp.status_code}")
        if resp.status_code != 200:
            raise InvalidFormat(f"Userinfo endpoint rejected the token ({resp.status_code})")
        try:
            body = resp.json()
        except ValueError:
            raise InvalidFormat("Userinfo response was not JSON") from None
        if not isinstance(body, dict):
            raise InvalidFormat("Userinfo response was not an object")
        return canonicalize(body)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def verify(
        self,
        credential: str,
        claimed_identity: dict[str, Any] | None = None,
    ) -> Identity:
        """Return the verified identity behind *credential*.

        Raises
        ------
        IdentityError
            ``invalid_format``, ``untrusted_issuer``, ``expired``,
            ``network_error`` or ``provider_unavailable``.
        """
        if not credential or not credential.strip():
            raise InvalidFormat("Google token is required")
        credential = credential.strip()

        try:
            return await self.verify_id_token(credential)
        except UntrustedIssuer:
            logger.warning("Rejected credential from an untrusted issuer")
            raise
        except IdentityError as primary:
            logger.debug("ID-token path failed (%s); trying userinfo", primary.kind)
            primary_error = primary

        try:
            return await self.fetch_userinfo(credential)
        except IdentityError as secondary:
            logger.info(
                "Google verification failed: id_token=%s userinfo=%s",
                primary_error.kind, secondary.kind,
            )
            secondary_error = secondary

        if self.allow_client_identity and claimed_identity:
            email = str(claimed_identity.get("email") or "").strip()
            if email:
                logger.warning("Accepting client-supplied identity for %s", email.lower())
                return canonicalize(claimed_identity, trusted=False)

        if isinstance(secondary_error, (ProviderUnavailable, NetworkError)):
            raise secondary_error
        if isinstance(primary_error, IdentityExpired):
            raise primary_error
        raise InvalidFormat("Invalid Google token or failed to fetch user information")
