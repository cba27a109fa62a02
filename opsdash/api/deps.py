"""
opsdash.api.deps — FastAPI dependency injection
================================================

Process-wide collaborators (engine, store, session authority, verifier,
metrics source, hub) are built once by the application lifespan and kept in
a :class:`Services` container on ``app.state``.  Handlers reach them through
the small ``get_*`` dependencies below.

Auth pipeline per request::

    Authorization: Bearer <token>
        → get_current_claims   401 unauthenticated / 401 expired
        → require_role(min)    403 forbidden
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, Request, Response
from sqlalchemy import Engine
from starlette.requests import HTTPConnection

from opsdash.config import DashboardConfig
from opsdash.database.engine import run_db
from opsdash.database.models import Role
from opsdash.errors import Forbidden, Unauthenticated
from opsdash.services.hub import SubscriptionHub
from opsdash.services.identity import IdentityVerifier
from opsdash.services.metrics_source import MetricsSource
from opsdash.services.role_policy import RolePolicy
from opsdash.services.session import REFRESH_HEADER, Claims, SessionAuthority
from opsdash.services.user_store import UserStore


@dataclass
class Services:
    """Everything the handlers share.  Read-only after startup."""
    config: DashboardConfig
    engine: Engine
    store: UserStore
    sessions: SessionAuthority
    verifier: IdentityVerifier
    roles: RolePolicy
    metrics: MetricsSource
    hub: SubscriptionHub


def get_services(conn: HTTPConnection) -> Services:
    services = getattr(conn.app.state, "services", None)
    if services is None:
        raise RuntimeError("Application services are not initialised (lifespan not run)")
    return services


def get_store(services: Annotated[Services, Depends(get_services)]) -> UserStore:
    return services.store


def get_hub(services: Annotated[Services, Depends(get_services)]) -> SubscriptionHub:
    return services.hub


def get_metrics(services: Annotated[Services, Depends(get_services)]) -> MetricsSource:
    return services.metrics


# ---------------------------------------------------------------------------
# Token extraction
# ---------------------------------------------------------------------------
def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def authenticate(services: Services, token: str | None) -> Claims:
    """Verify *token* and apply the role policy.  Shared by HTTP and WebSocket."""
    if not token:
        raise Unauthenticated("No token provided")
    claims = services.sessions.verify(token)
    role = services.roles.effective_role(claims.email, claims.role, locked=claims.role_locked)
    return claims if role == claims.role else claims.with_role(role)


async def get_current_claims(
    request: Request,
    response: Response,
    services: Annotated[Services, Depends(get_services)],
    authorization: Annotated[str | None, Header()] = None,
) -> Claims:
    """Validate the session token; attach a refresh hint when it is ageing.

    The refreshed token is minted from the stored row, so a role change or a
    deleted account is picked up at the next refresh.
    """
    claims = authenticate(services, bearer_token(authorization))
    if services.sessions.needs_refresh(claims):
        user = await run_db(services.store.get, claims.subject_id)
        if user is not None:
            response.headers[REFRESH_HEADER] = services.sessions.mint_for(user)
    request.state.claims = claims
    return claims


CurrentClaims = Annotated[Claims, Depends(get_current_claims)]


def require_role(min_role: Role) -> Callable[[Claims], Claims]:
    """Dependency factory: 403 unless the caller's role is at least *min_role*."""

    def _check(claims: CurrentClaims) -> Claims:
        if not claims.role.at_least(min_role):
            raise Forbidden(
                "Insufficient permissions",
                required=str(min_role),
                current=str(claims.role),
            )
        return claims

    _check.__name__ = f"require_{min_role}"
    return _check
