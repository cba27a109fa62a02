"""
opsdash.api.auth — Google sign-in → session token
==================================================

    POST /auth/google    exchange a Google credential for a session token
    GET  /auth/verify    validate the caller's session, return the user
    POST /auth/logout    acknowledgement only; tokens are stateless
    GET  /auth/profile   the caller's current user record
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from opsdash.api.deps import CurrentClaims, Services, get_services
from opsdash.database.engine import run_db
from opsdash.database.models import User
from opsdash.errors import NotFound, ValidationError
from opsdash.services.session import Claims

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


class GoogleLogin(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str | None = None
    user_info: dict[str, Any] | None = Field(default=None, alias="userInfo")


async def _current_user(services: Services, claims: Claims) -> User:
    user = await run_db(services.store.get, claims.subject_id)
    if user is None:
        raise NotFound("User not found")
    return user


@router.post("/google")
async def google_login(
    body: GoogleLogin,
    services: Annotated[Services, Depends(get_services)],
):
    """Verify the Google credential, upsert the user and mint a session."""
    if not body.token or not body.token.strip():
        raise ValidationError("Google token is required", field="token")

    identity = await services.verifier.verify(body.token, body.user_info)
    derived = services.roles.role_of(identity.email)
    user = await run_db(services.store.upsert_on_login, identity, derived)

    token = services.sessions.mint_for(user)
    logger.info("Login: %s (%s, verified=%s)", user.email, user.role, identity.email_verified)
    return {"success": True, "token": token, "user": user.to_dict()}


@router.get("/verify")
async def verify_session(
    claims: CurrentClaims,
    services: Annotated[Services, Depends(get_services)],
):
    user = await _current_user(services, claims)
    payload = user.to_dict()
    payload["role"] = str(claims.role)
    return {"valid": True, "user": payload}


@router.post("/logout")
async def logout(claims: CurrentClaims):
    logger.info("Logout: %s", claims.email)
    return {"success": True, "message": "Logged out successfully"}


@router.get("/profile")
async def profile(
    claims: CurrentClaims,
    services: Annotated[Services, Depends(get_services)],
):
    user = await _current_user(services, claims)
    return {"user": user.to_dict()}
