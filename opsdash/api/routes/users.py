"""
opsdash.api.routes.users — User directory administration
=========================================================

    GET    /api/users          moderator+   list users, newest first
    POST   /api/users          admin        create a user
    PUT    /api/users/{id}     admin        update name / email / role / status
    DELETE /api/users/{id}     admin        delete (never your own account)
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from opsdash.api.deps import get_store, require_role
from opsdash.database.engine import run_db
from opsdash.database.models import Role, UserStatus
from opsdash.errors import ValidationError
from opsdash.services.session import Claims
from opsdash.services.user_store import UserStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/users", tags=["users"])

Moderator = Annotated[Claims, Depends(require_role(Role.MODERATOR))]
Admin = Annotated[Claims, Depends(require_role(Role.ADMIN))]
Store = Annotated[UserStore, Depends(get_store)]


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class UserCreate(BaseModel):
    name: str | None = None
    email: str | None = None
    role: str = Role.USER.value
    status: str = UserStatus.ACTIVE.value


class UserUpdate(BaseModel):
    name: str | None = None
    email: str | None = None
    role: str | None = None
    status: str | None = None
    picture: str | None = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.get("")
async def list_users(claims: Moderator, store: Store):
    users = await run_db(store.list_all)
    return [u.to_dict() for u in users]


@router.post("", status_code=201)
async def create_user(body: UserCreate, admin: Admin, store: Store):
    if not body.name or not body.email:
        raise ValidationError("Name and email are required",
                              fields=[f for f in ("name", "email") if not getattr(body, f)])
    user = await run_db(store.create, body.name, body.email, body.role, body.status)
    logger.info("User %s created by %s", user.email, admin.email)
    return {"success": True, "user": user.to_dict()}


@router.put("/{user_id}")
async def update_user(user_id: int, body: UserUpdate, admin: Admin, store: Store):
    patch = body.model_dump(exclude_unset=True, exclude_none=True)
    user = await run_db(store.update, user_id, patch)
    logger.info("User %s updated by %s", user_id, admin.email)
    return {"success": True, "user": user.to_dict()}


@router.delete("/{user_id}")
async def delete_user(user_id: int, admin: Admin, store: Store):
    if user_id == admin.subject_id:
        raise ValidationError("Cannot delete your own account")
    await run_db(store.delete, user_id)
    logger.info("User %s deleted by %s", user_id, admin.email)
    return {"success": True, "message": "User deleted successfully"}
