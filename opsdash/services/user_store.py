"""
opsdash.services.user_store — User Directory Persistence
=========================================================

Typed wrapper over the ``users`` table.  All methods are **synchronous**;
request handlers call them through :func:`opsdash.database.engine.run_db`.

Guarantees:

* email is unique, compared case-insensitively (emails are normalised to
  lower case before they touch SQL);
* ``upsert_on_login`` is a single ``INSERT … ON CONFLICT (email) DO UPDATE``
  statement, so concurrent first logins collapse to one row;
* on a returning login only ``last_login``/``updated_at`` always move;
  ``google_id``, ``picture`` and ``name`` change only when the new value is
  non-empty (names are clipped to 255 characters); ``role``, ``id`` and
  ``created_at`` never change;
* an admin edit of ``role`` sets ``role_locked``, which stops the email
  rules from raising that user above the assigned role.

Every operation that hits a missing table bootstraps the schema and retries
exactly once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import Engine, String, func, literal, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from opsdash.clock import utcnow
from opsdash.database.engine import bootstrap_schema, get_session, is_missing_table, ping
from opsdash.database.models import Role, User, UserStatus
from opsdash.errors import (
    Conflict,
    DuplicateEmail,
    InvalidInput,
    NotFound,
    StorageUnavailable,
)
from opsdash.services.identity import Identity
from opsdash.services.role_policy import normalize_email

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_NAME_LENGTH = 255
MAX_EMAIL_LENGTH = 255
UPDATABLE_FIELDS = frozenset({"name", "email", "role", "status", "picture"})


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------
def _clean_name(name: Any) -> str:
    value = str(name or "").strip()
    if not value:
        raise InvalidInput("name is required", field="name")
    if len(value) > MAX_NAME_LENGTH:
        raise InvalidInput(f"name must be at most {MAX_NAME_LENGTH} characters", field="name")
    return value


def _clean_email(email: Any) -> str:
    value = normalize_email(str(email or ""))
    if not value:
        raise InvalidInput("email is required", field="email")
    local, _, domain = value.partition("@")
    if not local or not domain or len(value) > MAX_EMAIL_LENGTH:
        raise InvalidInput(f"{value!r} is not a valid email address", field="email")
    return value


def _clean_role(role: Any) -> str:
    try:
        return str(Role(str(role).lower()))
    except ValueError:
        raise InvalidInput(
            f"role must be one of {[r.value for r in Role]}", field="role"
        ) from None


def _clean_status(status: Any) -> str:
    try:
        return str(UserStatus(str(status).lower()))
    except ValueError:
        raise InvalidInput(
            f"status must be one of {[s.value for s in UserStatus]}", field="status"
        ) from None


class UserStore:
    """The user directory.  One instance per process, shared by all handlers."""

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Error mapping + bootstrap-and-retry
    # ------------------------------------------------------------------
    def _run(self, op: Callable[..., T], *args: Any) -> T:
        try:
            return op(*args)
        except (DBAPIError, PoolTimeoutError) as exc:
            if not is_missing_table(exc):
                raise self._storage_error(exc) from exc
            logger.warning("users table missing during %s; bootstrapping schema", op.__name__)

        try:
            bootstrap_schema(self.engine)
            return op(*args)
        except (DBAPIError, PoolTimeoutError) as exc:
            raise self._storage_error(exc) from exc

    @staticmethod
    def _storage_error(exc: Exception) -> Exception:
        if isinstance(exc, IntegrityError):
            return Conflict("Record conflicts with an existing user")
        logger.error("Storage error: %s", exc)
        return StorageUnavailable()

    def _insert(self):
        if self.engine.dialect.name == "postgresql":
            return pg_insert
        return sqlite_insert

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def lookup_by_email(self, email: str) -> User | None:
        return self._run(self._lookup_by_email, normalize_email(email))

    def _lookup_by_email(self, email: str) -> User | None:
        with get_session(self.engine) as session:
            return session.scalar(select(User).where(User.email == email))

    def get(self, user_id: int) -> User | None:
        return self._run(self._get, user_id)

    def _get(self, user_id: int) -> User | None:
        with get_session(self.engine) as session:
            return session.get(User, user_id)

    def list_all(self) -> list[User]:
        """All users, newest first."""
        return self._run(self._list_all)

    def _list_all(self) -> list[User]:
        with get_session(self.engine) as session:
            return list(session.scalars(
                select(User).order_by(User.created_at.desc(), User.id.desc())
            ).all())

    def count(self) -> int:
        return self._run(self._count)

    def _count(self) -> int:
        with get_session(self.engine) as session:
            return session.scalar(select(func.count()).select_from(User)) or 0

    def ping(self) -> None:
        try:
            ping(self.engine)
        except (DBAPIError, PoolTimeoutError) as exc:
            raise self._storage_error(exc) from exc

    # ------------------------------------------------------------------
    # Upsert on login
    # ------------------------------------------------------------------
    def upsert_on_login(self, identity: Identity, role: Role | str) -> User:
        """Create the row on first login, refresh it on every later one."""
        return self._run(self._upsert_on_login, identity, _clean_role(role))

    def _upsert_on_login(self, identity: Identity, role: str) -> User:
        now = self._clock()
        email = _clean_email(identity.email)
        name = (identity.name or "").strip()[:MAX_NAME_LENGTH] or None
        picture = identity.picture or None
        google_id = identity.subject or None

        insert = self._insert()
        stmt = insert(User).values(
            email=email,
            name=name or email.split("@", 1)[0],
            picture=picture,
            google_id=google_id,
            role=role,
            status=UserStatus.ACTIVE.value,
            last_login=now,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[User.email],
            set_={
                "last_login": stmt.excluded.last_login,
                "updated_at": stmt.excluded.updated_at,
                "name": func.coalesce(func.nullif(literal(name, String), ""), User.name),
                "picture": func.coalesce(func.nullif(literal(picture, String), ""), User.picture),
                "google_id": func.coalesce(func.nullif(literal(google_id, String), ""), User.google_id),
            },
        ).returning(User)

        with get_session(self.engine) as session:
            try:
                user = session.scalars(
                    stmt, execution_options={"populate_existing": True}
                ).one()
            except IntegrityError:
                # email conflicts are absorbed by ON CONFLICT; this is google_id
                raise Conflict(
                    "This Google account is already linked to another user",
                    field="google_id",
                ) from None
        logger.info("Login recorded for %s (user id %s)", user.email, user.id)
        return user

    # ------------------------------------------------------------------
    # Admin mutations
    # ------------------------------------------------------------------
    def create(
        self,
        name: str,
        email: str,
        role: Role | str = Role.USER,
        status: UserStatus | str = UserStatus.ACTIVE,
    ) -> User:
        fields = {
            "name": _clean_name(name),
            "email": _clean_email(email),
            "role": _clean_role(role or Role.USER),
            "status": _clean_status(status or UserStatus.ACTIVE),
        }
        return self._run(self._create, fields)

    def _create(self, fields: dict[str, str]) -> User:
        now = self._clock()
        with get_session(self.engine) as session:
            self._ensure_email_free(session, fields["email"])
            user = User(**fields, role_locked=False, created_at=now, updated_at=now,
                        last_login=None)
            session.add(user)
            try:
                session.flush()
            except IntegrityError:
                raise DuplicateEmail() from None
        logger.info("Created user %s (%s)", user.email, user.role)
        return user

    def update(self, user_id: int, patch: dict[str, Any]) -> User:
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidInput(f"Cannot update fields: {sorted(unknown)}")
        cleaned: dict[str, Any] = {}
        for key, value in patch.items():
            if value is None:
                continue
            if key == "name":
                cleaned[key] = _clean_name(value)
            elif key == "email":
                cleaned[key] = _clean_email(value)
            elif key == "role":
                cleaned[key] = _clean_role(value)
            elif key == "status":
                cleaned[key] = _clean_status(value)
            elif key == "picture":
                cleaned[key] = str(value).strip() or None
        return self._run(self._update, user_id, cleaned)

    def _update(self, user_id: int, cleaned: dict[str, Any]) -> User:
        with get_session(self.engine) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound("User not found")
            new_email = cleaned.get("email")
            if new_email and new_email != user.email:
                self._ensure_email_free(session, new_email, exclude_id=user_id)
            if "role" in cleaned:
                user.role_locked = True
            for key, value in cleaned.items():
                setattr(user, key, value)
            user.updated_at = self._clock()
            try:
                session.flush()
            except IntegrityError:
                raise DuplicateEmail() from None
        logger.info("Updated user %s: %s", user_id, sorted(cleaned))
        return user

    def delete(self, user_id: int) -> None:
        self._run(self._delete, user_id)

    def _delete(self, user_id: int) -> None:
        with get_session(self.engine) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound("User not found")
            session.delete(user)
        logger.info("Deleted user %s", user_id)

    @staticmethod
    def _ensure_email_free(session: Session, email: str, exclude_id: int | None = None) -> None:
        stmt = select(User.id).where(User.email == email)
        if exclude_id is not None:
            stmt = stmt.where(User.id != exclude_id)
        if session.scalar(stmt) is not None:
            raise DuplicateEmail()
