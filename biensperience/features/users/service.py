"""
User domain service.
- create_user(request)
- get_user(user_id) with feature flag grants loaded
- get_user_by_email(email)
- require_user(user_id)
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4
from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError

from biensperience.core.database import get_db_session, as_utc, users as app_users, user_feature_flags
from biensperience.core.errors import ConflictError, NotFoundError
from biensperience.models.user import CreateUserRequest, FeatureFlagGrant, User, UserRole


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


def _load_grants(session, user_id: str) -> List[FeatureFlagGrant]:
    rows = session.execute(
        select(user_feature_flags)
        .where(user_feature_flags.c.user_id == user_id)
        .order_by(user_feature_flags.c.id)
    ).fetchall()
    return [
        FeatureFlagGrant(
            flag=row.flag,
            enabled=row.enabled,
            config=row.config or {},
            granted_at=as_utc(row.granted_at),
            granted_by=row.granted_by,
            expires_at=as_utc(row.expires_at),
            reason=row.reason,
        )
        for row in rows
    ]


def _row_to_user(session, row) -> User:
    return User(
        user_id=row.user_id,
        created_at=as_utc(row.created_at),
        email=row.email,
        name=row.name,
        role=UserRole(row.role),
        is_super_admin=bool(row.is_super_admin),
        feature_flags=_load_grants(session, row.user_id),
    )


def create_user(request: CreateUserRequest) -> User:
    """Register a user. Raises ConflictError on duplicate id or email."""
    user_id = request.user_id or str(uuid4())
    now = datetime.now(timezone.utc)
    email = normalize_email(request.email)
    try:
        with get_db_session() as session:
            session.execute(
                insert(app_users).values(
                    user_id=user_id,
                    email=email,
                    name=request.name,
                    role=request.role.value,
                    is_super_admin=request.role == UserRole.SUPER_ADMIN,
                    created_at=now,
                )
            )
    except IntegrityError:
        raise ConflictError("User with this id or email already exists")

    return User(
        user_id=user_id,
        created_at=now,
        email=email,
        name=request.name,
        role=request.role,
        is_super_admin=request.role == UserRole.SUPER_ADMIN,
    )


def get_user(user_id: Optional[str]) -> Optional[User]:
    if not user_id:
        return None
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        if not row:
            return None
        return _row_to_user(session, row)


def get_user_by_email(email: Optional[str]) -> Optional[User]:
    normalized = normalize_email(email)
    if not normalized:
        return None
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.email == normalized)).first()
        if not row:
            return None
        return _row_to_user(session, row)


def require_user(user_id: Optional[str]) -> User:
    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    return user
