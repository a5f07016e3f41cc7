"""
Caller identity for the API.

The acting user comes from the X-User-Id header, set by the upstream session
layer. Routes depend on get_current_user / require_super_admin.
"""
import logging
from typing import Optional

from fastapi import Header

from biensperience.core.errors import AppError, AuthorizationDeniedError
from biensperience.features.users.service import get_user
from biensperience.models.user import User

logger = logging.getLogger(__name__)


class AuthenticationError(AppError):
    code = "unauthorized"
    status_code = 401


def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthenticationError("Authentication required")
    return user_id


def get_optional_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> Optional[User]:
    user_id = (x_user_id or "").strip()
    return get_user(user_id) if user_id else None


def get_current_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> User:
    user_id = get_current_user_id(x_user_id)
    user = get_user(user_id)
    if user is None:
        logger.info("[auth] unknown user id in X-User-Id", extra={"user_id": user_id})
        raise AuthenticationError("Unknown user")
    return user


def require_super_admin(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> User:
    user = get_current_user(x_user_id)
    if not user.super_admin:
        raise AuthorizationDeniedError("Super admin access required")
    return user
