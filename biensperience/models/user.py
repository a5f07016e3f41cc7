"""
biensperience/models/user.py

User and feature-flag grant models.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class UserRole(str, Enum):
    REGULAR_USER = "regular_user"
    SUPER_ADMIN = "super_admin"


class FeatureFlagGrant(BaseModel):
    """A per-user feature flag grant (unique per user and flag)."""

    model_config = ConfigDict(frozen=True)

    flag: str
    enabled: bool = True
    config: Dict[str, Any] = Field(default_factory=dict)
    granted_at: datetime
    granted_by: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    email: Optional[str] = None
    name: Optional[str] = None
    role: UserRole = UserRole.REGULAR_USER
    is_super_admin: bool = False
    feature_flags: List[FeatureFlagGrant] = Field(default_factory=list)

    @property
    def super_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN or self.is_super_admin

    @property
    def display_name(self) -> str:
        if self.name and self.name.strip():
            return self.name.strip()
        if self.email:
            return self.email.split("@", 1)[0]
        return self.user_id


class CreateUserRequest(BaseModel):
    """Request to register a user"""

    user_id: Optional[str] = Field(default=None, description="Explicit id; generated when omitted")
    email: Optional[str] = None
    name: Optional[str] = None
    role: UserRole = UserRole.REGULAR_USER
