"""
biensperience/models/flags.py

Feature flag registry entries, evaluation contexts and decisions.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class FeatureFlagContext(str, Enum):
    """Whose grants a flag is checked against"""

    ENTITY_CREATOR = "entity_creator"
    LOGGED_IN_USER = "logged_in_user"


class FlagDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    description: str
    default_enabled: bool = False
    requires_auth: bool = True
    tier: str = "premium"


class FlagOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    check_expiry: bool = True
    allow_super_admin: bool = True


class FlagDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    context: FeatureFlagContext
    reason: str
    super_admin_bypass: bool = False


class GrantFlagRequest(BaseModel):
    """Admin request to grant a flag to a user"""

    config: Dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None


class EvaluateFlagRequest(BaseModel):
    flag: str
    context: Optional[str] = None
    creator_id: Optional[str] = None
