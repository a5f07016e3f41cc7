"""
biensperience/models/permission.py

Permission entries: (entity, grantee) -> role, with role priorities.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class EntityKind(str, Enum):
    DESTINATION = "destination"
    EXPERIENCE = "experience"
    PLAN = "plan"
    PHOTO = "photo"


class GranteeEntity(str, Enum):
    """Kinds of grantee.

    A destination or experience grantee makes the entity inherit that
    resource's user roles.
    """

    USER = "user"
    DESTINATION = "destination"
    EXPERIENCE = "experience"


# Resolution stops this many resources away from the one being checked
MAX_INHERITANCE_DEPTH = 3


class Role(str, Enum):
    """owner > collaborator > contributor"""

    OWNER = "owner"
    COLLABORATOR = "collaborator"
    CONTRIBUTOR = "contributor"


ROLE_PRIORITY = {
    Role.OWNER: 100,
    Role.COLLABORATOR: 50,
    Role.CONTRIBUTOR: 10,
}


class Action(str, Enum):
    VIEW = "view"
    EDIT = "edit"
    DELETE = "delete"
    MANAGE_PERMISSIONS = "manage_permissions"
    CONTRIBUTE = "contribute"


class PermissionEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_kind: EntityKind
    entity_id: str
    grantee_entity: GranteeEntity = GranteeEntity.USER
    grantee_id: str
    role: Role
    granted_at: datetime
    granted_by: Optional[str] = None


class AddPermissionRequest(BaseModel):
    """Request to grant (or replace) a role on an entity"""

    grantee_id: str = Field(min_length=1)
    grantee_type: GranteeEntity = GranteeEntity.USER
    role: str = Field(description="owner | collaborator | contributor")
    allow_self_contributor: bool = False


class UpdatePermissionRequest(BaseModel):
    """Request to change an existing grantee's role"""

    role: str
    grantee_type: GranteeEntity = GranteeEntity.USER
