"""
biensperience/features/permissions/entities.py

Adapters that give destinations, experiences, plans and photos one
permission surface. Each adapter declares its table, id and creator
columns, and the roles it accepts.
"""

from typing import Dict, FrozenSet, Optional, Type

from sqlalchemy import Table, select
from sqlalchemy.orm import Session

from biensperience.core.database import destinations, experiences, photos, plans
from biensperience.core.errors import ValidationError
from biensperience.models.permission import EntityKind, Role


class PermissionedEntity:
    """Reference to one permissioned row."""

    kind: EntityKind
    table: Table
    id_column: str
    creator_column: str = "user_id"
    roles: FrozenSet[Role] = frozenset({Role.OWNER, Role.COLLABORATOR})
    # Anyone may view; otherwise a role is required
    publicly_viewable: bool = True

    def __init__(self, entity_id: str):
        if not entity_id:
            raise ValidationError("Entity id is required", field="entity_id")
        self.entity_id = entity_id

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.entity_id!r})"

    def __eq__(self, other) -> bool:
        return isinstance(other, PermissionedEntity) and (self.kind, self.entity_id) == (other.kind, other.entity_id)

    def __hash__(self) -> int:
        return hash((self.kind, self.entity_id))

    def accepts(self, role: Role) -> bool:
        return role in self.roles

    def load_row(self, session: Session):
        column = self.table.c[self.id_column]
        return session.execute(select(self.table).where(column == self.entity_id)).first()

    def creator_id(self, session: Session) -> Optional[str]:
        row = self.load_row(session)
        if row is None:
            return None
        return getattr(row, self.creator_column)


class DestinationEntity(PermissionedEntity):
    kind = EntityKind.DESTINATION
    table = destinations
    id_column = "destination_id"


class ExperienceEntity(PermissionedEntity):
    kind = EntityKind.EXPERIENCE
    table = experiences
    id_column = "experience_id"


class PlanEntity(PermissionedEntity):
    kind = EntityKind.PLAN
    table = plans
    id_column = "plan_id"
    publicly_viewable = False


class PhotoEntity(PermissionedEntity):
    kind = EntityKind.PHOTO
    table = photos
    id_column = "photo_id"
    roles = frozenset({Role.OWNER, Role.COLLABORATOR, Role.CONTRIBUTOR})


ENTITY_ADAPTERS: Dict[EntityKind, Type[PermissionedEntity]] = {
    EntityKind.DESTINATION: DestinationEntity,
    EntityKind.EXPERIENCE: ExperienceEntity,
    EntityKind.PLAN: PlanEntity,
    EntityKind.PHOTO: PhotoEntity,
}


def entity_for(kind, entity_id: str) -> PermissionedEntity:
    """Build the adapter for a kind given as enum or string."""
    try:
        entity_kind = EntityKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown entity kind: {kind}", field="entity_kind")
    return ENTITY_ADAPTERS[entity_kind](entity_id)
