"""
biensperience/features/permissions/service.py

Role management across destinations, experiences, plans and photos.

Handles:
- add (upsert), update and remove of permission entries
- role lookup and action checks (super admins act as owners)
- actor authorization for permission mutations

Owner entries are never removed or demoted here; only entity deletion
removes them.
"""

import logging
from collections import deque
from datetime import datetime, timezone
from typing import List, Optional, Set, Dict

from sqlalchemy import select, insert, update, delete, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from biensperience.core.database import get_db_session, as_utc, entity_permissions, users as app_users
from biensperience.core.errors import AuthorizationDeniedError, NotFoundError, ValidationError
from biensperience.core.logging import log_event
from biensperience.features.permissions.entities import PermissionedEntity, entity_for
from biensperience.models.permission import (
    Action,
    GranteeEntity,
    MAX_INHERITANCE_DEPTH,
    PermissionEntry,
    Role,
    ROLE_PRIORITY,
)

logger = logging.getLogger(__name__)

ACTION_ROLES: Dict[Action, Set[Role]] = {
    Action.VIEW: {Role.OWNER, Role.COLLABORATOR, Role.CONTRIBUTOR},
    Action.EDIT: {Role.OWNER, Role.COLLABORATOR},
    Action.DELETE: {Role.OWNER},
    Action.MANAGE_PERMISSIONS: {Role.OWNER, Role.COLLABORATOR},
    Action.CONTRIBUTE: {Role.OWNER, Role.COLLABORATOR, Role.CONTRIBUTOR},
}

INHERITABLE_GRANTEES = (GranteeEntity.DESTINATION.value, GranteeEntity.EXPERIENCE.value)


def role_priority(role: Optional[Role]) -> int:
    if role is None:
        return 0
    return ROLE_PRIORITY.get(role, 0)


def _parse_role(entity: PermissionedEntity, role) -> Role:
    try:
        parsed = role if isinstance(role, Role) else Role(str(role).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Invalid role: {role}. Must be one of: {', '.join(r.value for r in Role)}",
            field="role",
        )
    if not entity.accepts(parsed):
        raise ValidationError(
            f"Role '{parsed.value}' is not valid for {entity.kind.value}",
            field="role",
        )
    return parsed


def _parse_grantee_type(grantee_type) -> GranteeEntity:
    try:
        return grantee_type if isinstance(grantee_type, GranteeEntity) else GranteeEntity(str(grantee_type).strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid grantee type: {grantee_type}", field="grantee_type")


def _entry_filter(entity: PermissionedEntity, grantee_entity: GranteeEntity, grantee_id: str):
    return and_(
        entity_permissions.c.entity_kind == entity.kind.value,
        entity_permissions.c.entity_id == entity.entity_id,
        entity_permissions.c.grantee_entity == grantee_entity.value,
        entity_permissions.c.grantee_id == grantee_id,
    )


def _row_to_entry(row) -> PermissionEntry:
    return PermissionEntry(
        entity_kind=row.entity_kind,
        entity_id=row.entity_id,
        grantee_entity=row.grantee_entity,
        grantee_id=row.grantee_id,
        role=Role(row.role),
        granted_at=as_utc(row.granted_at),
        granted_by=row.granted_by,
    )


def _get_entry_row(session: Session, entity: PermissionedEntity, grantee_entity: GranteeEntity, grantee_id: str):
    return session.execute(
        select(entity_permissions).where(_entry_filter(entity, grantee_entity, grantee_id))
    ).first()


def _require_entity(session: Session, entity: PermissionedEntity) -> None:
    if entity.load_row(session) is None:
        raise NotFoundError(f"{entity.kind.value.capitalize()} not found: {entity.entity_id}")


def is_super_admin(session: Session, user_id: Optional[str]) -> bool:
    if not user_id:
        return False
    row = session.execute(
        select(app_users.c.role, app_users.c.is_super_admin).where(app_users.c.user_id == user_id)
    ).first()
    if row is None:
        return False
    return row.role == "super_admin" or bool(row.is_super_admin)


def _inherited_sources(session: Session, entity: PermissionedEntity) -> List[PermissionedEntity]:
    """Resources this entity inherits user roles from, in grant order."""
    rows = session.execute(
        select(entity_permissions.c.grantee_entity, entity_permissions.c.grantee_id)
        .where(entity_permissions.c.entity_kind == entity.kind.value)
        .where(entity_permissions.c.entity_id == entity.entity_id)
        .where(entity_permissions.c.grantee_entity.in_(INHERITABLE_GRANTEES))
        .order_by(entity_permissions.c.id)
    ).fetchall()
    return [entity_for(row.grantee_entity, row.grantee_id) for row in rows]


def _role_for(
    session: Session,
    entity: PermissionedEntity,
    user_id: Optional[str],
    depth: int = 0,
    visited: Optional[Set[PermissionedEntity]] = None,
) -> Optional[Role]:
    """Highest role of user_id on entity: direct entry, creator, or inherited."""
    if not user_id or depth >= MAX_INHERITANCE_DEPTH:
        return None
    visited = set(visited or ())
    if entity in visited:
        return None
    visited.add(entity)

    row = _get_entry_row(session, entity, GranteeEntity.USER, user_id)
    best = Role(row.role) if row is not None else None
    # Creator without an entry (legacy rows) still owns the entity
    if best != Role.OWNER and entity.creator_id(session) == user_id:
        best = Role.OWNER
    if best == Role.OWNER:
        return best

    for source in _inherited_sources(session, entity):
        inherited = _role_for(session, source, user_id, depth + 1, visited)
        if role_priority(inherited) > role_priority(best):
            best = inherited
    return best


def _would_create_cycle(session: Session, entity: PermissionedEntity, source: PermissionedEntity) -> bool:
    """True when source already inherits (directly or transitively) from entity."""
    if source == entity:
        return True
    visited: Set[PermissionedEntity] = set()
    queue = deque([source])
    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        for upstream in _inherited_sources(session, current):
            if upstream == entity:
                return True
            queue.append(upstream)
    return False


def _check_inheritance_source(session: Session, entity: PermissionedEntity, source: PermissionedEntity) -> None:
    if source.load_row(session) is None:
        raise NotFoundError(f"{source.kind.value.capitalize()} not found: {source.entity_id}")
    if _would_create_cycle(session, entity, source):
        raise ValidationError(
            f"Inheriting from {source.kind.value} {source.entity_id} would create a circular dependency",
            field="grantee_id",
        )


def _authorize_mutation(
    session: Session,
    entity: PermissionedEntity,
    actor: Optional[str],
    grantee_entity: GranteeEntity,
    grantee_id: str,
    role: Optional[Role],
    *,
    allow_self_contributor: bool = False,
) -> None:
    """Raise AuthorizationDeniedError unless actor may apply this change.

    role is the role being granted, or None for a removal.
    """
    if actor is None:
        return
    if is_super_admin(session, actor):
        return

    actor_role = _role_for(session, entity, actor)
    if actor_role == Role.OWNER:
        return
    if actor_role == Role.COLLABORATOR:
        if role == Role.OWNER:
            raise AuthorizationDeniedError("Only owners can grant ownership")
        return

    is_self_contributor = (
        allow_self_contributor
        and role == Role.CONTRIBUTOR
        and grantee_entity == GranteeEntity.USER
        and grantee_id == actor
    )
    if is_self_contributor:
        return

    log_event(
        "warning",
        "permissions.mutation_denied",
        user_id=actor,
        event_type="permissions.denied",
        extra={"entity_kind": entity.kind.value, "entity_id": entity.entity_id, "grantee_id": grantee_id},
    )
    raise AuthorizationDeniedError("Not allowed to manage permissions on this entity")


def _reject_owner_change(existing_row, new_role: Optional[Role]) -> None:
    if existing_row is not None and existing_row.role == Role.OWNER.value and new_role != Role.OWNER:
        raise ValidationError(
            "Owner permissions cannot be removed or demoted; ownership transfer is not supported",
            field="role",
        )


def insert_owner_entry(session: Session, entity: PermissionedEntity, user_id: str, now: Optional[datetime] = None) -> None:
    """Write the owner entry for a freshly created entity (same transaction)."""
    session.execute(
        insert(entity_permissions).values(
            entity_kind=entity.kind.value,
            entity_id=entity.entity_id,
            grantee_entity=GranteeEntity.USER.value,
            grantee_id=user_id,
            role=Role.OWNER.value,
            granted_at=now or datetime.now(timezone.utc),
            granted_by=user_id,
        )
    )


def add_permission(
    entity: PermissionedEntity,
    grantee_type,
    grantee_id: str,
    role,
    *,
    actor: Optional[str] = None,
    allow_self_contributor: bool = False,
) -> PermissionEntry:
    """
    Grant a role on an entity, replacing any existing entry for the grantee.

    Granting the role a grantee already holds is a successful no-op.

    Raises:
        ValidationError: invalid role for the entity kind, demoting an owner,
            or an inherited grant that would form a cycle
        NotFoundError: entity (or the resource inherited from) does not exist
        AuthorizationDeniedError: actor may not make this change
    """
    parsed_role = _parse_role(entity, role)
    grantee_entity = _parse_grantee_type(grantee_type)
    if not grantee_id:
        raise ValidationError("Grantee id is required", field="grantee_id")

    # A concurrent insert for the same grantee surfaces as IntegrityError; the
    # second pass sees the row and replaces it.
    for attempt in range(2):
        try:
            with get_db_session() as session:
                _require_entity(session, entity)
                _authorize_mutation(
                    session,
                    entity,
                    actor,
                    grantee_entity,
                    grantee_id,
                    parsed_role,
                    allow_self_contributor=allow_self_contributor,
                )
                if grantee_entity != GranteeEntity.USER:
                    _check_inheritance_source(session, entity, entity_for(grantee_entity.value, grantee_id))

                existing = _get_entry_row(session, entity, grantee_entity, grantee_id)
                _reject_owner_change(existing, parsed_role)

                if existing is not None and existing.role == parsed_role.value:
                    return _row_to_entry(existing)

                now = datetime.now(timezone.utc)
                if existing is not None:
                    session.execute(
                        update(entity_permissions)
                        .where(entity_permissions.c.id == existing.id)
                        .values(role=parsed_role.value, granted_at=now, granted_by=actor)
                    )
                else:
                    session.execute(
                        insert(entity_permissions).values(
                            entity_kind=entity.kind.value,
                            entity_id=entity.entity_id,
                            grantee_entity=grantee_entity.value,
                            grantee_id=grantee_id,
                            role=parsed_role.value,
                            granted_at=now,
                            granted_by=actor,
                        )
                    )
                session.commit()
                break
        except IntegrityError:
            if attempt == 1:
                raise

    logger.info(
        "[permissions] role granted",
        extra={"entity_kind": entity.kind.value, "entity_id": entity.entity_id, "user_id": grantee_id},
    )
    return PermissionEntry(
        entity_kind=entity.kind,
        entity_id=entity.entity_id,
        grantee_entity=grantee_entity,
        grantee_id=grantee_id,
        role=parsed_role,
        granted_at=now,
        granted_by=actor,
    )


def remove_permission(
    entity: PermissionedEntity,
    grantee_id: str,
    grantee_type="user",
    *,
    actor: Optional[str] = None,
) -> PermissionEntry:
    """
    Remove a non-owner entry and return what was removed.

    Raises:
        ValidationError: the entry is an owner entry
        NotFoundError: entity or entry does not exist
        AuthorizationDeniedError: actor may not make this change
    """
    grantee_entity = _parse_grantee_type(grantee_type)
    with get_db_session() as session:
        _require_entity(session, entity)
        _authorize_mutation(session, entity, actor, grantee_entity, grantee_id, None)

        existing = _get_entry_row(session, entity, grantee_entity, grantee_id)
        if existing is None:
            raise NotFoundError(f"No permission entry for {grantee_entity.value} {grantee_id}")
        _reject_owner_change(existing, None)

        session.execute(delete(entity_permissions).where(entity_permissions.c.id == existing.id))
        removed = _row_to_entry(existing)

    logger.info(
        "[permissions] role removed",
        extra={"entity_kind": entity.kind.value, "entity_id": entity.entity_id, "user_id": grantee_id},
    )
    return removed


def update_permission(
    entity: PermissionedEntity,
    grantee_id: str,
    new_role,
    *,
    grantee_type="user",
    actor: Optional[str] = None,
) -> PermissionEntry:
    """Change the role of an existing entry. Same owner rule as add_permission."""
    parsed_role = _parse_role(entity, new_role)
    grantee_entity = _parse_grantee_type(grantee_type)
    with get_db_session() as session:
        _require_entity(session, entity)
        _authorize_mutation(session, entity, actor, grantee_entity, grantee_id, parsed_role)

        existing = _get_entry_row(session, entity, grantee_entity, grantee_id)
        if existing is None:
            raise NotFoundError(f"No permission entry for {grantee_entity.value} {grantee_id}")
        _reject_owner_change(existing, parsed_role)

        if existing.role == parsed_role.value:
            return _row_to_entry(existing)

        now = datetime.now(timezone.utc)
        session.execute(
            update(entity_permissions)
            .where(entity_permissions.c.id == existing.id)
            .values(role=parsed_role.value, granted_at=now, granted_by=actor)
        )

    return PermissionEntry(
        entity_kind=entity.kind,
        entity_id=entity.entity_id,
        grantee_entity=grantee_entity,
        grantee_id=grantee_id,
        role=parsed_role,
        granted_at=now,
        granted_by=actor,
    )


def list_permissions(entity: PermissionedEntity) -> List[PermissionEntry]:
    with get_db_session() as session:
        _require_entity(session, entity)
        rows = session.execute(
            select(entity_permissions)
            .where(entity_permissions.c.entity_kind == entity.kind.value)
            .where(entity_permissions.c.entity_id == entity.entity_id)
            .order_by(entity_permissions.c.granted_at, entity_permissions.c.id)
        ).fetchall()
        return [_row_to_entry(row) for row in rows]


def get_role(entity: PermissionedEntity, user_id: Optional[str]) -> Optional[Role]:
    """Effective role of a user on an entity, inherited grants included (None when unrelated)."""
    with get_db_session() as session:
        return _role_for(session, entity, user_id)


def parse_action(action) -> Action:
    """Action from an enum member or a case-insensitive name."""
    if isinstance(action, Action):
        return action
    try:
        return Action(str(action).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown action: {action}", field="action")


def can(actor: Optional[str], entity: PermissionedEntity, action) -> bool:
    """Whether actor may perform action on entity. Never raises for unknown users."""
    parsed_action = parse_action(action)

    with get_db_session() as session:
        if entity.load_row(session) is None:
            return False
        if is_super_admin(session, actor):
            return True
        if parsed_action == Action.VIEW and entity.publicly_viewable:
            return True
        role = _role_for(session, entity, actor)
        return role is not None and role in ACTION_ROLES[parsed_action]


def require_action(actor: Optional[str], entity: PermissionedEntity, action) -> None:
    """Route helper: raise AuthorizationDeniedError when can() is False."""
    parsed_action = parse_action(action)
    if not can(actor, entity, parsed_action):
        raise AuthorizationDeniedError(f"Not allowed to {parsed_action.value} this {entity.kind.value}")
