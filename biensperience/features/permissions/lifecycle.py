"""
biensperience/features/permissions/lifecycle.py

Create and delete permissioned entities. Creation writes the row and its
owner entry in one transaction; deletion removes the row and every entry.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import select, insert, delete

from biensperience.core.database import (
    get_db_session,
    as_utc,
    destinations,
    experiences,
    experience_plan_items,
    photos,
    entity_permissions,
    users as app_users,
)
from biensperience.core.errors import AuthorizationDeniedError, NotFoundError, ValidationError
from biensperience.core.logging import log_event
from biensperience.features.permissions.entities import (
    DestinationEntity,
    ExperienceEntity,
    PermissionedEntity,
    PhotoEntity,
)
from biensperience.features.permissions.service import can, insert_owner_entry
from biensperience.models.entity import (
    CreateDestinationRequest,
    CreateExperienceRequest,
    CreatePhotoRequest,
    Destination,
    Experience,
    ExperiencePlanItem,
    Photo,
)
from biensperience.models.permission import Action, EntityKind


def _require_creator(session, user_id: str) -> None:
    exists = session.execute(select(app_users.c.user_id).where(app_users.c.user_id == user_id)).first()
    if not exists:
        raise NotFoundError(f"User not found: {user_id}")


def _insert_plan_items(session, experience_id: str, items: List[ExperiencePlanItem]) -> None:
    for position, item in enumerate(items):
        session.execute(
            insert(experience_plan_items).values(
                experience_id=experience_id,
                plan_item_id=item.plan_item_id,
                position=position,
                text=item.text,
                url=item.url,
                cost=item.cost,
                planning_days=item.planning_days,
                photo=item.photo,
                parent=item.parent,
            )
        )


def create_destination(creator_id: str, request: CreateDestinationRequest) -> Destination:
    destination_id = str(uuid4())
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        _require_creator(session, creator_id)
        session.execute(
            insert(destinations).values(
                destination_id=destination_id,
                name=request.name,
                country=request.country,
                user_id=creator_id,
                created_at=now,
            )
        )
        insert_owner_entry(session, DestinationEntity(destination_id), creator_id, now)

    return Destination(
        destination_id=destination_id,
        name=request.name,
        country=request.country,
        user_id=creator_id,
        created_at=now,
    )


def create_experience(creator_id: str, request: CreateExperienceRequest) -> Experience:
    """Create an experience with its ordered plan items."""
    item_ids = [item.plan_item_id for item in request.plan_items]
    if len(item_ids) != len(set(item_ids)):
        raise ValidationError("Duplicate plan_item_id in plan items", field="plan_items")

    experience_id = str(uuid4())
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        _require_creator(session, creator_id)
        if request.destination_id:
            found = session.execute(
                select(destinations.c.destination_id).where(destinations.c.destination_id == request.destination_id)
            ).first()
            if not found:
                raise ValidationError(f"Destination not found: {request.destination_id}", field="destination_id")

        session.execute(
            insert(experiences).values(
                experience_id=experience_id,
                title=request.title,
                destination_id=request.destination_id,
                user_id=creator_id,
                created_at=now,
            )
        )
        _insert_plan_items(session, experience_id, request.plan_items)
        insert_owner_entry(session, ExperienceEntity(experience_id), creator_id, now)

    return Experience(
        experience_id=experience_id,
        title=request.title,
        destination_id=request.destination_id,
        user_id=creator_id,
        plan_items=list(request.plan_items),
        created_at=now,
    )


def create_photo(creator_id: str, request: CreatePhotoRequest) -> Photo:
    photo_id = str(uuid4())
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        _require_creator(session, creator_id)
        session.execute(
            insert(photos).values(
                photo_id=photo_id,
                url=request.url,
                caption=request.caption,
                user_id=creator_id,
                created_at=now,
            )
        )
        insert_owner_entry(session, PhotoEntity(photo_id), creator_id, now)

    return Photo(photo_id=photo_id, url=request.url, caption=request.caption, user_id=creator_id, created_at=now)


def get_destination(destination_id: str) -> Optional[Destination]:
    with get_db_session() as session:
        row = session.execute(select(destinations).where(destinations.c.destination_id == destination_id)).first()
        if not row:
            return None
        return Destination(
            destination_id=row.destination_id,
            name=row.name,
            country=row.country,
            user_id=row.user_id,
            created_at=as_utc(row.created_at),
        )


def get_experience(experience_id: str) -> Optional[Experience]:
    """Load an experience with its plan items in order."""
    with get_db_session() as session:
        row = session.execute(select(experiences).where(experiences.c.experience_id == experience_id)).first()
        if not row:
            return None
        item_rows = session.execute(
            select(experience_plan_items)
            .where(experience_plan_items.c.experience_id == experience_id)
            .order_by(experience_plan_items.c.position)
        ).fetchall()
        return Experience(
            experience_id=row.experience_id,
            title=row.title,
            destination_id=row.destination_id,
            user_id=row.user_id,
            plan_items=[
                ExperiencePlanItem(
                    plan_item_id=item.plan_item_id,
                    text=item.text,
                    url=item.url,
                    cost=item.cost,
                    planning_days=item.planning_days,
                    photo=item.photo,
                    parent=item.parent,
                )
                for item in item_rows
            ],
            created_at=as_utc(row.created_at),
        )


def _require_existing(entity: PermissionedEntity) -> None:
    with get_db_session() as session:
        if entity.load_row(session) is None:
            raise NotFoundError(f"{entity.kind.value.capitalize()} not found: {entity.entity_id}")


def replace_plan_items(experience_id: str, items: List[ExperiencePlanItem], *, actor: Optional[str] = None) -> Experience:
    """Replace an experience's plan items. Existing plans keep their snapshots."""
    entity = ExperienceEntity(experience_id)
    _require_existing(entity)
    if actor is not None and not can(actor, entity, Action.EDIT):
        raise AuthorizationDeniedError("Not allowed to edit this experience")

    with get_db_session() as session:
        if entity.load_row(session) is None:
            raise NotFoundError(f"Experience not found: {experience_id}")
        session.execute(delete(experience_plan_items).where(experience_plan_items.c.experience_id == experience_id))
        _insert_plan_items(session, experience_id, items)

    return get_experience(experience_id)


def delete_entity(entity: PermissionedEntity, *, actor: Optional[str] = None) -> bool:
    """
    Delete an entity with all of its permission entries.

    Returns:
        True if deleted

    Raises:
        NotFoundError: entity does not exist
        AuthorizationDeniedError: actor is not an owner or super admin
    """
    _require_existing(entity)
    if actor is not None and not can(actor, entity, Action.DELETE):
        raise AuthorizationDeniedError(f"Not allowed to delete this {entity.kind.value}")

    with get_db_session() as session:
        if entity.load_row(session) is None:
            raise NotFoundError(f"{entity.kind.value.capitalize()} not found: {entity.entity_id}")

        if entity.kind == EntityKind.EXPERIENCE:
            session.execute(
                delete(experience_plan_items).where(experience_plan_items.c.experience_id == entity.entity_id)
            )
        session.execute(
            delete(entity_permissions)
            .where(entity_permissions.c.entity_kind == entity.kind.value)
            .where(entity_permissions.c.entity_id == entity.entity_id)
        )
        # Entries on other resources that inherit from this one
        session.execute(
            delete(entity_permissions)
            .where(entity_permissions.c.grantee_entity == entity.kind.value)
            .where(entity_permissions.c.grantee_id == entity.entity_id)
        )
        id_column = entity.table.c[entity.id_column]
        session.execute(delete(entity.table).where(id_column == entity.entity_id))

    log_event(
        "info",
        "entity.deleted",
        user_id=actor,
        event_type="entity.deleted",
        extra={"entity_kind": entity.kind.value, "entity_id": entity.entity_id},
    )
    return True
