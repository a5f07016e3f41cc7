"""
biensperience/api/entities.py
FastAPI routes for users and the permissioned content entities.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends

from biensperience.core.auth import get_current_user_id, get_optional_user
from biensperience.core.errors import AuthorizationDeniedError, NotFoundError
from biensperience.features.flags.service import has_global_flag
from biensperience.features.permissions import lifecycle
from biensperience.features.permissions.entities import DestinationEntity, ExperienceEntity, entity_for
from biensperience.features.permissions.service import require_action
from biensperience.features.users.service import create_user, require_user
from biensperience.models.entity import (
    CreateDestinationRequest,
    CreateExperienceRequest,
    CreatePhotoRequest,
    ExperiencePlanItem,
)
from biensperience.models.permission import Action
from biensperience.models.user import CreateUserRequest, User, UserRole

router = APIRouter(prefix="/api", tags=["entities"])


@router.post("/users")
def register_user(body: CreateUserRequest, caller: Optional[User] = Depends(get_optional_user)):
    """Register a user. Only a super admin may create another super admin."""
    is_admin = bool(caller and caller.super_admin)
    if body.role == UserRole.SUPER_ADMIN and not is_admin:
        raise AuthorizationDeniedError("Super admin access required")
    if not is_admin and not has_global_flag("NEW_USER_REGISTRATION"):
        raise AuthorizationDeniedError("New user registration is disabled", code="registration_disabled")
    user = create_user(body)
    return {"success": True, "data": user.model_dump(mode="json")}


@router.get("/users/{user_id}")
def get_user(user_id: str, caller_id: str = Depends(get_current_user_id)):
    user = require_user(user_id)
    data = user.model_dump(mode="json", exclude={"feature_flags"})
    return {"success": True, "data": data}


@router.post("/destinations")
def create_destination(body: CreateDestinationRequest, user_id: str = Depends(get_current_user_id)):
    destination = lifecycle.create_destination(user_id, body)
    return {"success": True, "data": destination.model_dump(mode="json")}


@router.get("/destinations/{destination_id}")
def get_destination(destination_id: str, user_id: str = Depends(get_current_user_id)):
    destination = lifecycle.get_destination(destination_id)
    if destination is None:
        raise NotFoundError(f"Destination not found: {destination_id}")
    require_action(user_id, DestinationEntity(destination_id), Action.VIEW)
    return {"success": True, "data": destination.model_dump(mode="json")}


@router.post("/experiences")
def create_experience(body: CreateExperienceRequest, user_id: str = Depends(get_current_user_id)):
    experience = lifecycle.create_experience(user_id, body)
    return {"success": True, "data": experience.model_dump(mode="json")}


@router.get("/experiences/{experience_id}")
def get_experience(experience_id: str, user_id: str = Depends(get_current_user_id)):
    experience = lifecycle.get_experience(experience_id)
    if experience is None:
        raise NotFoundError(f"Experience not found: {experience_id}")
    require_action(user_id, ExperienceEntity(experience_id), Action.VIEW)
    return {"success": True, "data": experience.model_dump(mode="json")}


@router.put("/experiences/{experience_id}/plan-items")
def replace_plan_items(
    experience_id: str,
    items: List[ExperiencePlanItem],
    user_id: str = Depends(get_current_user_id),
):
    """Replace plan items. Plans created earlier keep their snapshots."""
    experience = lifecycle.replace_plan_items(experience_id, items, actor=user_id)
    return {"success": True, "data": experience.model_dump(mode="json")}


@router.post("/photos")
def create_photo(body: CreatePhotoRequest, user_id: str = Depends(get_current_user_id)):
    photo = lifecycle.create_photo(user_id, body)
    return {"success": True, "data": photo.model_dump(mode="json")}


@router.delete("/entities/{entity_kind}/{entity_id}")
def delete_entity(entity_kind: str, entity_id: str, user_id: str = Depends(get_current_user_id)):
    """Delete a destination, experience, plan or photo with all its entries."""
    entity = entity_for(entity_kind.rstrip("s"), entity_id)
    lifecycle.delete_entity(entity, actor=user_id)
    return {"success": True, "data": {"entity_kind": entity.kind.value, "entity_id": entity_id, "deleted": True}}
