"""
biensperience/api/permissions.py
FastAPI routes for permission entries on destinations, experiences, plans and photos.
"""

from fastapi import APIRouter, Depends, Query

from biensperience.core.auth import get_current_user_id
from biensperience.features.permissions import service as permission_service
from biensperience.features.permissions.entities import entity_for
from biensperience.models.permission import Action, AddPermissionRequest, UpdatePermissionRequest

router = APIRouter(prefix="/api/permissions", tags=["permissions"])


@router.get("/{entity_kind}/{entity_id}")
def list_permissions(entity_kind: str, entity_id: str, user_id: str = Depends(get_current_user_id)):
    entity = entity_for(entity_kind, entity_id)
    permission_service.require_action(user_id, entity, Action.VIEW)
    entries = permission_service.list_permissions(entity)
    return {"success": True, "count": len(entries), "data": [e.model_dump(mode="json") for e in entries]}


@router.get("/{entity_kind}/{entity_id}/check")
def check_permission(
    entity_kind: str,
    entity_id: str,
    action: str = Query(Action.VIEW.value),
    user_id: str = Depends(get_current_user_id),
):
    """Whether the caller may perform action, plus their effective role."""
    entity = entity_for(entity_kind, entity_id)
    parsed_action = permission_service.parse_action(action)
    allowed = permission_service.can(user_id, entity, parsed_action)
    role = permission_service.get_role(entity, user_id)
    return {
        "success": True,
        "data": {"allowed": allowed, "action": parsed_action.value, "role": role.value if role else None},
    }


@router.post("/{entity_kind}/{entity_id}")
def add_permission(
    entity_kind: str,
    entity_id: str,
    body: AddPermissionRequest,
    user_id: str = Depends(get_current_user_id),
):
    """
    Grant a role, replacing any existing entry for the grantee.

    Request body:
        grantee_id, grantee_type ("user", "destination", "experience"), role, allow_self_contributor
    """
    entity = entity_for(entity_kind, entity_id)
    entry = permission_service.add_permission(
        entity,
        body.grantee_type,
        body.grantee_id,
        body.role,
        actor=user_id,
        allow_self_contributor=body.allow_self_contributor,
    )
    return {"success": True, "data": entry.model_dump(mode="json")}


@router.patch("/{entity_kind}/{entity_id}/{grantee_id}")
def update_permission(
    entity_kind: str,
    entity_id: str,
    grantee_id: str,
    body: UpdatePermissionRequest,
    user_id: str = Depends(get_current_user_id),
):
    entity = entity_for(entity_kind, entity_id)
    entry = permission_service.update_permission(
        entity,
        grantee_id,
        body.role,
        grantee_type=body.grantee_type,
        actor=user_id,
    )
    return {"success": True, "data": entry.model_dump(mode="json")}


@router.delete("/{entity_kind}/{entity_id}/{grantee_id}")
def remove_permission(
    entity_kind: str,
    entity_id: str,
    grantee_id: str,
    grantee_type: str = Query("user"),
    user_id: str = Depends(get_current_user_id),
):
    entity = entity_for(entity_kind, entity_id)
    removed = permission_service.remove_permission(entity, grantee_id, grantee_type, actor=user_id)
    return {"success": True, "data": removed.model_dump(mode="json")}
