"""
biensperience/api/flags.py
FastAPI routes for feature flags: registry, evaluation and admin grants.
"""

from fastapi import APIRouter, Depends, Request

from biensperience.core.auth import get_current_user, require_super_admin
from biensperience.core.errors import NotFoundError
from biensperience.features.flags import service as flag_service
from biensperience.features.flags.cache import AIStatusCache
from biensperience.features.users.service import get_user, require_user
from biensperience.models.flags import EvaluateFlagRequest, GrantFlagRequest
from biensperience.models.user import User

router = APIRouter(prefix="/api/flags", tags=["flags"])


def get_ai_cache(request: Request) -> AIStatusCache:
    cache = getattr(request.app.state, "ai_status_cache", None)
    if cache is None:
        cache = AIStatusCache()
        request.app.state.ai_status_cache = cache
    return cache


@router.get("")
def list_flags():
    """Registry of known flags plus the global switches."""
    return {
        "success": True,
        "data": {
            "flags": {key: flag.model_dump() for key, flag in flag_service.get_all_flags().items()},
            "global": flag_service.get_global_flags(),
        },
    }


@router.get("/me")
def my_flags(user: User = Depends(get_current_user), cache: AIStatusCache = Depends(get_ai_cache)):
    grants = flag_service.get_user_feature_flags(user)
    return {
        "success": True,
        "data": {
            "flags": [g.model_dump(mode="json") for g in grants],
            "ai_available": flag_service.ai_available(user, cache),
            "super_admin": user.super_admin,
        },
    }


@router.post("/evaluate")
def evaluate(body: EvaluateFlagRequest, user: User = Depends(get_current_user)):
    """
    Evaluate a flag for the caller, optionally against an entity creator.

    A missing creator is a denial, not an error.
    """
    creator = get_user(body.creator_id) if body.creator_id else None
    decision = flag_service.evaluate_flag(user, creator, body.flag, body.context)
    data = decision.model_dump(mode="json")
    if not decision.allowed:
        data["denial"] = flag_service.flag_denial_payload(body.flag)
    return {"success": True, "data": data}


@router.put("/users/{user_id}/{flag}")
def grant_flag(
    user_id: str,
    flag: str,
    body: GrantFlagRequest,
    admin: User = Depends(require_super_admin),
    cache: AIStatusCache = Depends(get_ai_cache),
):
    grant = flag_service.add_feature_flag(
        user_id,
        flag,
        config=body.config,
        expires_at=body.expires_at,
        granted_by=admin.user_id,
        reason=body.reason,
    )
    cache.invalidate(user_id)
    return {"success": True, "data": grant.model_dump(mode="json")}


@router.delete("/users/{user_id}/{flag}")
def revoke_flag(
    user_id: str,
    flag: str,
    admin: User = Depends(require_super_admin),
    cache: AIStatusCache = Depends(get_ai_cache),
):
    require_user(user_id)
    if not flag_service.remove_feature_flag(user_id, flag, removed_by=admin.user_id):
        raise NotFoundError(f"User {user_id} has no grant for {flag}")
    cache.invalidate(user_id)
    return {"success": True, "data": {"user_id": user_id, "flag": flag, "removed": True}}
