"""
biensperience/features/flags/service.py

Feature flag evaluation and grant storage.

Handles:
- Context resolution (entity creator vs. logged-in user)
- Actor-scoped super-admin bypass
- Per-user grants with expiry, plus env-driven global flags
- Structured logs for grant changes and denials
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, insert, update, delete
from sqlalchemy.exc import IntegrityError

from biensperience.core.config import Settings, settings
from biensperience.core.database import get_db_session, user_feature_flags, users as app_users
from biensperience.core.errors import AuthorizationDeniedError, NotFoundError, ValidationError
from biensperience.features.flags.cache import AIStatusCache
from biensperience.models.flags import (
    FeatureFlagContext,
    FlagDecision,
    FlagDefinition,
    FlagOptions,
)
from biensperience.models.user import FeatureFlagGrant, User


logger = logging.getLogger(__name__)

FEATURE_FLAGS: Dict[str, FlagDefinition] = {
    "ai_features": FlagDefinition(
        key="ai_features",
        description="Access to AI-powered features (autocomplete, improve, translate)",
        tier="premium",
    ),
    "beta_ui": FlagDefinition(
        key="beta_ui",
        description="Access to beta user interface features",
        tier="beta",
    ),
    "advanced_analytics": FlagDefinition(
        key="advanced_analytics",
        description="Access to advanced analytics and insights",
        tier="premium",
    ),
    "real_time_collaboration": FlagDefinition(
        key="real_time_collaboration",
        description="Real-time collaboration via WebSocket",
        tier="premium",
    ),
    "document_ai_parsing": FlagDefinition(
        key="document_ai_parsing",
        description="AI-powered document parsing and extraction",
        tier="premium",
    ),
    "bulk_export": FlagDefinition(
        key="bulk_export",
        description="Bulk export of plans and experiences",
        tier="premium",
    ),
    "curator": FlagDefinition(
        key="curator",
        description="Curator designation for creating curated experiences",
        tier="curator",
    ),
    "stream_chat": FlagDefinition(
        key="stream_chat",
        description="In-app messaging powered by Stream Chat",
        tier="beta",
    ),
}

# Global flag key -> settings attribute
GLOBAL_FLAG_SETTINGS = {
    "MAINTENANCE_MODE": "FEATURE_MAINTENANCE_MODE",
    "NEW_USER_REGISTRATION": "FEATURE_NEW_USER_REGISTRATION",
    "PUBLIC_API": "FEATURE_PUBLIC_API",
}

_CREATOR_ALIASES = {FeatureFlagContext.ENTITY_CREATOR.value, "creator", "owner"}
_ACTOR_ALIASES = {FeatureFlagContext.LOGGED_IN_USER.value, "user", "actor", "viewer"}


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _normalize_key(flag_key: str) -> str:
    if not flag_key or not str(flag_key).strip():
        raise ValidationError("Feature flag key is required", field="flag")
    return str(flag_key).strip().lower()


def normalize_context(value: Any) -> FeatureFlagContext:
    """Map a context string or alias to one of the two contexts.

    Unrecognized values resolve to entity_creator, the explicitly scoped check.
    """
    if isinstance(value, FeatureFlagContext):
        return value
    normalized = str(value or "").strip().lower()
    if normalized in _ACTOR_ALIASES:
        return FeatureFlagContext.LOGGED_IN_USER
    if normalized in _CREATOR_ALIASES:
        return FeatureFlagContext.ENTITY_CREATOR
    return FeatureFlagContext.ENTITY_CREATOR


def _find_grant(user: Optional[User], flag_key: str) -> Optional[FeatureFlagGrant]:
    if user is None:
        return None
    key = flag_key.lower()
    for grant in user.feature_flags:
        if grant.flag == key:
            return grant
    return None


def _grant_is_active(grant: FeatureFlagGrant, now: datetime, check_expiry: bool) -> bool:
    if not grant.enabled:
        return False
    if check_expiry and grant.expires_at is not None and grant.expires_at <= now:
        return False
    return True


def has_feature_flag(
    user: Optional[User],
    flag_key: str,
    *,
    check_expiry: bool = True,
    allow_super_admin: bool = True,
    now: Optional[datetime] = None,
) -> bool:
    """True iff the user holds an enabled, unexpired grant (or is a super admin)."""
    if user is None:
        return False
    if allow_super_admin and user.super_admin:
        return True
    grant = _find_grant(user, flag_key)
    if grant is None:
        return False
    return _grant_is_active(grant, _normalize_now(now), check_expiry)


def evaluate_flag(
    acting_user: Optional[User],
    creator_user: Optional[User],
    flag_key: str,
    context: Any = FeatureFlagContext.ENTITY_CREATOR,
    options: Optional[FlagOptions] = None,
    *,
    now: Optional[datetime] = None,
) -> FlagDecision:
    """
    Decide a flag in context.

    The super-admin bypass looks at the acting user only, whatever the
    context. Creator context never falls back to the actor. Never raises
    for a missing user.
    """
    opts = options or FlagOptions()
    resolved = normalize_context(context)

    if opts.allow_super_admin and acting_user is not None and acting_user.super_admin:
        return FlagDecision(allowed=True, context=resolved, reason="super_admin_bypass", super_admin_bypass=True)

    if resolved == FeatureFlagContext.LOGGED_IN_USER:
        subject = acting_user
        missing_reason = "no_acting_user"
    else:
        subject = creator_user
        missing_reason = "no_entity_creator"

    if subject is None:
        return FlagDecision(allowed=False, context=resolved, reason=missing_reason)

    # Bypass already handled for the actor; the subject's own admin status does not count
    allowed = has_feature_flag(
        subject,
        flag_key,
        check_expiry=opts.check_expiry,
        allow_super_admin=False,
        now=now,
    )
    return FlagDecision(allowed=allowed, context=resolved, reason="granted" if allowed else "not_granted")


def require_flag(
    acting_user: Optional[User],
    creator_user: Optional[User],
    flag_key: str,
    context: Any = FeatureFlagContext.ENTITY_CREATOR,
    options: Optional[FlagOptions] = None,
    *,
    now: Optional[datetime] = None,
) -> FlagDecision:
    """evaluate_flag for route code: raises AuthorizationDeniedError on denial."""
    decision = evaluate_flag(acting_user, creator_user, flag_key, context, options, now=now)
    if not decision.allowed:
        payload = flag_denial_payload(flag_key)
        logger.warning(
            "[flags] feature flag denied",
            extra={
                "user_id": acting_user.user_id if acting_user else None,
                "flag": flag_key,
                "flag_context": decision.context.value,
                "reason": decision.reason,
            },
        )
        raise AuthorizationDeniedError(payload["message"], code="feature_flag_required")
    return decision


def get_flag_metadata(flag_key: str) -> Optional[FlagDefinition]:
    return FEATURE_FLAGS.get(str(flag_key).strip().lower())


def get_all_flags() -> Dict[str, FlagDefinition]:
    return dict(FEATURE_FLAGS)


def has_global_flag(flag_key: str, settings_obj: Optional[Settings] = None) -> bool:
    cfg = settings_obj or settings
    attr = GLOBAL_FLAG_SETTINGS.get(str(flag_key).strip().upper())
    if attr is None:
        return False
    return getattr(cfg, attr, False) is True


def get_global_flags(settings_obj: Optional[Settings] = None) -> Dict[str, bool]:
    return {key: has_global_flag(key, settings_obj) for key in GLOBAL_FLAG_SETTINGS}


def flag_denial_payload(flag_key: str, message: Optional[str] = None) -> Dict[str, Any]:
    """Response body for a denied flag check."""
    metadata = get_flag_metadata(flag_key)
    if metadata:
        default_message = f'This feature requires the "{metadata.description}" to be enabled for your account.'
    else:
        default_message = f'This feature requires the "{flag_key}" feature flag to be enabled.'
    return {
        "success": False,
        "error": "Feature not available",
        "code": "FEATURE_FLAG_REQUIRED",
        "flag": flag_key,
        "message": message or default_message,
        "tier": metadata.tier if metadata else "premium",
    }


def get_user_feature_flags(
    user: Optional[User],
    *,
    include_expired: bool = False,
    now: Optional[datetime] = None,
) -> List[FeatureFlagGrant]:
    """Enabled grants, excluding expired ones unless asked."""
    if user is None:
        return []
    current = _normalize_now(now)
    return [
        grant
        for grant in user.feature_flags
        if _grant_is_active(grant, current, check_expiry=not include_expired)
    ]


def get_feature_flag_config(user: Optional[User], flag_key: str) -> Optional[Dict[str, Any]]:
    grant = _find_grant(user, flag_key)
    if grant is None or not grant.enabled:
        return None
    return dict(grant.config or {})


def _require_user_row(session, user_id: str) -> None:
    row = session.execute(select(app_users.c.user_id).where(app_users.c.user_id == user_id)).first()
    if not row:
        raise NotFoundError(f"User not found: {user_id}")


def add_feature_flag(
    user_id: str,
    flag_key: str,
    *,
    config: Optional[Dict[str, Any]] = None,
    expires_at: Optional[datetime] = None,
    granted_by: Optional[str] = None,
    reason: Optional[str] = None,
) -> FeatureFlagGrant:
    """Grant (or re-grant) a flag. An existing grant is replaced and re-enabled."""
    key = _normalize_key(flag_key)
    now = datetime.now(timezone.utc)
    values = {
        "enabled": True,
        "config": config or {},
        "granted_at": now,
        "granted_by": granted_by,
        "expires_at": expires_at,
        "reason": reason,
    }

    for attempt in range(2):
        try:
            with get_db_session() as session:
                _require_user_row(session, user_id)
                existing = session.execute(
                    select(user_feature_flags.c.id)
                    .where(user_feature_flags.c.user_id == user_id)
                    .where(user_feature_flags.c.flag == key)
                ).first()
                if existing:
                    session.execute(
                        update(user_feature_flags).where(user_feature_flags.c.id == existing.id).values(**values)
                    )
                else:
                    session.execute(insert(user_feature_flags).values(user_id=user_id, flag=key, **values))
            break
        except IntegrityError:
            if attempt == 1:
                raise

    logger.info("[flags] feature flag added", extra={"user_id": user_id, "flag": key, "granted_by": granted_by})
    return FeatureFlagGrant(flag=key, **values)


def remove_feature_flag(
    user_id: str,
    flag_key: str,
    *,
    removed_by: Optional[str] = None,
    reason: Optional[str] = None,
) -> bool:
    key = _normalize_key(flag_key)
    with get_db_session() as session:
        _require_user_row(session, user_id)
        result = session.execute(
            delete(user_feature_flags)
            .where(user_feature_flags.c.user_id == user_id)
            .where(user_feature_flags.c.flag == key)
        )
        removed = result.rowcount > 0

    if removed:
        logger.info(
            "[flags] feature flag removed",
            extra={"user_id": user_id, "flag": key, "removed_by": removed_by, "reason": reason},
        )
    return removed


def disable_feature_flag(user_id: str, flag_key: str) -> bool:
    """Disable without deleting so the grant history is kept."""
    key = _normalize_key(flag_key)
    with get_db_session() as session:
        _require_user_row(session, user_id)
        result = session.execute(
            update(user_feature_flags)
            .where(user_feature_flags.c.user_id == user_id)
            .where(user_feature_flags.c.flag == key)
            .values(enabled=False)
        )
        disabled = result.rowcount > 0

    if disabled:
        logger.info("[flags] feature flag disabled", extra={"user_id": user_id, "flag": key})
    return disabled


def ai_available(user: Optional[User], cache: AIStatusCache) -> bool:
    """Whether AI features are available to the user, memoized per user."""
    if user is None:
        return False
    return cache.get_or_compute(user.user_id, lambda: has_feature_flag(user, "ai_features"))
