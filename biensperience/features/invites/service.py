"""
biensperience/features/invites/service.py

Invite code lifecycle: issue, bulk issue, validate, deactivate, list, track.

Redemption lives in redemption.py; redeem_code is re-exported here.
"""

import logging
from collections.abc import Mapping
from uuid import uuid4
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select

from biensperience.core.config import settings
from biensperience.core.database import get_db_session, experiences as experiences_table, destinations as destinations_table
from biensperience.core.errors import AppError, ConflictError, NotFoundError, ValidationError
from biensperience.core.logging import log_event
from biensperience.features.invites.codes import generate_code, normalize_code
from biensperience.features.invites.persistence import InvitePersistence
from biensperience.features.invites.redemption import as_aware, check_invite_state, redeem_code  # noqa: F401
from biensperience.features.notifications.hooks import PostCommitHooks
from biensperience.features.notifications.mailer import InviteMailer, ResendMailer
from biensperience.features.users.service import get_user, get_user_by_email, normalize_email
from biensperience.models.invite import (
    BulkCreateResult,
    BulkInviteRow,
    BulkRowError,
    CreateInviteRequest,
    InviteCode,
    InviteCreationResult,
    InviteDetails,
    InviteErrorCode,
    InviteStats,
    INVITE_ERROR_MESSAGES,
    ValidationResult,
)
from biensperience.models.notification import DispatchResult
from biensperience.models.permission import Role
from biensperience.models.user import User

logger = logging.getLogger(__name__)


def _dedupe(ids: Iterable[str]) -> List[str]:
    """Drop blanks and repeats, keeping first-seen order."""
    return list(dict.fromkeys(i.strip() for i in ids if i and i.strip()))


def _missing_ids(session, table, column: str, ids: List[str]) -> List[str]:
    if not ids:
        return []
    col = table.c[column]
    found = {row[0] for row in session.execute(select(col).where(col.in_(ids))).fetchall()}
    return [i for i in ids if i not in found]


def _failure(code: InviteErrorCode, invite: Optional[InviteCode] = None) -> ValidationResult:
    return ValidationResult(valid=False, error=INVITE_ERROR_MESSAGES[code], error_code=code, invite=invite)


def _dispatch_invite_email(invite: InviteCode, inviter: User, mailer: InviteMailer) -> DispatchResult:
    return mailer.send_invite_email(
        invite.email,
        inviter.display_name,
        invite.code,
        invitee_name=invite.invitee_name,
        custom_message=invite.custom_message,
        bundle_counts={
            "experiences": len(invite.experiences),
            "destinations": len(invite.destinations),
        },
    )


def create_invite(
    creator_id: str,
    request: CreateInviteRequest,
    *,
    notify: bool = False,
    sent_from: Optional[str] = None,
    mailer: Optional[InviteMailer] = None,
    code_generator: Callable[[], str] = generate_code,
) -> InviteCreationResult:
    """
    Issue a new invite code.

    The email (when notify is set and the invite has an address) is sent
    after the invite is committed; its outcome is recorded in
    invite_metadata and never raised.

    Raises:
        ValidationError: max_uses < 1, malformed email, unknown creator,
            unknown experience or destination ids
        ConflictError: no unique code after the configured number of attempts
    """
    if request.max_uses < 1:
        raise ValidationError("max_uses must be at least 1", field="max_uses")

    email = normalize_email(request.email)
    if email is not None and "@" not in email:
        raise ValidationError(f"Invalid email address: {request.email}", field="email")

    try:
        permission_type = Role(str(request.permission_type).strip().lower()).value
    except ValueError:
        raise ValidationError(f"Invalid permission type: {request.permission_type}", field="permission_type")

    creator = get_user(creator_id)
    if creator is None:
        raise ValidationError(f"Creator not found: {creator_id}", field="created_by")

    experience_ids = _dedupe(request.experiences)
    destination_ids = _dedupe(request.destinations)
    with get_db_session() as session:
        missing = _missing_ids(session, experiences_table, "experience_id", experience_ids)
        if missing:
            raise ValidationError(f"Experience not found: {', '.join(missing)}", field="experiences")
        missing = _missing_ids(session, destinations_table, "destination_id", destination_ids)
        if missing:
            raise ValidationError(f"Destination not found: {', '.join(missing)}", field="destinations")

    now = datetime.now(timezone.utc)
    invite_id = str(uuid4())
    values = {
        "invite_id": invite_id,
        "created_by": creator_id,
        "email": email,
        "invitee_name": request.invitee_name.strip() if request.invitee_name else None,
        "experiences": experience_ids,
        "destinations": destination_ids,
        "max_uses": request.max_uses,
        "uses_count": 0,
        "expires_at": as_aware(request.expires_at) if request.expires_at else None,
        "active": True,
        "custom_message": request.custom_message.strip() if request.custom_message else None,
        "invite_metadata": {"email_sent": False, "sent_from": sent_from},
        "mutual_follow": request.mutual_follow,
        "permission_type": permission_type,
        "created_at": now,
        "updated_at": now,
    }

    attempts = max(1, settings.INVITE_CODE_MAX_ATTEMPTS)
    for _ in range(attempts):
        values["code"] = normalize_code(code_generator())
        if InvitePersistence.insert_invite(values):
            break
        logger.warning("[invites] code collision, retrying", extra={"invite_id": invite_id})
    else:
        raise ConflictError("Failed to generate unique invite code after maximum attempts")

    invite = InvitePersistence.get_by_id(invite_id)
    log_event(
        "info",
        "invite.created",
        user_id=creator_id,
        invite_id=invite_id,
        event_type="invite.created",
        extra={"max_uses": invite.max_uses, "experiences": len(experience_ids), "destinations": len(destination_ids)},
    )

    if not (notify and invite.email):
        return InviteCreationResult(invite=invite)

    active_mailer = mailer or ResendMailer.from_settings()
    hooks = PostCommitHooks()
    hooks.add("invite_email", lambda: _dispatch_invite_email(invite, creator, active_mailer))
    outcome = hooks.run()

    dispatch = outcome["results"].get("invite_email")
    if dispatch is None:
        error = outcome["errors"][0]["error"] if outcome["errors"] else "Email dispatch failed"
        dispatch = DispatchResult(sent=False, error=error)

    InvitePersistence.merge_metadata(
        invite_id,
        {
            "email_sent": dispatch.sent,
            "sent_at": dispatch.sent_at.isoformat() if dispatch.sent_at else None,
            "sent_from": sent_from,
            "email_error": dispatch.error,
        },
    )
    if not dispatch.sent and not dispatch.skipped:
        log_event(
            "warning",
            "invite.email_failed",
            user_id=creator_id,
            invite_id=invite_id,
            event_type="invite.dispatch_failed",
            error_code="dispatch_failed",
            extra={"error": dispatch.error},
        )

    metadata: Dict[str, Any] = {}
    if outcome["errors"]:
        metadata["hook_errors"] = outcome["errors"]
    return InviteCreationResult(
        invite=InvitePersistence.get_by_id(invite_id) or invite,
        dispatch=dispatch,
        metadata=metadata,
    )


def bulk_create_invites(
    rows: List[Any],
    creator_id: str,
    *,
    notify: bool = False,
    mailer: Optional[InviteMailer] = None,
) -> BulkCreateResult:
    """
    Issue one invite per row, sequentially.

    Per-row problems are collected as {row, email, name, error} with 1-based
    rows; they never abort the remaining rows.
    """
    if len(rows) > settings.BULK_INVITE_MAX_ROWS:
        raise ValidationError(
            f"Bulk invite limited to {settings.BULK_INVITE_MAX_ROWS} rows",
            field="invites",
        )

    created: List[InviteCode] = []
    errors: List[BulkRowError] = []
    for index, raw in enumerate(rows, start=1):
        if isinstance(raw, BulkInviteRow):
            raw_dict = raw.model_dump()
        else:
            raw_dict = dict(raw) if isinstance(raw, Mapping) else {}
        try:
            row = raw if isinstance(raw, BulkInviteRow) else BulkInviteRow.model_validate(raw)
            result = create_invite(
                creator_id,
                CreateInviteRequest(
                    email=row.email,
                    invitee_name=row.name,
                    experiences=row.experiences,
                    destinations=row.destinations,
                    max_uses=row.max_uses,
                    expires_at=row.expires_at,
                    custom_message=row.custom_message,
                ),
                notify=notify,
                mailer=mailer,
            )
        except (AppError, PydanticValidationError) as exc:
            message = exc.message if isinstance(exc, AppError) else str(exc)
            errors.append(
                BulkRowError(
                    row=index,
                    email=raw_dict.get("email"),
                    name=raw_dict.get("name"),
                    error=message,
                )
            )
            continue
        created.append(result.invite)

    log_event(
        "info",
        "invite.bulk_created",
        user_id=creator_id,
        event_type="invite.bulk_created",
        extra={"created": len(created), "failed": len(errors)},
    )
    return BulkCreateResult(created=created, errors=errors)


def validate_code(code: Optional[str], email: Optional[str] = None, *, now: Optional[datetime] = None) -> ValidationResult:
    """
    Read-only check of a code.

    Order: existence, active, not expired, uses remaining, email match.

    Raises:
        ValidationError: empty code
    """
    normalized = normalize_code(code)
    invite = InvitePersistence.get_by_code(normalized)
    failure = check_invite_state(invite, email, as_aware(now))
    if failure is not None:
        return _failure(failure)
    return ValidationResult(valid=True, invite=invite)


def deactivate_invite(invite_id: str) -> bool:
    """
    Permanently deactivate an invite.

    Returns:
        True on the first deactivation, False if it was already inactive

    Raises:
        NotFoundError: unknown invite id
    """
    outcome = InvitePersistence.deactivate(invite_id)
    if outcome is None:
        raise NotFoundError(f"Invite not found: {invite_id}")
    if outcome:
        log_event("info", "invite.deactivated", invite_id=invite_id, event_type="invite.deactivated")
    return outcome


def get_invite(invite_id: str) -> InviteCode:
    invite = InvitePersistence.get_by_id(invite_id)
    if invite is None:
        raise NotFoundError(f"Invite not found: {invite_id}")
    return invite


def get_user_invites(user_id: str) -> List[InviteCode]:
    """Invites created by a user, newest first."""
    return InvitePersistence.list_invites(created_by=user_id)


def list_all_invites() -> List[InviteCode]:
    """Every invite, newest first. Callers restrict this to super admins."""
    return InvitePersistence.list_invites()


def get_invite_stats(user_id: str, now: Optional[datetime] = None) -> InviteStats:
    current = as_aware(now)
    invites = get_user_invites(user_id)
    return InviteStats(
        total_invites=len(invites),
        active_invites=sum(1 for i in invites if i.active),
        total_redemptions=sum(i.uses_count for i in invites),
        expired_invites=sum(1 for i in invites if i.is_expired(current)),
    )


def get_invite_details(code: str, user_id: str, now: Optional[datetime] = None) -> InviteDetails:
    """
    Tracking view of one of the user's own invites.

    Raises:
        NotFoundError: unknown code, or not created by this user
    """
    normalized = normalize_code(code)
    invite = InvitePersistence.get_by_code(normalized)
    if invite is None or invite.created_by != user_id:
        raise NotFoundError("Invite code not found")

    current = as_aware(now)
    return InviteDetails(
        invite=invite,
        redeemed_by=InvitePersistence.redeemed_by(invite.invite_id),
        usage_percentage=round(invite.uses_count / invite.max_uses * 100, 1),
        is_expired=invite.is_expired(current),
        is_available=invite.is_redeemable(current),
    )


def create_email_invite(
    creator_id: str,
    email: str,
    name: str,
    resource_type: str,
    resource_id: str,
    resource_name: Optional[str] = None,
    custom_message: Optional[str] = None,
    *,
    mailer: Optional[InviteMailer] = None,
) -> InviteCreationResult:
    """
    Invite a non-member to collaborate on one experience or destination.

    Raises:
        ConflictError: a user with that email already exists
        ValidationError: unknown resource type or resource
    """
    if get_user_by_email(email) is not None:
        raise ConflictError("A user with this email already exists; add them as a collaborator instead")

    kind = (resource_type or "").strip().lower()
    if kind not in {"experience", "destination"}:
        raise ValidationError(f"Unsupported resource type: {resource_type}", field="resource_type")

    message = custom_message
    if not message and resource_name:
        message = f"You've been invited to collaborate on {resource_name}."

    request = CreateInviteRequest(
        email=email,
        invitee_name=name,
        experiences=[resource_id] if kind == "experience" else [],
        destinations=[resource_id] if kind == "destination" else [],
        max_uses=1,
        custom_message=message,
        permission_type=Role.COLLABORATOR.value,
    )
    return create_invite(creator_id, request, notify=True, mailer=mailer)
