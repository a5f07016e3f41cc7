"""
biensperience/features/invites/redemption.py

Redeem an invite code: claim one use atomically, then materialize a plan
snapshot for every bundled experience.

The claim is a single transaction: a redemption row (unique per invite and
user) plus a conditional increment of uses_count. Plans are created after
that commit, one transaction per experience, so a broken experience never
undoes the claim or the other plans.
"""

import logging
from uuid import uuid4
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select, insert, update, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from biensperience.core.database import get_db_session, invite_codes, invite_redemptions, plans
from biensperience.core.errors import AppError, NotFoundError
from biensperience.core.logging import log_event
from biensperience.features.invites.codes import normalize_code
from biensperience.features.invites.persistence import InvitePersistence
from biensperience.features.notifications.hooks import PostCommitHooks
from biensperience.features.permissions.entities import PlanEntity
from biensperience.features.permissions.lifecycle import get_experience
from biensperience.features.permissions.service import insert_owner_entry
from biensperience.features.users.service import normalize_email, require_user
from biensperience.models.invite import (
    INVITE_ERROR_MESSAGES,
    InviteCode,
    InviteErrorCode,
    RedemptionFailure,
    RedemptionResult,
)
from biensperience.models.plan import Plan, PlanItemSnapshot

logger = logging.getLogger(__name__)


def as_aware(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def check_email(invite: InviteCode, email: Optional[str]) -> Optional[InviteErrorCode]:
    """Only rejects when both sides carry an address and they differ."""
    supplied = normalize_email(email)
    if invite.email and supplied and invite.email != supplied:
        return InviteErrorCode.EMAIL_MISMATCH
    return None


def check_invite_state(
    invite: Optional[InviteCode],
    email: Optional[str],
    now: datetime,
    *,
    check_uses: bool = True,
) -> Optional[InviteErrorCode]:
    """First failing check, in order: existence, active, expiry, uses, email."""
    if invite is None:
        return InviteErrorCode.NOT_FOUND
    if not invite.active:
        return InviteErrorCode.DEACTIVATED
    if invite.is_expired(now):
        return InviteErrorCode.EXPIRED
    if check_uses and invite.is_exhausted:
        return InviteErrorCode.EXHAUSTED
    return check_email(invite, email)


def _rejected(reason: InviteErrorCode, invite: Optional[InviteCode], user_id: str) -> RedemptionResult:
    log_event(
        "info",
        "invite.redeem_rejected",
        user_id=user_id,
        invite_id=invite.invite_id if invite else None,
        event_type="invite.redeem_rejected",
        error_code=reason.value,
    )
    return RedemptionResult(
        success=False,
        error=INVITE_ERROR_MESSAGES[reason],
        error_code=reason,
        invite=invite,
    )


def _claim(invite: InviteCode, user_id: str, now: datetime) -> Tuple[bool, Optional[InviteErrorCode]]:
    """
    Record the redemption and take one use.

    Returns:
        (already_redeemed, rejection reason or None)
    """
    for attempt in range(2):
        try:
            with get_db_session() as session:
                if InvitePersistence.has_redeemed(session, invite.invite_id, user_id):
                    return True, None

                session.execute(
                    insert(invite_redemptions).values(
                        invite_id=invite.invite_id,
                        user_id=user_id,
                        redeemed_at=now,
                    )
                )
                result = session.execute(
                    update(invite_codes)
                    .where(invite_codes.c.invite_id == invite.invite_id)
                    .where(invite_codes.c.active.is_(True))
                    .where(invite_codes.c.uses_count < invite_codes.c.max_uses)
                    .where(or_(invite_codes.c.expires_at.is_(None), invite_codes.c.expires_at > now))
                    .values(uses_count=invite_codes.c.uses_count + 1, updated_at=now)
                )
                if result.rowcount == 1:
                    return False, None

                session.rollback()
                row = session.execute(
                    select(invite_codes).where(invite_codes.c.invite_id == invite.invite_id)
                ).first()
                current = InvitePersistence.row_to_invite(row) if row else None
                reason = check_invite_state(current, None, now)
                return False, reason or InviteErrorCode.EXHAUSTED
        except IntegrityError:
            # Same user redeeming concurrently; the retry sees their row
            if attempt == 0:
                continue
            raise
    return True, None


def _existing_plan_id(user_id: str, experience_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(plans.c.plan_id)
            .where(plans.c.user_id == user_id)
            .where(plans.c.experience_id == experience_id)
        ).first()
        return row.plan_id if row else None


def create_plan_from_experience(experience_id: str, user_id: str, now: datetime) -> Optional[Plan]:
    """
    Snapshot an experience's plan items into a new plan owned by the user.

    Returns:
        The plan, or None if the user already has one for this experience

    Raises:
        NotFoundError: the experience no longer exists
    """
    if _existing_plan_id(user_id, experience_id):
        return None

    experience = get_experience(experience_id)
    if experience is None:
        raise NotFoundError(f"Experience not found: {experience_id}")

    plan = Plan(
        plan_id=str(uuid4()),
        experience_id=experience_id,
        user_id=user_id,
        plan=[
            PlanItemSnapshot(
                plan_item_id=item.plan_item_id,
                complete=False,
                cost=item.cost,
                planning_days=item.planning_days,
                text=item.text,
                url=item.url,
                photo=item.photo,
                parent=item.parent,
            )
            for item in experience.plan_items
        ],
        created_at=now,
    )

    try:
        with get_db_session() as session:
            session.execute(
                insert(plans).values(
                    plan_id=plan.plan_id,
                    experience_id=experience_id,
                    user_id=user_id,
                    plan=[snapshot.model_dump() for snapshot in plan.plan],
                    created_at=now,
                )
            )
            insert_owner_entry(session, PlanEntity(plan.plan_id), user_id, now)
    except IntegrityError:
        return None
    return plan


def _materialize(invite: InviteCode, user_id: str, now: datetime):
    created: List[Plan] = []
    skipped: List[str] = []
    failures: List[RedemptionFailure] = []
    for experience_id in invite.experiences:
        try:
            plan = create_plan_from_experience(experience_id, user_id, now)
        except (AppError, SQLAlchemyError) as exc:
            message = exc.message if isinstance(exc, AppError) else str(exc)
            logger.warning(
                "[invites] plan creation failed",
                extra={"invite_id": invite.invite_id, "user_id": user_id, "experience_id": experience_id, "error": message},
            )
            failures.append(RedemptionFailure(experience_id=experience_id, error=message))
            continue
        if plan is None:
            skipped.append(experience_id)
        else:
            created.append(plan)
    return created, skipped, failures


def redeem_code(
    code: Optional[str],
    user_id: str,
    *,
    email: Optional[str] = None,
    now: Optional[datetime] = None,
    hooks: Optional[PostCommitHooks] = None,
) -> RedemptionResult:
    """
    Redeem a code for a user.

    A repeat redemption by the same user succeeds without taking another use
    and only creates plans that are still missing.

    Raises:
        ValidationError: empty code
        NotFoundError: unknown user
    """
    normalized = normalize_code(code)
    require_user(user_id)
    current = as_aware(now)

    invite = InvitePersistence.get_by_code(normalized)
    reason = check_invite_state(invite, email, current, check_uses=False)
    if reason is not None:
        return _rejected(reason, invite, user_id)

    already_redeemed, reason = _claim(invite, user_id, current)
    if reason is not None:
        return _rejected(reason, InvitePersistence.get_by_id(invite.invite_id), user_id)

    created, skipped, failures = _materialize(invite, user_id, current)

    post_commit = hooks or PostCommitHooks()
    post_commit.add(
        "audit",
        lambda: log_event(
            "info",
            "invite.redeemed",
            user_id=user_id,
            invite_id=invite.invite_id,
            event_type="invite.redeemed",
            extra={
                "already_redeemed": already_redeemed,
                "plans_created": len(created),
                "experiences_skipped": len(skipped),
                "failures": len(failures),
            },
        ),
    )
    outcome = post_commit.run()

    metadata = {}
    if outcome["errors"]:
        metadata["hook_errors"] = outcome["errors"]

    return RedemptionResult(
        success=True,
        invite=InvitePersistence.get_by_id(invite.invite_id),
        plans_created=created,
        experiences_skipped=skipped,
        failures=failures,
        destinations=list(invite.destinations),
        custom_message=invite.custom_message,
        already_redeemed=already_redeemed,
        metadata=metadata,
    )
