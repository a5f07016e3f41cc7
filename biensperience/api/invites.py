"""
biensperience/api/invites.py
FastAPI routes for invite codes.

Domain errors (AppError) propagate to the app-level handlers.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from biensperience.core.auth import get_current_user, require_super_admin
from biensperience.core.errors import AuthorizationDeniedError, NotFoundError
from biensperience.features.invites import service as invite_service
from biensperience.features.invites.persistence import InvitePersistence
from biensperience.features.notifications.mailer import InviteMailer
from biensperience.models.invite import (
    BulkInviteRequest,
    CreateInviteRequest,
    EmailInviteRequest,
    RedeemCodeRequest,
    ValidateCodeRequest,
)
from biensperience.models.user import User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/invites", tags=["invites"])


def get_mailer(request: Request) -> Optional[InviteMailer]:
    return getattr(request.app.state, "mailer", None)


@router.post("")
def create_invite(
    body: CreateInviteRequest,
    user: User = Depends(get_current_user),
    mailer: Optional[InviteMailer] = Depends(get_mailer),
):
    """
    Issue an invite code.

    Request body:
        email?, invitee_name?, experiences, destinations, max_uses,
        expires_at?, custom_message?, send_email

    Returns:
        The invite plus the email dispatch outcome (when send_email)
    """
    result = invite_service.create_invite(
        user.user_id,
        body,
        notify=body.send_email,
        sent_from=user.user_id,
        mailer=mailer,
    )
    return {"success": True, "data": result.model_dump(mode="json")}


@router.post("/bulk")
def bulk_create_invites(
    body: BulkInviteRequest,
    user: User = Depends(require_super_admin),
    mailer: Optional[InviteMailer] = Depends(get_mailer),
):
    """Issue one invite per row. Row failures are reported, not raised."""
    result = invite_service.bulk_create_invites(
        body.invites,
        user.user_id,
        notify=body.send_emails,
        mailer=mailer,
    )
    return {
        "success": True,
        "created": len(result.created),
        "failed": len(result.errors),
        "data": result.model_dump(mode="json"),
    }


@router.post("/validate")
def validate_code(body: ValidateCodeRequest):
    """Check a code without using it. No authentication needed."""
    result = invite_service.validate_code(body.code, body.email)
    if not result.valid:
        return {
            "success": True,
            "data": {"valid": False, "error": result.error, "error_code": result.error_code.value},
        }
    invite = result.invite
    return {
        "success": True,
        "data": {
            "valid": True,
            "experiences_count": len(invite.experiences),
            "destinations_count": len(invite.destinations),
            "invitee_name": invite.invitee_name,
            "custom_message": invite.custom_message,
        },
    }


@router.post("/redeem")
def redeem_code(body: RedeemCodeRequest, user: User = Depends(get_current_user)):
    result = invite_service.redeem_code(body.code, user.user_id, email=user.email)
    return {"success": result.success, "data": result.model_dump(mode="json")}


@router.post("/email")
def create_email_invite(
    body: EmailInviteRequest,
    user: User = Depends(get_current_user),
    mailer: Optional[InviteMailer] = Depends(get_mailer),
):
    """Invite someone without an account to collaborate on one resource."""
    result = invite_service.create_email_invite(
        user.user_id,
        body.email,
        body.name,
        body.resource_type,
        body.resource_id,
        body.resource_name,
        body.custom_message,
        mailer=mailer,
    )
    return {"success": True, "data": result.model_dump(mode="json")}


@router.get("")
def list_my_invites(user: User = Depends(get_current_user)):
    invites = invite_service.get_user_invites(user.user_id)
    return {"success": True, "count": len(invites), "data": [i.model_dump(mode="json") for i in invites]}


@router.get("/all")
def list_all_invites(user: User = Depends(require_super_admin)):
    invites = invite_service.list_all_invites()
    return {"success": True, "count": len(invites), "data": [i.model_dump(mode="json") for i in invites]}


@router.get("/stats")
def invite_stats(user: User = Depends(get_current_user)):
    stats = invite_service.get_invite_stats(user.user_id)
    return {"success": True, "data": stats.model_dump()}


@router.get("/details/{code}")
def invite_details(code: str, user: User = Depends(get_current_user)):
    details = invite_service.get_invite_details(code, user.user_id)
    return {"success": True, "data": details.model_dump(mode="json")}


@router.delete("/{invite_id}")
def deactivate_invite(invite_id: str, user: User = Depends(get_current_user)):
    """Deactivate an invite. Only its creator or a super admin may do this."""
    invite = InvitePersistence.get_by_id(invite_id)
    if invite is None:
        raise NotFoundError(f"Invite not found: {invite_id}")
    if invite.created_by != user.user_id and not user.super_admin:
        raise AuthorizationDeniedError("Only the invite creator can deactivate it")

    changed = invite_service.deactivate_invite(invite_id)
    return {"success": True, "data": {"invite_id": invite_id, "deactivated": changed}}
