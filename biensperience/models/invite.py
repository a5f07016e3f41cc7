"""
biensperience/models/invite.py

Invite code models: issue, bulk issue, validation and redemption results.
"""

from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from biensperience.models.notification import DispatchResult
from biensperience.models.plan import Plan


class InviteErrorCode(str, Enum):
    """Why a code cannot be used"""

    NOT_FOUND = "not_found"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    EMAIL_MISMATCH = "email_mismatch"


INVITE_ERROR_MESSAGES = {
    InviteErrorCode.NOT_FOUND: "Invalid invite code",
    InviteErrorCode.DEACTIVATED: "This invite code has been deactivated",
    InviteErrorCode.EXPIRED: "This invite code has expired",
    InviteErrorCode.EXHAUSTED: "This invite code has reached its maximum number of uses",
    InviteErrorCode.EMAIL_MISMATCH: "This invite code is for a different email address",
}


class InviteCode(BaseModel):
    """Redeemable invite bundling experiences and destinations"""

    model_config = ConfigDict(frozen=True)

    invite_id: str = Field(description="UUID")
    code: str = Field(description="XXX-XXX-XXX token, upper case")
    created_by: str
    email: Optional[str] = Field(default=None, description="Recipient hint (lower-cased)")
    invitee_name: Optional[str] = None
    experiences: List[str] = Field(default_factory=list)
    destinations: List[str] = Field(default_factory=list)
    max_uses: int = 1
    uses_count: int = 0
    expires_at: Optional[datetime] = None
    active: bool = True
    custom_message: Optional[str] = None
    invite_metadata: Dict[str, Any] = Field(default_factory=dict)
    mutual_follow: bool = False
    permission_type: str = "owner"
    created_at: datetime
    updated_at: datetime

    @property
    def is_exhausted(self) -> bool:
        return self.uses_count >= self.max_uses

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_redeemable(self, now: datetime) -> bool:
        return self.active and not self.is_exhausted and not self.is_expired(now)


class CreateInviteRequest(BaseModel):
    """Request to issue an invite code"""

    email: Optional[str] = None
    invitee_name: Optional[str] = None
    experiences: List[str] = Field(default_factory=list)
    destinations: List[str] = Field(default_factory=list)
    max_uses: int = Field(default=1, description="Must be >= 1")
    expires_at: Optional[datetime] = None
    custom_message: Optional[str] = None
    mutual_follow: bool = False
    permission_type: str = "owner"
    send_email: bool = False


class BulkInviteRow(BaseModel):
    """One row of a bulk issue request (CSV-shaped)"""

    email: Optional[str] = None
    name: Optional[str] = None
    experiences: List[str] = Field(default_factory=list)
    destinations: List[str] = Field(default_factory=list)
    max_uses: int = 1
    expires_at: Optional[datetime] = None
    custom_message: Optional[str] = None


class BulkRowError(BaseModel):
    model_config = ConfigDict(frozen=True)

    row: int = Field(description="1-based row index")
    email: Optional[str] = None
    name: Optional[str] = None
    error: str


class BulkCreateResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    created: List[InviteCode] = Field(default_factory=list)
    errors: List[BulkRowError] = Field(default_factory=list)


class InviteCreationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    invite: InviteCode
    dispatch: Optional[DispatchResult] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    error: Optional[str] = None
    error_code: Optional[InviteErrorCode] = None
    invite: Optional[InviteCode] = None


class RedemptionFailure(BaseModel):
    """An experience that could not be turned into a plan"""

    model_config = ConfigDict(frozen=True)

    experience_id: str
    error: str


class RedemptionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    error: Optional[str] = None
    error_code: Optional[InviteErrorCode] = None
    invite: Optional[InviteCode] = None
    plans_created: List[Plan] = Field(default_factory=list)
    experiences_skipped: List[str] = Field(default_factory=list)
    failures: List[RedemptionFailure] = Field(default_factory=list)
    destinations: List[str] = Field(default_factory=list)
    custom_message: Optional[str] = None
    already_redeemed: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ValidateCodeRequest(BaseModel):
    code: str
    email: Optional[str] = None


class RedeemCodeRequest(BaseModel):
    """The email checked against the invite is always the caller's account email."""

    code: str


class EmailInviteRequest(BaseModel):
    """Invite a non-member to collaborate on one resource"""

    email: str = Field(min_length=3)
    name: str = Field(min_length=1)
    resource_type: str = Field(description="experience | destination")
    resource_id: str
    resource_name: Optional[str] = None
    custom_message: Optional[str] = None


class InviteStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_invites: int
    active_invites: int
    total_redemptions: int
    expired_invites: int


class InviteDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    invite: InviteCode
    redeemed_by: List[str] = Field(default_factory=list)
    usage_percentage: float
    is_expired: bool
    is_available: bool


class BulkInviteRequest(BaseModel):
    """Bulk issue body. Rows stay loose so each one fails on its own."""

    invites: List[Any] = Field(default_factory=list)
    send_emails: bool = False
