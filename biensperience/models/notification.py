"""
biensperience/models/notification.py

Outcome of a best-effort notification dispatch.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class DispatchResult(BaseModel):
    """Result of one email dispatch. A failure is data, never an exception."""

    model_config = ConfigDict(frozen=True)

    sent: bool
    skipped: bool = False
    message_id: Optional[str] = None
    error: Optional[str] = None
    sent_at: Optional[datetime] = None
