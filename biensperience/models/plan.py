"""
biensperience/models/plan.py

User plans materialized from an experience's plan items.

A plan is a snapshot: later edits to the experience do not reach it.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class PlanItemSnapshot(BaseModel):
    """Copy of one experience plan item at plan-creation time."""

    model_config = ConfigDict(frozen=True)

    plan_item_id: str
    complete: bool = False
    cost: Optional[float] = None
    planning_days: Optional[int] = None
    text: Optional[str] = None
    url: Optional[str] = None
    photo: Optional[str] = None
    parent: Optional[str] = None


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: str
    experience_id: str
    user_id: str
    plan: List[PlanItemSnapshot] = Field(default_factory=list)
    created_at: datetime
