"""
biensperience/models/entity.py

Permissioned content entities: destinations, experiences (with ordered plan
items) and photos. Each carries its creator in user_id.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class Destination(BaseModel):
    model_config = ConfigDict(frozen=True)

    destination_id: str
    name: str
    country: Optional[str] = None
    user_id: str
    created_at: datetime


class ExperiencePlanItem(BaseModel):
    """Template item on an experience; copied into plans on redemption."""

    model_config = ConfigDict(frozen=True)

    plan_item_id: str
    text: Optional[str] = None
    url: Optional[str] = None
    cost: Optional[float] = None
    planning_days: Optional[int] = None
    photo: Optional[str] = None
    parent: Optional[str] = None


class Experience(BaseModel):
    model_config = ConfigDict(frozen=True)

    experience_id: str
    title: str
    destination_id: Optional[str] = None
    user_id: str
    plan_items: List[ExperiencePlanItem] = Field(default_factory=list)
    created_at: datetime


class Photo(BaseModel):
    model_config = ConfigDict(frozen=True)

    photo_id: str
    url: str
    caption: Optional[str] = None
    user_id: str
    created_at: datetime


class CreateDestinationRequest(BaseModel):
    name: str = Field(min_length=1)
    country: Optional[str] = None


class CreateExperienceRequest(BaseModel):
    title: str = Field(min_length=1)
    destination_id: Optional[str] = None
    plan_items: List[ExperiencePlanItem] = Field(default_factory=list)


class CreatePhotoRequest(BaseModel):
    url: str = Field(min_length=1)
    caption: Optional[str] = None
