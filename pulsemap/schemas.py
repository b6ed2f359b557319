from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EventCreate(BaseModel):
    type: str
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    magnitude: Optional[float] = None
    depth: Optional[float] = None
    url: Optional[str] = None
    # ISO-8601 or epoch milliseconds; defaults to now
    timestamp: Optional[datetime] = None


class EventUpdate(BaseModel):
    title: Optional[str] = None
    magnitude: Optional[float] = None
    depth: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location: Optional[str] = None


class ChangeUsername(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_username: Optional[str] = Field(None, alias='newUsername')
    current_password: Optional[str] = Field(None, alias='currentPassword')


class ChangePassword(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: Optional[str] = Field(None, alias='currentPassword')
    new_password: Optional[str] = Field(None, alias='newPassword')
