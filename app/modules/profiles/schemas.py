from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from app.schemas.base import BaseSchema, TimestampedSchema
from app.schemas.enums import UserType


class ProfileOut(TimestampedSchema):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    user_type: UserType
    profile_image: Optional[str] = None
    profile_image_url: Optional[str] = None
    expertise: Optional[str] = None
    rating: Optional[float] = None
    doubts_solved: Optional[int] = None
    online: Optional[bool] = None

    qualification: Optional[str] = None
    institution: Optional[str] = None
    experience: Optional[str] = None
    hourly_rate: Optional[float] = None
    credentials: List[str] = []
    credential_urls: List[str] = []

    grade: Optional[str] = None
    subjects: List[str] = []
    learning_goals: Optional[str] = None

    @field_validator("credentials", "subjects", mode="before")
    @classmethod
    def _list(cls, value):
        return value or []


class MentorSummary(BaseSchema):
    id: str
    full_name: Optional[str] = None
    profile_image: Optional[str] = None
    profile_image_url: Optional[str] = None
    expertise: Optional[str] = None
    rating: float = 0.0
    doubts_solved: int = 0
    online: bool = False

    @field_validator("rating", "doubts_solved", "online", mode="before")
    @classmethod
    def _defaults(cls, value, info):
        if value is None:
            return {"rating": 0.0, "doubts_solved": 0, "online": False}[info.field_name]
        return value


class ProfileUpdateIn(BaseModel):
    full_name: Optional[str] = None
    user_type: Optional[UserType] = None
    expertise: Optional[str] = None
    online: Optional[bool] = None

    qualification: Optional[str] = None
    institution: Optional[str] = None
    experience: Optional[str] = None
    hourly_rate: Optional[float] = Field(None, ge=0)

    grade: Optional[str] = None
    subjects: Optional[List[str]] = None
    learning_goals: Optional[str] = None
