from typing import List, Optional

from pydantic import BaseModel

from app.schemas.base import BaseSchema, TimestampedSchema
from app.schemas.enums import ConnectionStatus, Decision, Role


class PartnerProfile(BaseSchema):
    full_name: Optional[str] = None
    profile_image: Optional[str] = None
    expertise: Optional[str] = None
    rating: Optional[float] = None
    doubts_solved: Optional[int] = None
    online: Optional[bool] = None


class ConnectionRecord(TimestampedSchema):
    id: str
    student_id: str
    mentor_id: str
    status: ConnectionStatus
    # counterpart profile, present on listings
    partner: Optional[PartnerProfile] = None

    def role_of(self, user_id: str) -> Optional[Role]:
        if user_id == self.student_id:
            return Role.student
        if user_id == self.mentor_id:
            return Role.mentor
        return None

    def counterpart_of(self, user_id: str) -> Optional[str]:
        role = self.role_of(user_id)
        if role is None:
            return None
        return self.mentor_id if role is Role.student else self.student_id


class ConnectionListing(BaseModel):
    role: Role
    pending: List[ConnectionRecord] = []
    accepted: List[ConnectionRecord] = []


# ---------- request payloads ----------

class ConnectRequestIn(BaseModel):
    mentor_id: str


class RespondIn(BaseModel):
    decision: Decision


class ConnectRequestOut(BaseModel):
    connection_id: str
    status: ConnectionStatus


class PendingCountOut(BaseModel):
    pending: int
