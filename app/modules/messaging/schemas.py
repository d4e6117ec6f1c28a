from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, field_validator

from app.schemas.base import BaseSchema, as_utc
from app.schemas.enums import DeliveryState


class MessageRecord(BaseSchema):
    id: Optional[str] = None
    connection_id: str
    sender_id: str
    receiver_id: str
    content: str = ""
    # stored object path, or a data URI while a send is still local
    image: Optional[str] = None
    image_url: Optional[str] = None
    client_id: Optional[str] = None
    created_at: datetime
    read_at: Optional[datetime] = None

    @field_validator("created_at", "read_at")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

    @field_validator("content", mode="before")
    @classmethod
    def _content(cls, value):
        return value or ""


class ThreadMessage(MessageRecord):
    state: DeliveryState = DeliveryState.sent
    error: Optional[str] = None


# ---------- payloads ----------

class SendMessageIn(BaseModel):
    content: str = ""
    image: Optional[str] = None
    client_id: Optional[str] = None


class MessageHistoryOut(BaseModel):
    connection_id: str
    messages: List[MessageRecord]


class MarkReadOut(BaseModel):
    marked: int
