from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Index

from app.core.db import Base
from app.modules.connections.models import new_id, utcnow


class Message(Base):
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=new_id)
    connection_id = Column(String, ForeignKey("connections.id"), nullable=False, index=True)
    sender_id = Column(String, nullable=False)
    receiver_id = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    image = Column(String, nullable=True)
    client_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    read_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_messages_connection_created", "connection_id", "created_at"),
    )
