import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, CheckConstraint, Index, text

from app.core.db import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Connection(Base):
    __tablename__ = "connections"

    id = Column(String, primary_key=True, default=new_id)
    student_id = Column(String, nullable=False, index=True)
    mentor_id = Column(String, nullable=False, index=True)
    status = Column(
        String,
        CheckConstraint(
            "status IN ('pending','accepted','rejected')",
            name="connections_status_check",
        ),
        nullable=False,
        default="pending",
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # one live request/relationship per pair; rejected rows may pile up
        Index(
            "uq_connections_active_pair",
            "student_id",
            "mentor_id",
            unique=True,
            postgresql_where=text("status IN ('pending','accepted')"),
            sqlite_where=text("status IN ('pending','accepted')"),
        ),
        Index("idx_connections_created_at", "created_at"),
    )
