from sqlalchemy import Column, String, Boolean, DateTime, JSON

from app.core.db import Base
from app.modules.connections.models import new_id, utcnow


class Account(Base):
    """Local stand-in for the hosted auth users table (SQL backend only)."""

    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    user_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Otp(Base):
    __tablename__ = "otps"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, index=True, nullable=False)
    code = Column(String, nullable=False)
    verified = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
