from sqlalchemy import Column, String, Integer, Float, Boolean, DateTime, JSON, Text

from app.core.db import Base
from app.modules.connections.models import utcnow


class Profile(Base):
    __tablename__ = "profiles"

    # same id as the auth account
    id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    full_name = Column(String, nullable=True)
    user_type = Column(String, nullable=False, index=True)

    profile_image = Column(String, nullable=True)
    expertise = Column(String, nullable=True)
    rating = Column(Float, nullable=True)
    doubts_solved = Column(Integer, nullable=True)
    online = Column(Boolean, nullable=True)

    # mentor fields
    qualification = Column(String, nullable=True)
    institution = Column(String, nullable=True)
    experience = Column(Text, nullable=True)
    hourly_rate = Column(Float, nullable=True)
    # storage paths in the credentials bucket
    credentials = Column(JSON, nullable=True)

    # student fields
    grade = Column(String, nullable=True)
    subjects = Column(JSON, nullable=True)
    learning_goals = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utcnow)
