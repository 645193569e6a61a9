from sqlalchemy import Column, JSON, String

from contextlens.models.base import Base, TimestampMixin


class SessionRecord(Base, TimestampMixin):
    __tablename__ = "session_record"

    session_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=True, index=True)
    language = Column(String, nullable=True)
    save_mode = Column(String, default="persist")
    transcript = Column(JSON, default=list)
    overlays = Column(JSON, default=list)
    vision = Column(JSON, default=list)
    debrief = Column(JSON, nullable=True)


class UserPreference(Base, TimestampMixin):
    __tablename__ = "user_preference"

    user_id = Column(String, primary_key=True)
    language = Column(String, nullable=True)
    save_mode = Column(String, nullable=True)
