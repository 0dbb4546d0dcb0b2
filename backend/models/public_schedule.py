"""Public scheduling link model definitions."""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.sql import func
from backend.database import Base


class PublicScheduleLink(Base):
    """Shareable token that lets new patients book a first session."""
    __tablename__ = "public_schedule_links"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    token = Column(String, unique=True, index=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    revoked_at = Column(DateTime)
