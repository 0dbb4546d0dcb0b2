"""Google OAuth token, connection and state model definitions."""

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.sql import func
from backend.database import Base


class GoogleOAuthToken(Base):
    """Access/refresh token pair for one practitioner.

    ``version`` is bumped on every refresh; writers update with a
    ``WHERE version = ?`` guard instead of read-modify-write.
    """
    __tablename__ = "google_oauth_tokens"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    access_token = Column(Text)
    refresh_token = Column(Text, nullable=False)
    token_type = Column(String, default="Bearer")
    scope = Column(String)
    expires_at = Column(DateTime)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class GoogleOAuthConnection(Base):
    """Which Google account a practitioner connected."""
    __tablename__ = "google_oauth_connections"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    email = Column(String)
    scope = Column(String)
    connected_at = Column(DateTime)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class GoogleOAuthState(Base):
    """Pending OAuth consent round-trip."""
    __tablename__ = "google_oauth_states"

    state = Column(String, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
