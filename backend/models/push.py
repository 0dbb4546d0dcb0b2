"""Push notification model definitions."""

from sqlalchemy import Column, Integer, String, Text, Boolean, Date, DateTime, JSON, ForeignKey
from sqlalchemy.sql import func
from backend.database import Base


class PushConsentToken(Base):
    """One-time link a patient opens to allow notifications on a device."""
    __tablename__ = "push_consent_tokens"

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), index=True, nullable=False)
    token = Column(String, unique=True, index=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    revoked_at = Column(DateTime)
    used_at = Column(DateTime)


class PushSubscription(Base):
    """A device registration token for a patient."""
    __tablename__ = "push_subscriptions"

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="SET NULL"), index=True)
    token = Column(String, unique=True, nullable=False)
    platform = Column(String, nullable=False, default="web")
    browser = Column(String)
    is_enabled = Column(Boolean, nullable=False, default=True)
    last_seen_at = Column(DateTime)
    meta = Column(JSON)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class PushNotificationLog(Base):
    """Outcome of one delivery attempt."""
    __tablename__ = "push_notifications_log"

    id = Column(Integer, primary_key=True)
    date = Column(Date, nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="SET NULL"), index=True)
    token = Column(String)
    status = Column(String, nullable=False)
    error = Column(Text)
    payload = Column(JSON)
    created_at = Column(DateTime, server_default=func.now())
