"""Therapy session model definitions."""

from sqlalchemy import Column, Integer, String, Text, Numeric, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from backend.database import Base
from backend.models.patient import Patient

PAYMENT_STATUSES = ("pending", "paid", "cancelled")
CANCELLED_STATUS = "cancelled"


class TherapySession(Base):
    """A scheduled appointment between the practitioner and a patient."""
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), index=True, nullable=False)
    session_date = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, default=50)
    session_type = Column(String)
    session_price = Column(Numeric(10, 2))
    payment_status = Column(String, nullable=False, default="pending")
    summary = Column(Text)
    session_notes = Column(Text)
    mood_before = Column(String)
    mood_after = Column(String)
    homework_assigned = Column(Text)
    next_session_date = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    patient = relationship(Patient, lazy="joined")
