"""Patient model definitions."""

from sqlalchemy import Column, Integer, String, Text, Boolean, Date, Numeric, DateTime, ForeignKey
from sqlalchemy.sql import func
from backend.database import Base


class Patient(Base):
    """A practitioner-owned patient record."""
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    full_name = Column(String, nullable=False)
    email = Column(String)
    phone = Column(String)
    address = Column(String)
    birth_date = Column(Date)
    cpf = Column(String)
    city = Column(String)
    state = Column(String)
    zip_code = Column(String)
    emergency_contact = Column(String)
    emergency_phone = Column(String)
    medical_history = Column(Text)
    current_medications = Column(Text)
    therapy_goals = Column(Text)
    session_frequency = Column(String, nullable=False, default="weekly")
    session_price = Column(Numeric(10, 2))
    # Meeting link persisted by the calendar integration
    session_link = Column(String)
    meet_event_id = Column(String)
    meet_calendar_id = Column(String)
    calendar_color = Column(String)
    auto_renew_sessions = Column(Boolean, default=False)
    active = Column(Boolean, nullable=False, default=True)
    is_temp = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
