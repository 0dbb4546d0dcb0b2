"""Financial record model definitions."""

from sqlalchemy import Column, Integer, String, Numeric, Date, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from backend.database import Base
from backend.models.patient import Patient


class FinancialRecord(Base):
    """An income or expense entry, optionally tied to a session."""
    __tablename__ = "financial_records"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="SET NULL"))
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="SET NULL"))
    amount = Column(Numeric(10, 2), nullable=False)
    transaction_type = Column(String, nullable=False)  # income/expense
    transaction_date = Column(Date, nullable=False)
    description = Column(String)
    category = Column(String)
    payment_method = Column(String, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    patient = relationship(Patient, lazy="joined")
