import logging
from datetime import date, datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user
from backend.core.timeutils import utcnow
from backend.database import get_db
from backend.models.financial import FinancialRecord
from backend.models.patient import Patient
from backend.models.session import TherapySession
from backend.models.user import User
from backend.routes.common import database_unavailable, ensure_database_ready

router = APIRouter(tags=['patients'])

logger = logging.getLogger(__name__)

SESSION_FREQUENCIES = {'weekly', 'biweekly', 'monthly', 'as_needed'}


class PatientFields(BaseModel):
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    birth_date: date | None = None
    cpf: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    emergency_contact: str | None = None
    emergency_phone: str | None = None
    medical_history: str | None = None
    current_medications: str | None = None
    therapy_goals: str | None = None
    session_price: Decimal | None = None
    session_link: str | None = None
    calendar_color: str | None = None
    auto_renew_sessions: bool | None = None

    @field_validator('session_price')
    @classmethod
    def validate_session_price(cls, value: Decimal | None) -> Decimal | None:
        if value is not None and value < 0:
            raise ValueError('Session price cannot be negative.')
        return value


class CreatePatientRequest(PatientFields):
    full_name: str
    session_frequency: str = 'weekly'
    active: bool = True

    @field_validator('full_name')
    @classmethod
    def validate_full_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Patient name is required.')
        return normalized

    @field_validator('session_frequency')
    @classmethod
    def validate_session_frequency(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SESSION_FREQUENCIES:
            raise ValueError('Invalid session frequency.')
        return normalized


class UpdatePatientRequest(PatientFields):
    full_name: str | None = None
    session_frequency: str | None = None
    active: bool | None = None

    @field_validator('full_name')
    @classmethod
    def validate_full_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            raise ValueError('Patient name cannot be blank.')
        return normalized

    @field_validator('session_frequency')
    @classmethod
    def validate_session_frequency(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in SESSION_FREQUENCIES:
            raise ValueError('Invalid session frequency.')
        return normalized


class PatientResponse(PatientFields):
    id: int
    full_name: str
    session_frequency: str
    active: bool
    is_temp: bool | None = None
    meet_event_id: str | None = None
    meet_calendar_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


def get_owned_patient(db: Session, user: User, patient_id: int) -> Patient:
    patient = db.query(Patient).filter(
        Patient.id == patient_id,
        Patient.user_id == user.id,
    ).first()

    if not patient:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Patient not found.',
        )

    return patient


@router.get('', response_model=list[PatientResponse])
def list_patients(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return db.query(Patient).filter(
            Patient.user_id == current_user.id,
        ).order_by(Patient.full_name.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{patient_id}', response_model=PatientResponse)
def get_patient(patient_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return get_owned_patient(db, current_user, patient_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('', response_model=PatientResponse, status_code=status.HTTP_201_CREATED)
def create_patient(
    data: CreatePatientRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        patient = Patient(user_id=current_user.id, **data.model_dump())
        db.add(patient)
        db.commit()
        db.refresh(patient)

        return patient
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to create patient for user %s', current_user.id)
        raise database_unavailable() from exc


@router.patch('/{patient_id}', response_model=PatientResponse)
def update_patient(
    patient_id: int,
    data: UpdatePatientRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        patient = get_owned_patient(db, current_user, patient_id)

        for field_name, value in data.model_dump(exclude_unset=True).items():
            setattr(patient, field_name, value)

        db.commit()
        db.refresh(patient)

        return patient
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/{patient_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_patient(patient_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        patient = get_owned_patient(db, current_user, patient_id)
        db.query(TherapySession).filter(TherapySession.patient_id == patient.id).delete(synchronize_session=False)
        db.delete(patient)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/{patient_id}/deactivate', response_model=PatientResponse)
def deactivate_patient(
    patient_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Mark a patient inactive and drop their future agenda.

    Past sessions and their financial records are history and stay.
    """
    ensure_database_ready()

    try:
        patient = get_owned_patient(db, current_user, patient_id)
        patient.active = False

        now = utcnow()
        future_session_ids = [
            session_id
            for (session_id,) in db.query(TherapySession.id).filter(
                TherapySession.patient_id == patient.id,
                TherapySession.session_date >= now,
            ).all()
        ]

        if future_session_ids:
            db.query(FinancialRecord).filter(
                FinancialRecord.session_id.in_(future_session_ids),
            ).delete(synchronize_session=False)
            db.query(TherapySession).filter(
                TherapySession.id.in_(future_session_ids),
            ).delete(synchronize_session=False)

        db.commit()
        db.refresh(patient)

        logger.info('Deactivated patient %s and removed %d future sessions', patient.id, len(future_session_ids))
        return patient
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
