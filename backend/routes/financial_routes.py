import logging
from calendar import monthrange
from datetime import date, datetime, timedelta
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user
from backend.database import get_db
from backend.models.financial import FinancialRecord
from backend.models.user import User
from backend.routes.common import database_unavailable, ensure_database_ready
from backend.routes.patient_routes import get_owned_patient
from backend.routes.session_routes import get_owned_session

router = APIRouter(tags=['financial'])

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = {'income', 'expense'}
INCOME_TRANSACTION = 'income'


def _normalize_transaction_type(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized not in TRANSACTION_TYPES:
        raise ValueError('Transaction type must be income or expense.')
    return normalized


class CreateFinancialRecordRequest(BaseModel):
    transaction_type: str
    amount: Decimal = Field(gt=0)
    payment_method: str
    transaction_date: date
    patient_id: int | None = None
    session_id: int | None = None
    description: str | None = None
    category: str | None = None

    @field_validator('transaction_type')
    @classmethod
    def validate_transaction_type(cls, value: str) -> str:
        return _normalize_transaction_type(value)

    @field_validator('payment_method')
    @classmethod
    def validate_payment_method(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Payment method is required.')
        return normalized


class UpdateFinancialRecordRequest(BaseModel):
    transaction_type: str | None = None
    amount: Decimal | None = Field(default=None, gt=0)
    payment_method: str | None = None
    transaction_date: date | None = None
    patient_id: int | None = None
    session_id: int | None = None
    description: str | None = None
    category: str | None = None

    @field_validator('transaction_type')
    @classmethod
    def validate_transaction_type(cls, value: str | None) -> str | None:
        return _normalize_transaction_type(value)


class PatientNameResponse(BaseModel):
    id: int
    full_name: str

    class Config:
        from_attributes = True


class FinancialRecordResponse(BaseModel):
    id: int
    transaction_type: str
    amount: Decimal
    payment_method: str
    transaction_date: date
    patient_id: int | None = None
    session_id: int | None = None
    description: str | None = None
    category: str | None = None
    created_at: datetime | None = None
    patient: PatientNameResponse | None = None

    class Config:
        from_attributes = True


class RevenueResponse(BaseModel):
    start_date: date
    end_date: date
    total: Decimal


def week_bounds(day: date) -> tuple[date, date]:
    # Weeks start on Sunday, matching the practice calendar.
    start = day - timedelta(days=(day.weekday() + 1) % 7)
    return start, start + timedelta(days=6)


def month_bounds(day: date) -> tuple[date, date]:
    return day.replace(day=1), day.replace(day=monthrange(day.year, day.month)[1])


def sum_income(db: Session, user: User, start_date: date, end_date: date) -> Decimal:
    total = db.query(func.coalesce(func.sum(FinancialRecord.amount), 0)).filter(
        FinancialRecord.user_id == user.id,
        FinancialRecord.transaction_type == INCOME_TRANSACTION,
        FinancialRecord.transaction_date >= start_date,
        FinancialRecord.transaction_date <= end_date,
    ).scalar()
    return Decimal(str(total or 0))


def get_owned_record(db: Session, user: User, record_id: int) -> FinancialRecord:
    record = db.query(FinancialRecord).filter(
        FinancialRecord.id == record_id,
        FinancialRecord.user_id == user.id,
    ).first()

    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Financial record not found.',
        )

    return record


def _check_references(db: Session, user: User, patient_id: int | None, session_id: int | None) -> None:
    if patient_id is not None:
        get_owned_patient(db, user, patient_id)
    if session_id is not None:
        get_owned_session(db, user, session_id)


@router.get('/records', response_model=list[FinancialRecordResponse])
def list_financial_records(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return db.query(FinancialRecord).filter(
            FinancialRecord.user_id == current_user.id,
        ).order_by(FinancialRecord.transaction_date.desc(), FinancialRecord.id.desc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/records', response_model=FinancialRecordResponse, status_code=status.HTTP_201_CREATED)
def create_financial_record(
    data: CreateFinancialRecordRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        _check_references(db, current_user, data.patient_id, data.session_id)

        record = FinancialRecord(user_id=current_user.id, **data.model_dump())
        db.add(record)
        db.commit()
        db.refresh(record)

        return record
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to create financial record for user %s', current_user.id)
        raise database_unavailable() from exc


@router.patch('/records/{record_id}', response_model=FinancialRecordResponse)
def update_financial_record(
    record_id: int,
    data: UpdateFinancialRecordRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        record = get_owned_record(db, current_user, record_id)
        updates = data.model_dump(exclude_unset=True)
        _check_references(db, current_user, updates.get('patient_id'), updates.get('session_id'))

        for field_name, value in updates.items():
            if value is None and field_name in ('transaction_type', 'amount', 'payment_method', 'transaction_date'):
                continue
            setattr(record, field_name, value)

        db.commit()
        db.refresh(record)

        return record
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/records/{record_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_financial_record(
    record_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        record = get_owned_record(db, current_user, record_id)
        db.delete(record)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/revenue/weekly', response_model=RevenueResponse)
def get_weekly_revenue(
    reference_date: date | None = Query(default=None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    start_date, end_date = week_bounds(reference_date or date.today())
    try:
        return RevenueResponse(start_date=start_date, end_date=end_date, total=sum_income(db, current_user, start_date, end_date))
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/revenue/monthly', response_model=RevenueResponse)
def get_monthly_revenue(
    reference_date: date | None = Query(default=None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    start_date, end_date = month_bounds(reference_date or date.today())
    try:
        return RevenueResponse(start_date=start_date, end_date=end_date, total=sum_income(db, current_user, start_date, end_date))
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
