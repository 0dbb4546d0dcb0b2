import logging
from datetime import date, datetime, timedelta
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user
from backend.core import config
from backend.core.timeutils import local_datetime_to_utc, parse_clock, parse_utc_offset, to_utc_naive, utcnow
from backend.database import get_db
from backend.models.session import CANCELLED_STATUS, PAYMENT_STATUSES, TherapySession
from backend.models.user import User
from backend.routes.common import database_unavailable, ensure_database_ready
from backend.routes.patient_routes import get_owned_patient
from backend.services.scheduling import (
    DEFAULT_SESSION_DURATION_MINUTES,
    find_session_conflict,
    first_available_session_start,
)

router = APIRouter(tags=['sessions'])

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TYPE = 'Individual session'
DEFAULT_RECURRING_WEEKS = 12
MAX_RECURRING_WEEKS = 52
CONFLICT_LOOKBEHIND = timedelta(days=1)


def _normalize_payment_status(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized not in PAYMENT_STATUSES:
        raise ValueError('Invalid payment status.')
    return normalized


class SessionFields(BaseModel):
    session_type: str | None = None
    session_price: Decimal | None = None
    summary: str | None = None
    session_notes: str | None = None
    mood_before: str | None = None
    mood_after: str | None = None
    homework_assigned: str | None = None
    next_session_date: datetime | None = None


class CreateSessionRequest(SessionFields):
    patient_id: int
    session_date: datetime
    duration_minutes: int = Field(default=DEFAULT_SESSION_DURATION_MINUTES, gt=0, le=600)
    payment_status: str = 'pending'

    @field_validator('session_date')
    @classmethod
    def normalize_session_date(cls, value: datetime) -> datetime:
        return to_utc_naive(value)

    @field_validator('payment_status')
    @classmethod
    def validate_payment_status(cls, value: str) -> str:
        return _normalize_payment_status(value)


class UpdateSessionRequest(SessionFields):
    patient_id: int | None = None
    session_date: datetime | None = None
    duration_minutes: int | None = Field(default=None, gt=0, le=600)
    payment_status: str | None = None

    @field_validator('session_date')
    @classmethod
    def normalize_session_date(cls, value: datetime | None) -> datetime | None:
        return to_utc_naive(value) if value is not None else None

    @field_validator('payment_status')
    @classmethod
    def validate_payment_status(cls, value: str | None) -> str | None:
        return _normalize_payment_status(value)


class WeeklySchedule(BaseModel):
    day_of_week: int = Field(ge=0, le=6)  # 0 = Sunday
    time: str
    payment_status: str = 'pending'
    duration_minutes: int | None = Field(default=None, gt=0, le=600)
    session_type: str | None = None
    session_price: Decimal | None = None

    @field_validator('time')
    @classmethod
    def validate_time(cls, value: str) -> str:
        if parse_clock(value) is None:
            raise ValueError('Time must use the HH:MM format.')
        return value.strip()

    @field_validator('payment_status')
    @classmethod
    def validate_payment_status(cls, value: str) -> str:
        return _normalize_payment_status(value)


class CreateRecurringSessionsRequest(BaseModel):
    patient_id: int
    schedules: list[WeeklySchedule] = Field(min_length=1)
    weeks: int = Field(default=DEFAULT_RECURRING_WEEKS, ge=1, le=MAX_RECURRING_WEEKS)


class ConflictCheckRequest(BaseModel):
    session_date: datetime
    duration_minutes: int | None = Field(default=None, gt=0, le=600)
    exclude_session_id: int | None = None

    @field_validator('session_date')
    @classmethod
    def normalize_session_date(cls, value: datetime) -> datetime:
        return to_utc_naive(value)


class PatientSummary(BaseModel):
    id: int
    full_name: str
    email: str | None = None
    phone: str | None = None

    class Config:
        from_attributes = True


class SessionResponse(SessionFields):
    id: int
    patient_id: int
    session_date: datetime
    duration_minutes: int | None = None
    payment_status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    patient: PatientSummary | None = None

    class Config:
        from_attributes = True


class SkippedSlotResponse(BaseModel):
    session_date: datetime
    conflict_session_id: int


class RecurringSessionsResponse(BaseModel):
    created: list[SessionResponse]
    skipped: list[SkippedSlotResponse]


class ConflictCheckResponse(BaseModel):
    conflict: SessionResponse | None = None
    first_available_start: datetime


def load_schedulable_sessions(db: Session, user: User, not_before: datetime) -> list[TherapySession]:
    return db.query(TherapySession).filter(
        TherapySession.user_id == user.id,
        TherapySession.payment_status != CANCELLED_STATUS,
        TherapySession.session_date >= not_before - CONFLICT_LOOKBEHIND,
    ).order_by(TherapySession.session_date.asc(), TherapySession.id.asc()).all()


def raise_if_conflicting(
    db: Session,
    user: User,
    candidate_start: datetime,
    duration_minutes: int | None,
    exclude_session_id: int | None = None,
) -> None:
    existing_sessions = load_schedulable_sessions(db, user, candidate_start)
    conflict = find_session_conflict(existing_sessions, candidate_start, duration_minutes, exclude_session_id)
    if conflict is None:
        return

    first_available = first_available_session_start(
        existing_sessions,
        candidate_start,
        duration_minutes,
        exclude_session_id,
    )
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            'message': 'This time overlaps another session.',
            'conflict_session_id': conflict.id,
            'conflict_session_date': conflict.session_date.isoformat(),
            'first_available_start': first_available.isoformat(),
        },
    )


def get_owned_session(db: Session, user: User, session_id: int) -> TherapySession:
    session = db.query(TherapySession).filter(
        TherapySession.id == session_id,
        TherapySession.user_id == user.id,
    ).first()

    if not session:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Session not found.',
        )

    return session


def recurring_start_dates(today: date, day_of_week: int, weeks: int) -> list[date]:
    # Weeks are anchored on the coming Monday (today when it is Monday).
    first_monday = today + timedelta(days=(7 - today.weekday()) % 7)
    days_from_monday = 6 if day_of_week == 0 else day_of_week - 1
    return [first_monday + timedelta(weeks=week, days=days_from_monday) for week in range(weeks)]


@router.get('', response_model=list[SessionResponse])
def list_sessions(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return db.query(TherapySession).filter(
            TherapySession.user_id == current_user.id,
        ).order_by(TherapySession.session_date.desc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/upcoming', response_model=list[SessionResponse])
def list_upcoming_sessions(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return db.query(TherapySession).filter(
            TherapySession.user_id == current_user.id,
            TherapySession.session_date >= utcnow(),
        ).order_by(TherapySession.session_date.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/check-conflict', response_model=ConflictCheckResponse)
def check_session_conflict(
    data: ConflictCheckRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        existing_sessions = load_schedulable_sessions(db, current_user, data.session_date)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    conflict = find_session_conflict(
        existing_sessions,
        data.session_date,
        data.duration_minutes,
        data.exclude_session_id,
    )
    first_available = first_available_session_start(
        existing_sessions,
        data.session_date,
        data.duration_minutes,
        data.exclude_session_id,
    )
    return ConflictCheckResponse(
        conflict=SessionResponse.model_validate(conflict) if conflict else None,
        first_available_start=first_available,
    )


@router.get('/{session_id}', response_model=SessionResponse)
def get_session(session_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return get_owned_session(db, current_user, session_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('', response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def create_session(
    data: CreateSessionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        patient = get_owned_patient(db, current_user, data.patient_id)

        if data.payment_status != CANCELLED_STATUS:
            raise_if_conflicting(db, current_user, data.session_date, data.duration_minutes)

        fields = data.model_dump()
        if fields['session_price'] is None:
            fields['session_price'] = patient.session_price
        if not fields['session_type']:
            fields['session_type'] = DEFAULT_SESSION_TYPE

        session = TherapySession(user_id=current_user.id, **fields)
        db.add(session)
        db.commit()
        db.refresh(session)

        return session
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to create session for user %s', current_user.id)
        raise database_unavailable() from exc


@router.patch('/{session_id}', response_model=SessionResponse)
def update_session(
    session_id: int,
    data: UpdateSessionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        session = get_owned_session(db, current_user, session_id)
        updates = data.model_dump(exclude_unset=True)

        if updates.get('patient_id') is not None:
            get_owned_patient(db, current_user, updates['patient_id'])

        new_start = updates.get('session_date') or session.session_date
        new_duration = updates.get('duration_minutes') or session.duration_minutes
        new_status = updates.get('payment_status') or session.payment_status
        reschedules = any(key in updates for key in ('session_date', 'duration_minutes', 'payment_status'))

        if reschedules and new_status != CANCELLED_STATUS:
            raise_if_conflicting(db, current_user, new_start, new_duration, exclude_session_id=session.id)

        for field_name, value in updates.items():
            if value is None and field_name in ('patient_id', 'session_date', 'payment_status'):
                continue
            setattr(session, field_name, value)

        db.commit()
        db.refresh(session)

        return session
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.delete('/{session_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_session(session_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        session = get_owned_session(db, current_user, session_id)
        db.delete(session)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/recurring', response_model=RecurringSessionsResponse, status_code=status.HTTP_201_CREATED)
def create_recurring_sessions(
    data: CreateRecurringSessionsRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        patient = get_owned_patient(db, current_user, data.patient_id)

        now = utcnow()
        offset_value = config.get_app_timezone()
        local_today = (now + parse_utc_offset(offset_value).utcoffset(None)).date()
        existing_sessions = load_schedulable_sessions(db, current_user, now)

        created: list[TherapySession] = []
        skipped: list[SkippedSlotResponse] = []

        for schedule in data.schedules:
            clock = parse_clock(schedule.time)
            duration = schedule.duration_minutes or DEFAULT_SESSION_DURATION_MINUTES

            for session_day in recurring_start_dates(local_today, schedule.day_of_week, data.weeks):
                session_start = local_datetime_to_utc(session_day, clock, offset_value)
                if session_start < now:
                    continue

                if schedule.payment_status != CANCELLED_STATUS:
                    conflict = find_session_conflict(existing_sessions + created, session_start, duration)
                    if conflict is not None:
                        skipped.append(SkippedSlotResponse(session_date=session_start, conflict_session_id=conflict.id or 0))
                        continue

                session = TherapySession(
                    user_id=current_user.id,
                    patient_id=patient.id,
                    session_date=session_start,
                    duration_minutes=duration,
                    session_type=schedule.session_type or DEFAULT_SESSION_TYPE,
                    session_price=schedule.session_price if schedule.session_price is not None else patient.session_price,
                    payment_status=schedule.payment_status,
                )
                db.add(session)
                db.flush()
                created.append(session)

        db.commit()
        for session in created:
            db.refresh(session)

        logger.info(
            'Created %d recurring sessions for patient %s (%d skipped)',
            len(created),
            patient.id,
            len(skipped),
        )
        return RecurringSessionsResponse(
            created=[SessionResponse.model_validate(session) for session in created],
            skipped=skipped,
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
