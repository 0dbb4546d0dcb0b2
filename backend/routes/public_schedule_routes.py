import logging
import secrets
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user
from backend.core import config
from backend.core.timeutils import local_datetime_to_utc, local_day_range, parse_clock, parse_date, utcnow
from backend.database import get_db
from backend.models.patient import Patient
from backend.models.profile import Profile
from backend.models.public_schedule import PublicScheduleLink
from backend.models.session import CANCELLED_STATUS, TherapySession
from backend.models.user import User
from backend.routes.common import database_unavailable, ensure_database_ready, json_error
from backend.routes.session_routes import DEFAULT_SESSION_TYPE
from backend.services.scheduling import DEFAULT_SESSION_DURATION_MINUTES, find_session_conflict

router = APIRouter(tags=['public-schedule'])

logger = logging.getLogger(__name__)

REQUIRED_PATIENT_FIELDS = ('full_name', 'cpf', 'phone', 'emergency_contact')


class ScheduleLinkResponse(BaseModel):
    id: int
    token: str
    created_at: datetime | None = None
    revoked_at: datetime | None = None

    class Config:
        from_attributes = True


class PublicPatientFields(BaseModel):
    full_name: str = ''
    cpf: str = ''
    phone: str = ''
    email: str = ''
    emergency_contact: str = ''
    session_frequency: str = ''


class PublicScheduleRequest(BaseModel):
    action: str = ''
    token: str = ''
    date: str = ''
    time: str = ''
    timezone: str | None = None
    patient: PublicPatientFields | None = None


def _active_link_for_user(db: Session, user: User) -> PublicScheduleLink | None:
    return db.query(PublicScheduleLink).filter(
        PublicScheduleLink.user_id == user.id,
        PublicScheduleLink.revoked_at.is_(None),
    ).order_by(PublicScheduleLink.created_at.desc(), PublicScheduleLink.id.desc()).first()


def _sessions_between(db: Session, user_id: int, start: datetime, end: datetime) -> list[TherapySession]:
    return db.query(TherapySession).filter(
        TherapySession.user_id == user_id,
        TherapySession.session_date >= start,
        TherapySession.session_date < end,
        TherapySession.payment_status != CANCELLED_STATUS,
    ).order_by(TherapySession.session_date.asc(), TherapySession.id.asc()).all()


@router.get('/links/current', response_model=ScheduleLinkResponse | None)
def get_current_link(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        return _active_link_for_user(db, current_user)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/links', response_model=ScheduleLinkResponse)
def create_link(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Return the active link, creating one when there is none."""
    try:
        link = _active_link_for_user(db, current_user)
        if link is None:
            link = PublicScheduleLink(user_id=current_user.id, token=secrets.token_hex(16))
            db.add(link)
            db.commit()
            db.refresh(link)
        return link
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/links/{link_id}/revoke', response_model=ScheduleLinkResponse)
def revoke_link(link_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        link = db.query(PublicScheduleLink).filter(
            PublicScheduleLink.id == link_id,
            PublicScheduleLink.user_id == current_user.id,
        ).first()
        if link is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Schedule link not found.')

        if link.revoked_at is None:
            link.revoked_at = utcnow()
            db.commit()
            db.refresh(link)
        return link
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


def _availability(db: Session, link: PublicScheduleLink, data: PublicScheduleRequest, offset_value: str):
    day = parse_date(data.date)
    if day is None:
        return json_error('INVALID_DATE')

    start, end = local_day_range(day, offset_value)
    sessions = _sessions_between(db, link.user_id, start, end)
    return {
        'ok': True,
        'sessions': [
            {
                'id': session.id,
                'session_date': session.session_date.isoformat(),
                'duration_minutes': session.duration_minutes,
                'payment_status': session.payment_status,
            }
            for session in sessions
        ],
    }


def _book(db: Session, link: PublicScheduleLink, data: PublicScheduleRequest, offset_value: str):
    day = parse_date(data.date)
    if day is None:
        return json_error('INVALID_DATE')
    clock = parse_clock(data.time)
    if clock is None:
        return json_error('INVALID_TIME')

    patient_fields = data.patient or PublicPatientFields()
    values = {name: (getattr(patient_fields, name) or '').strip() for name in PublicPatientFields.model_fields}
    if any(not values[name] for name in REQUIRED_PATIENT_FIELDS):
        return json_error('MISSING_PATIENT_FIELDS')

    session_start = local_datetime_to_utc(day, clock, offset_value)
    if session_start <= utcnow():
        return json_error('SLOT_UNAVAILABLE', status.HTTP_409_CONFLICT)

    day_start, day_end = local_day_range(day, offset_value)
    # Include the previous day so a late session running past midnight still blocks.
    existing_sessions = _sessions_between(db, link.user_id, day_start - timedelta(days=1), day_end)
    if find_session_conflict(existing_sessions, session_start, DEFAULT_SESSION_DURATION_MINUTES):
        return json_error('SLOT_UNAVAILABLE', status.HTTP_409_CONFLICT)

    profile = db.query(Profile).filter(Profile.user_id == link.user_id).first()
    session_price = profile.session_price if profile else None

    patient = Patient(
        user_id=link.user_id,
        full_name=values['full_name'],
        cpf=values['cpf'],
        phone=values['phone'],
        email=values['email'] or None,
        emergency_contact=values['emergency_contact'],
        session_frequency=values['session_frequency'] or 'weekly',
        session_price=session_price,
        active=False,
        is_temp=True,
    )
    db.add(patient)
    db.flush()

    session = TherapySession(
        user_id=link.user_id,
        patient_id=patient.id,
        session_date=session_start,
        duration_minutes=DEFAULT_SESSION_DURATION_MINUTES,
        session_type=DEFAULT_SESSION_TYPE,
        session_price=session_price,
        payment_status='pending',
    )
    db.add(session)
    db.commit()

    logger.info('Public booking created session %s for user %s', session.id, link.user_id)
    return {'ok': True, 'patient_id': patient.id, 'session_id': session.id}


@router.post('')
def public_schedule(data: PublicScheduleRequest, db: Session = Depends(get_db)):
    action = data.action.strip()
    token = data.token.strip()
    if not action:
        return json_error('MISSING_ACTION')
    if not token:
        return json_error('MISSING_TOKEN')

    ensure_database_ready()
    offset_value = (data.timezone or '').strip() or config.get_app_timezone()

    try:
        link = db.query(PublicScheduleLink).filter(PublicScheduleLink.token == token).first()
        if link is None or link.revoked_at is not None:
            return json_error('INVALID_LINK', status.HTTP_404_NOT_FOUND)

        if action == 'availability':
            return _availability(db, link, data, offset_value)
        if action == 'book':
            return _book(db, link, data, offset_value)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Public schedule %s failed', action)
        raise database_unavailable() from exc

    return json_error('INVALID_ACTION')
