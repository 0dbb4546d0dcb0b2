import logging
import secrets
from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user
from backend.core.config import ConfigurationError
from backend.core.timeutils import parse_date, utcnow
from backend.database import get_db
from backend.models.patient import Patient
from backend.models.push import PushConsentToken, PushSubscription
from backend.models.user import User
from backend.routes.common import database_unavailable, ensure_database_ready, json_error
from backend.services import agenda_push

router = APIRouter(tags=['push'])

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM = 'web'


class ConsentTokenRequest(BaseModel):
    patient_id: int


class RegisterSubscriptionRequest(BaseModel):
    consent_token: str = ''
    token: str = ''
    platform: str | None = None
    browser: str | None = None
    meta: dict | None = None


class AgendaPushRequest(BaseModel):
    date: str = ''
    dry_run: bool = False


def _owned_patient(db: Session, user: User, patient_id: int) -> Patient | None:
    return db.query(Patient).filter(Patient.id == patient_id, Patient.user_id == user.id).first()


def issue_consent_token(db: Session, patient_id: int, now: datetime) -> PushConsentToken:
    """Revoke earlier links so each patient has a single active one."""
    db.query(PushConsentToken).filter(
        PushConsentToken.patient_id == patient_id,
        PushConsentToken.revoked_at.is_(None),
    ).update({PushConsentToken.revoked_at: now}, synchronize_session=False)

    consent = PushConsentToken(patient_id=patient_id, token=secrets.token_hex(32))
    db.add(consent)
    db.commit()
    db.refresh(consent)
    return consent


@router.post('/consent-tokens', status_code=status.HTTP_201_CREATED)
def create_consent_token(
    data: ConsentTokenRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        if _owned_patient(db, current_user, data.patient_id) is None:
            return json_error('PATIENT_NOT_FOUND', status.HTTP_404_NOT_FOUND)
        consent = issue_consent_token(db, data.patient_id, utcnow())
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return {'ok': True, 'patient_id': consent.patient_id, 'token': consent.token}


@router.get('/patients/{patient_id}/status')
def patient_push_status(
    patient_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        if _owned_patient(db, current_user, patient_id) is None:
            return json_error('PATIENT_NOT_FOUND', status.HTTP_404_NOT_FOUND)
        subscriptions = agenda_push.select_subscriptions(db, [patient_id])
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    subscription = subscriptions.get(patient_id)
    return {
        'ok': True,
        'enabled': subscription is not None,
        'platform': subscription.platform if subscription else None,
        'last_seen_at': subscription.last_seen_at.isoformat() if subscription and subscription.last_seen_at else None,
    }


@router.post('/subscriptions')
def register_subscription(data: RegisterSubscriptionRequest, db: Session = Depends(get_db)):
    """Called from the patient's device after they accept notifications."""
    consent_token = data.consent_token.strip()
    device_token = data.token.strip()
    if not consent_token or not device_token:
        return json_error('MISSING_TOKEN')

    ensure_database_ready()

    try:
        consent = db.query(PushConsentToken).filter(
            PushConsentToken.token == consent_token,
            PushConsentToken.revoked_at.is_(None),
        ).first()
        if consent is None:
            return json_error('INVALID_CONSENT_TOKEN', status.HTTP_404_NOT_FOUND)

        now = utcnow()
        subscription = db.query(PushSubscription).filter(PushSubscription.token == device_token).first()
        if subscription is not None and subscription.patient_id not in (None, consent.patient_id):
            return json_error('TOKEN_LINKED_TO_OTHER_PATIENT', status.HTTP_409_CONFLICT)

        if subscription is None:
            subscription = PushSubscription(token=device_token)
            db.add(subscription)

        subscription.patient_id = consent.patient_id
        subscription.platform = (data.platform or '').strip() or DEFAULT_PLATFORM
        subscription.browser = data.browser
        subscription.is_enabled = True
        subscription.last_seen_at = now
        subscription.meta = data.meta or {}
        consent.used_at = now

        db.commit()
        db.refresh(subscription)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info('Registered push device for patient %s', subscription.patient_id)
    return {'ok': True, 'subscription_id': subscription.id, 'patient_id': subscription.patient_id}


@router.post('/agenda')
def send_agenda(
    data: AgendaPushRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    day = parse_date(data.date)
    if day is None:
        return json_error('INVALID_DATE')

    ensure_database_ready()

    try:
        result = agenda_push.send_agenda_push(db, current_user.id, day, dry_run=data.dry_run)
    except ConfigurationError as exc:
        return json_error(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    logger.info(
        'Agenda push for %s: %s sent, %s failed, %s inactive%s',
        day.isoformat(),
        result.sent,
        result.failed,
        len(result.inactive_patients),
        ' (dry run)' if result.dry_run else '',
    )
    return result.as_payload()
