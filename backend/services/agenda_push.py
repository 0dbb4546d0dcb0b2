"""Daily agenda push notifications sent through Firebase Cloud Messaging."""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional
from urllib.parse import urlencode

import firebase_admin
from firebase_admin import credentials, exceptions, messaging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.timeutils import format_local_time, local_day_range, utcnow
from backend.models.push import PushNotificationLog, PushSubscription
from backend.models.session import CANCELLED_STATUS, TherapySession
from backend.services.scheduling import DEFAULT_SESSION_DURATION_MINUTES

logger = logging.getLogger(__name__)

AGENDA_ROUTE = '/push/agenda'
NOTIFICATION_TITLE = 'Session reminder'
DEFAULT_PATIENT_NAME = 'Patient'
INVALID_TOKEN_REASON = 'invalid_token'
# FCM also answers INVALID_ARGUMENT for malformed payloads; only token complaints disable a device.
INVALID_TOKEN_MARKERS = ('registration token', 'registration-token')
FIREBASE_APP_NAME = 'agenda-push'


@dataclass
class PatientAgenda:
    patient_id: int
    patient_name: str
    sessions: list[TherapySession] = field(default_factory=list)

    def times(self, offset_value: str) -> list[str]:
        return sorted({format_local_time(session.session_date, offset_value) for session in self.sessions})


@dataclass
class AgendaPushResult:
    patients: int = 0
    sent: int = 0
    failed: int = 0
    inactive_patients: list[str] = field(default_factory=list)
    dry_run: bool = False
    recipients: list[dict] = field(default_factory=list)

    def as_payload(self) -> dict:
        return {
            'ok': True,
            'patients': self.patients,
            'sent': self.sent,
            'failed': self.failed,
            'inactive_patients': self.inactive_patients,
            'dry_run': self.dry_run,
            'recipients': self.recipients,
        }


def collect_agenda(db: Session, user_id: int, day: date, offset_value: str) -> list[PatientAgenda]:
    """Group the day's non-cancelled sessions by patient, earliest first."""
    start, end = local_day_range(day, offset_value)
    sessions = db.query(TherapySession).filter(
        TherapySession.user_id == user_id,
        TherapySession.session_date >= start,
        TherapySession.session_date < end,
        TherapySession.payment_status != CANCELLED_STATUS,
    ).order_by(TherapySession.session_date.asc(), TherapySession.id.asc()).all()

    agenda: OrderedDict[int, PatientAgenda] = OrderedDict()
    for session in sessions:
        if session.patient_id is None:
            continue
        if session.patient_id not in agenda:
            name = (session.patient.full_name if session.patient else '') or ''
            agenda[session.patient_id] = PatientAgenda(
                patient_id=session.patient_id,
                patient_name=name.strip() or DEFAULT_PATIENT_NAME,
            )
        agenda[session.patient_id].sessions.append(session)

    return list(agenda.values())


def _activity_key(subscription: PushSubscription) -> tuple[bool, datetime]:
    seen = subscription.last_seen_at or subscription.updated_at or subscription.created_at
    return seen is not None, seen or datetime.min


def select_subscriptions(db: Session, patient_ids: list[int]) -> dict[int, PushSubscription]:
    """Pick each patient's enabled device with the most recent activity."""
    if not patient_ids:
        return {}

    subscriptions = db.query(PushSubscription).filter(
        PushSubscription.is_enabled.is_(True),
        PushSubscription.patient_id.in_(patient_ids),
    ).all()

    selected: dict[int, PushSubscription] = {}
    for subscription in subscriptions:
        current = selected.get(subscription.patient_id)
        if current is None or _activity_key(subscription) > _activity_key(current):
            selected[subscription.patient_id] = subscription
    return selected


def build_body(times: list[str]) -> str:
    if not times:
        return 'Your session today has a time to be confirmed.'
    if len(times) == 1:
        return f'Your session today is at {times[0]}.'
    return f'Your sessions today are at {", ".join(times[:-1])} and {times[-1]}.'


def build_message_data(day: date, agenda: PatientAgenda, offset_value: str) -> dict[str, str]:
    """FCM data payload; every value must be a string."""
    times = agenda.times(offset_value)
    primary = agenda.sessions[0] if agenda.sessions else None
    primary_time = format_local_time(primary.session_date, offset_value) if primary else (times[0] if times else '')
    status = (primary.payment_status if primary else None) or 'pending'
    session_type = (primary.session_type if primary else None) or ''
    duration = (primary.duration_minutes if primary else None) or DEFAULT_SESSION_DURATION_MINUTES
    price = '' if primary is None or primary.session_price is None else str(primary.session_price)

    query = {'date': day.isoformat()}
    optional = {
        'time': primary_time,
        'duration': str(duration),
        'status': status,
        'type': session_type,
        'price': price,
        'patient': agenda.patient_name,
    }
    query.update({key: value for key, value in optional.items() if value})

    return {
        'route': f'{AGENDA_ROUTE}?{urlencode(query)}',
        'title': NOTIFICATION_TITLE,
        'body': build_body(times),
        'date': day.isoformat(),
        'time': primary_time,
        'times': ', '.join(times),
        'patient_id': str(agenda.patient_id),
        'patient_name': agenda.patient_name,
        'status': status,
        'session_type': session_type,
        'duration_minutes': str(duration),
        'session_price': price,
    }


def initialize_firebase() -> firebase_admin.App:
    try:
        return firebase_admin.get_app(FIREBASE_APP_NAME)
    except ValueError:
        pass

    # Raises ConfigurationError when the service account is missing.
    settings = config.get_firebase_settings()
    cred = credentials.Certificate({
        'type': 'service_account',
        'project_id': settings.project_id,
        'client_email': settings.client_email,
        'private_key': settings.private_key,
        'token_uri': config.GOOGLE_TOKEN_URL,
    })
    app = firebase_admin.initialize_app(cred, {'projectId': settings.project_id}, name=FIREBASE_APP_NAME)
    logger.info('Firebase Admin initialized for project %s', settings.project_id)
    return app


def is_invalid_token_error(error: Optional[Exception]) -> bool:
    if isinstance(error, messaging.UnregisteredError):
        return True
    if isinstance(error, exceptions.InvalidArgumentError):
        message = str(error).lower()
        return any(marker in message for marker in INVALID_TOKEN_MARKERS)
    return False


def disable_subscriptions(db: Session, tokens: list[str], now: datetime) -> None:
    if not tokens:
        return
    for subscription in db.query(PushSubscription).filter(PushSubscription.token.in_(tokens)).all():
        subscription.is_enabled = False
        meta = dict(subscription.meta or {})
        meta.update({'disabled_reason': INVALID_TOKEN_REASON, 'updated_at': now.isoformat()})
        subscription.meta = meta


def send_agenda_push(
    db: Session,
    user_id: int,
    day: date,
    dry_run: bool = False,
    offset_value: Optional[str] = None,
) -> AgendaPushResult:
    offset_value = offset_value or config.get_app_timezone()
    agenda = collect_agenda(db, user_id, day, offset_value)
    result = AgendaPushResult(patients=len(agenda), dry_run=dry_run)
    if not agenda:
        return result

    subscriptions = select_subscriptions(db, [entry.patient_id for entry in agenda])
    result.inactive_patients = sorted(
        entry.patient_name for entry in agenda if entry.patient_id not in subscriptions
    )
    reachable = [entry for entry in agenda if entry.patient_id in subscriptions]
    result.recipients = [
        {
            'patient_id': entry.patient_id,
            'patient_name': entry.patient_name,
            'times': entry.times(offset_value),
        }
        for entry in reachable
    ]

    if dry_run or not reachable:
        return result

    app = initialize_firebase()
    invalid_tokens: list[str] = []

    for entry in reachable:
        token = subscriptions[entry.patient_id].token
        data = build_message_data(day, entry, offset_value)
        log_row = PushNotificationLog(
            date=day,
            patient_id=entry.patient_id,
            token=token,
            payload={'data': data},
        )

        try:
            response = messaging.send_each_for_multicast(
                messaging.MulticastMessage(tokens=[token], data=data),
                app=app,
            )
            outcome = response.responses[0]
            success, error = outcome.success, outcome.exception
        except exceptions.FirebaseError as exc:
            logger.exception('Push delivery to patient %s failed', entry.patient_id)
            success, error = False, exc

        if success:
            result.sent += 1
            log_row.status = 'sent'
        else:
            result.failed += 1
            log_row.status = 'failed'
            log_row.error = str(error) if error else 'Unknown error'
            if is_invalid_token_error(error):
                invalid_tokens.append(token)

        db.add(log_row)

    try:
        disable_subscriptions(db, invalid_tokens, utcnow())
        db.commit()
    except SQLAlchemyError:
        # Messages already went out; report them even if bookkeeping is lost.
        db.rollback()
        logger.exception('Could not record agenda push results for %s', day.isoformat())
        return result

    if invalid_tokens:
        logger.info('Disabled %s invalid push tokens', len(invalid_tokens))
    return result
