import logging
from datetime import datetime
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user
from backend.core import config
from backend.core.config import ConfigurationError
from backend.core.timeutils import to_utc_naive
from backend.database import get_db
from backend.models.google_oauth import GoogleOAuthConnection, GoogleOAuthToken
from backend.models.patient import Patient
from backend.models.user import User
from backend.routes.common import database_unavailable, ensure_database_ready, is_valid_email, json_error
from backend.services import google_oauth
from backend.services.google_calendar import (
    GoogleCalendarClient,
    MeetLinkRequest,
    MeetLinkResult,
    resolve_meet_link,
    reuse_existing_link,
)
from backend.services.google_oauth import CalendarError, CalendarErrorCode, GoogleTokenManager

router = APIRouter(tags=['google'])

logger = logging.getLogger(__name__)


class OAuthStartRequest(BaseModel):
    app_origin: str = ''
    use_local_callback: bool | None = None


class MeetLinkBody(BaseModel):
    patient_id: int | None = None
    patient_name: str | None = None
    session_date: str | None = None
    duration_minutes: int | None = None
    invite_patient: bool = False
    patient_email: str | None = None


def _settings_redirect(app_origin: str, outcome: str) -> RedirectResponse:
    base = (app_origin or config.CORS_ALLOWED_ORIGINS[0]).rstrip('/')
    query = urlencode({'tab': 'integrations', 'google': outcome})
    return RedirectResponse(url=f'{base}/settings?{query}', status_code=status.HTTP_302_FOUND)


def parse_session_start(value: str | None) -> datetime | None:
    """Parse an ISO timestamp; naive values are local wall-clock time."""
    raw = (value or '').strip()
    if raw.endswith('Z'):
        raw = raw[:-1] + '+00:00'
    return to_utc_naive(datetime.fromisoformat(raw))


def validate_meet_link_body(data: MeetLinkBody) -> str | None:
    if data.patient_id is None and not (data.patient_name or '').strip():
        return 'MISSING_PATIENT_INFO'
    if data.invite_patient:
        email = (data.patient_email or '').strip()
        if not email:
            return 'INVITE_EMAIL_REQUIRED'
        if not is_valid_email(email):
            return 'INVITE_EMAIL_INVALID'
    return None


def _meet_link_payload(result: MeetLinkResult) -> dict:
    return {
        'ok': True,
        'link': result.link,
        'event_id': result.event_id,
        'calendar_id': result.calendar_id,
        'outcome': result.outcome.value,
    }


@router.post('/oauth/start')
def start_google_oauth(
    data: OAuthStartRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        settings = config.get_google_oauth_settings(require_secret=False)
    except ConfigurationError as exc:
        return json_error(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)

    app_origin = data.app_origin.strip()
    if not app_origin.lower().startswith(('http://', 'https://')):
        return json_error('MISSING_APP_ORIGIN')

    use_local = data.use_local_callback
    if use_local is None:
        use_local = google_oauth.is_local_origin(app_origin)
    redirect_uri = (settings.redirect_uri_local or settings.redirect_uri) if use_local else settings.redirect_uri
    if not redirect_uri:
        return json_error(CalendarErrorCode.NOT_CONFIGURED.value, status.HTTP_500_INTERNAL_SERVER_ERROR)

    try:
        state = google_oauth.create_oauth_state(db, current_user.id, app_origin)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return {'ok': True, 'url': google_oauth.build_consent_url(settings, redirect_uri, state)}


@router.get('/oauth/callback')
async def google_oauth_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    db: Session = Depends(get_db),
):
    app_origin = google_oauth.decode_state_origin(state or '')

    if error or not code or not state:
        logger.warning('Google OAuth callback without code: %s', error or 'missing code/state')
        return _settings_redirect(app_origin, 'error')

    try:
        settings = config.get_google_oauth_settings()
    except ConfigurationError:
        logger.error('Google OAuth callback reached without client credentials')
        return _settings_redirect(app_origin, 'error')

    try:
        user_id = google_oauth.consume_oauth_state(db, state)
        if user_id is None:
            logger.warning('Rejected unknown or expired OAuth state')
            return _settings_redirect(app_origin, 'error')

        async with google_oauth.build_http_client() as http_client:
            token_payload = await google_oauth.exchange_code(
                http_client,
                settings,
                code,
                google_oauth.select_redirect_uri(settings, app_origin),
            )
            email = await google_oauth.fetch_google_email(http_client, token_payload['access_token'])

        google_oauth.save_connection(db, user_id, token_payload, email)
    except CalendarError as exc:
        logger.error('Google OAuth callback failed: %s', exc.code.value)
        return _settings_redirect(app_origin, 'error')
    except httpx.HTTPError:
        logger.exception('Google OAuth callback could not reach Google')
        return _settings_redirect(app_origin, 'error')
    except SQLAlchemyError:
        db.rollback()
        logger.exception('Google OAuth callback could not persist the connection')
        return _settings_redirect(app_origin, 'error')

    logger.info('Connected Google account for user %s', user_id)
    return _settings_redirect(app_origin, 'connected')


@router.post('/oauth/disconnect')
def disconnect_google(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        google_oauth.delete_connection(db, current_user.id)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return {'ok': True}


@router.get('/oauth/status')
def google_connection_status(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        token = db.query(GoogleOAuthToken.user_id).filter(GoogleOAuthToken.user_id == current_user.id).first()
        connection = db.query(GoogleOAuthConnection).filter(
            GoogleOAuthConnection.user_id == current_user.id,
        ).first()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return {
        'ok': True,
        'connected': token is not None,
        'email': connection.email if token and connection else None,
        'connected_at': connection.connected_at.isoformat() if token and connection and connection.connected_at else None,
    }


@router.post('/meet-link')
async def create_meet_link(
    data: MeetLinkBody,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    validation_error = validate_meet_link_body(data)
    if validation_error:
        return json_error(validation_error)

    try:
        session_start = parse_session_start(data.session_date) if data.session_date else None
    except ValueError:
        return json_error('INVALID_SESSION_DATE')

    ensure_database_ready()

    meet_request = MeetLinkRequest(
        patient_name=(data.patient_name or '').strip(),
        patient_email=(data.patient_email or '').strip(),
        invite_patient=data.invite_patient,
        session_start=session_start,
        duration_minutes=data.duration_minutes,
    )

    try:
        patient = None
        if data.patient_id is not None:
            patient = db.query(Patient).filter(
                Patient.id == data.patient_id,
                Patient.user_id == current_user.id,
            ).first()
            if patient is None:
                return json_error('PATIENT_NOT_FOUND', status.HTTP_404_NOT_FOUND)

        existing = reuse_existing_link(patient, meet_request)
        if existing is not None:
            return _meet_link_payload(existing)

        settings = config.get_google_oauth_settings()

        async with google_oauth.build_http_client() as http_client:
            tokens = GoogleTokenManager(db, current_user.id, http_client, settings).load()
            calendar = GoogleCalendarClient(http_client, tokens)
            result = await resolve_meet_link(db, calendar, patient, meet_request)
    except ConfigurationError as exc:
        return json_error(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    except CalendarError as exc:
        return json_error(exc.code.value, exc.status_code)
    except httpx.HTTPError:
        logger.exception('Calendar request failed for user %s', current_user.id)
        return json_error(CalendarErrorCode.EVENT_CREATE_FAILED.value, status.HTTP_500_INTERNAL_SERVER_ERROR)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return _meet_link_payload(result)
