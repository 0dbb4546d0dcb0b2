"""Google OAuth plumbing: consent URLs, code exchange and token refresh."""

import base64
import json
import logging
import re
import secrets
from datetime import datetime, timedelta
from enum import Enum
from urllib.parse import urlencode

import httpx
from sqlalchemy import update
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.timeutils import utcnow
from backend.models.google_oauth import GoogleOAuthConnection, GoogleOAuthState, GoogleOAuthToken

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN = timedelta(seconds=60)
OAUTH_STATE_TTL = timedelta(minutes=15)
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
REVOKED_REFRESH_ERRORS = {'invalid_grant', 'unauthorized_client'}
_LOCAL_ORIGIN_PATTERN = re.compile(r'localhost|127\.0\.0\.1', re.IGNORECASE)


class CalendarErrorCode(str, Enum):
    NOT_CONNECTED = 'GOOGLE_NOT_CONNECTED'
    REFRESH_FAILED = 'GOOGLE_REFRESH_FAILED'
    EVENT_CREATE_FAILED = 'EVENT_CREATE_FAILED'
    MEET_LINK_NOT_RETURNED = 'MEET_LINK_NOT_RETURNED'
    NOT_CONFIGURED = 'GOOGLE_OAUTH_NOT_CONFIGURED'


CALENDAR_ERROR_STATUS = {
    CalendarErrorCode.NOT_CONNECTED: 409,
    CalendarErrorCode.REFRESH_FAILED: 500,
    CalendarErrorCode.EVENT_CREATE_FAILED: 500,
    CalendarErrorCode.MEET_LINK_NOT_RETURNED: 500,
    CalendarErrorCode.NOT_CONFIGURED: 500,
}


class CalendarError(Exception):
    """A Google-side failure, reduced to one of ``CalendarErrorCode``."""

    def __init__(self, code: CalendarErrorCode, message: str = ''):
        super().__init__(message or code.value)
        self.code = code

    @property
    def status_code(self) -> int:
        return CALENDAR_ERROR_STATUS.get(self.code, 500)


def build_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=config.GOOGLE_HTTP_TIMEOUT_SECONDS)


def _response_json(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _expires_at_from(payload: dict, now: datetime) -> datetime:
    expires_in = payload.get('expires_in')
    if not isinstance(expires_in, (int, float)) or expires_in <= 0:
        expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS
    return now + timedelta(seconds=expires_in)


def encode_state(app_origin: str) -> str:
    payload = json.dumps({'nonce': secrets.token_hex(16), 'appOrigin': app_origin})
    return base64.urlsafe_b64encode(payload.encode()).decode().rstrip('=')


def decode_state_origin(state: str) -> str:
    padding = '=' * (-len(state) % 4)
    try:
        parsed = json.loads(base64.urlsafe_b64decode(state + padding))
    except (ValueError, TypeError):
        return ''
    origin = parsed.get('appOrigin') if isinstance(parsed, dict) else None
    if isinstance(origin, str) and origin.lower().startswith(('http://', 'https://')):
        return origin
    return ''


def create_oauth_state(db: Session, user_id: int, app_origin: str, now: datetime | None = None) -> str:
    now = now or utcnow()
    state = encode_state(app_origin)
    db.add(GoogleOAuthState(state=state, user_id=user_id, expires_at=now + OAUTH_STATE_TTL))
    db.commit()
    return state


def consume_oauth_state(db: Session, state: str, now: datetime | None = None) -> int | None:
    """Delete the state row; return its user id if it had not expired."""
    now = now or utcnow()
    row = db.query(GoogleOAuthState).filter(GoogleOAuthState.state == state).first()
    if row is None:
        return None

    user_id, expires_at = row.user_id, row.expires_at
    db.delete(row)
    db.commit()

    if expires_at is None or expires_at < now:
        return None
    return user_id


def is_local_origin(app_origin: str) -> bool:
    return bool(_LOCAL_ORIGIN_PATTERN.search(app_origin or ''))


def select_redirect_uri(settings: config.GoogleOAuthSettings, app_origin: str) -> str:
    if is_local_origin(app_origin) and settings.redirect_uri_local:
        return settings.redirect_uri_local
    return settings.redirect_uri


def build_consent_url(settings: config.GoogleOAuthSettings, redirect_uri: str, state: str) -> str:
    params = {
        'client_id': settings.client_id,
        'redirect_uri': redirect_uri,
        'response_type': 'code',
        'access_type': 'offline',
        'prompt': 'consent',
        'include_granted_scopes': 'true',
        'scope': config.GOOGLE_CALENDAR_SCOPE,
        'state': state,
    }
    return f'{config.GOOGLE_AUTH_URL}?{urlencode(params)}'


async def exchange_code(
    http_client: httpx.AsyncClient,
    settings: config.GoogleOAuthSettings,
    code: str,
    redirect_uri: str,
) -> dict:
    response = await http_client.post(
        config.GOOGLE_TOKEN_URL,
        data={
            'code': code,
            'client_id': settings.client_id,
            'client_secret': settings.client_secret,
            'redirect_uri': redirect_uri,
            'grant_type': 'authorization_code',
        },
    )
    payload = _response_json(response)
    if response.status_code != 200 or not payload.get('access_token'):
        logger.error('Google code exchange failed with status %s: %s', response.status_code, payload)
        raise CalendarError(CalendarErrorCode.NOT_CONNECTED, 'Code exchange failed')
    return payload


async def fetch_google_email(http_client: httpx.AsyncClient, access_token: str) -> str | None:
    try:
        response = await http_client.get(
            config.GOOGLE_USERINFO_URL,
            headers={'Authorization': f'Bearer {access_token}'},
        )
    except httpx.HTTPError:
        logger.exception('Failed to fetch Google account email')
        return None

    if response.status_code != 200:
        return None
    email = _response_json(response).get('email')
    return email if isinstance(email, str) else None


def save_connection(
    db: Session,
    user_id: int,
    token_payload: dict,
    email: str | None,
    now: datetime | None = None,
) -> GoogleOAuthToken:
    """Upsert the token and connection rows after a successful consent."""
    now = now or utcnow()
    token = db.query(GoogleOAuthToken).filter(GoogleOAuthToken.user_id == user_id).first()
    # Google only sends a refresh token on first consent; keep the old one.
    refresh_token = token_payload.get('refresh_token') or (token.refresh_token if token else None)
    if not refresh_token:
        raise CalendarError(CalendarErrorCode.NOT_CONNECTED, 'No refresh token granted')

    if token is None:
        token = GoogleOAuthToken(user_id=user_id, version=1)
        db.add(token)
    else:
        token.version = (token.version or 0) + 1

    token.access_token = token_payload['access_token']
    token.refresh_token = refresh_token
    token.token_type = token_payload.get('token_type') or 'Bearer'
    token.scope = token_payload.get('scope')
    token.expires_at = _expires_at_from(token_payload, now)

    connection = db.query(GoogleOAuthConnection).filter(GoogleOAuthConnection.user_id == user_id).first()
    if connection is None:
        connection = GoogleOAuthConnection(user_id=user_id)
        db.add(connection)
    connection.email = email
    connection.scope = token_payload.get('scope')
    connection.connected_at = now

    db.commit()
    return token


def delete_connection(db: Session, user_id: int) -> None:
    db.query(GoogleOAuthToken).filter(GoogleOAuthToken.user_id == user_id).delete(synchronize_session=False)
    db.query(GoogleOAuthConnection).filter(GoogleOAuthConnection.user_id == user_id).delete(synchronize_session=False)
    db.commit()


def store_refreshed_token(
    db: Session,
    user_id: int,
    expected_version: int,
    access_token: str,
    expires_at: datetime | None,
) -> bool:
    """Write a refreshed access token if nobody else refreshed first."""
    result = db.execute(
        update(GoogleOAuthToken)
        .where(
            GoogleOAuthToken.user_id == user_id,
            GoogleOAuthToken.version == expected_version,
        )
        .values(
            access_token=access_token,
            expires_at=expires_at,
            version=GoogleOAuthToken.version + 1,
        )
    )
    db.commit()
    return result.rowcount == 1


class GoogleTokenManager:
    """Hands out a usable access token for one practitioner."""

    def __init__(
        self,
        db: Session,
        user_id: int,
        http_client: httpx.AsyncClient,
        settings: config.GoogleOAuthSettings,
    ):
        self.db = db
        self.user_id = user_id
        self.http_client = http_client
        self.settings = settings
        self._access_token: str | None = None
        self._expires_at: datetime | None = None
        self._refresh_token: str | None = None
        self._version: int = 0
        self.refresh_count = 0

    def load(self) -> 'GoogleTokenManager':
        token = self.db.query(GoogleOAuthToken).filter(GoogleOAuthToken.user_id == self.user_id).first()
        if token is None or not token.refresh_token:
            raise CalendarError(CalendarErrorCode.NOT_CONNECTED)

        self._access_token = token.access_token
        self._expires_at = token.expires_at
        self._refresh_token = token.refresh_token
        self._version = token.version or 0
        return self

    def has_fresh_access_token(self, now: datetime | None = None) -> bool:
        if not self._access_token or self._expires_at is None:
            return False
        now = now or utcnow()
        return self._expires_at - now > TOKEN_REFRESH_MARGIN

    async def get_access_token(self) -> tuple[str, bool]:
        """Return ``(token, from_cache)``, refreshing when close to expiry."""
        if self.has_fresh_access_token():
            return self._access_token, True
        return await self.refresh(), False

    async def refresh(self) -> str:
        self.refresh_count += 1
        try:
            response = await self.http_client.post(
                config.GOOGLE_TOKEN_URL,
                data={
                    'client_id': self.settings.client_id,
                    'client_secret': self.settings.client_secret,
                    'refresh_token': self._refresh_token,
                    'grant_type': 'refresh_token',
                },
            )
        except httpx.HTTPError as exc:
            logger.exception('Google token refresh request failed for user %s', self.user_id)
            raise CalendarError(CalendarErrorCode.REFRESH_FAILED) from exc

        payload = _response_json(response)
        if response.status_code != 200:
            error_code = str(payload.get('error') or '').lower()
            logger.error('Google token refresh failed for user %s: %s', self.user_id, payload)
            if error_code in REVOKED_REFRESH_ERRORS:
                delete_connection(self.db, self.user_id)
                raise CalendarError(CalendarErrorCode.NOT_CONNECTED, 'Google token revoked')
            raise CalendarError(CalendarErrorCode.REFRESH_FAILED)

        access_token = payload.get('access_token')
        if not access_token:
            raise CalendarError(CalendarErrorCode.REFRESH_FAILED, 'Missing access token')

        expires_at = _expires_at_from(payload, utcnow())
        if store_refreshed_token(self.db, self.user_id, self._version, access_token, expires_at):
            self._version += 1
        else:
            # Another request refreshed concurrently; its row stays authoritative.
            logger.info('Skipped stale token write for user %s', self.user_id)

        self._access_token = access_token
        self._expires_at = expires_at
        return access_token
