import asyncio
from datetime import datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from backend.core.config import GoogleOAuthSettings
from backend.core.timeutils import utcnow
from backend.models.google_oauth import GoogleOAuthConnection, GoogleOAuthToken
from backend.services import google_oauth
from backend.services.google_oauth import CalendarError, CalendarErrorCode, GoogleTokenManager

SETTINGS = GoogleOAuthSettings(
    client_id='client-id',
    client_secret='client-secret',
    redirect_uri='https://api.example.com/google/oauth/callback',
    redirect_uri_local='http://localhost:8000/google/oauth/callback',
)


def _store_token(db, user, expires_at: datetime, version: int = 1) -> GoogleOAuthToken:
    token = GoogleOAuthToken(
        user_id=user.id,
        access_token='cached-token',
        refresh_token='refresh-token',
        expires_at=expires_at,
        version=version,
    )
    db.add(token)
    db.add(GoogleOAuthConnection(user_id=user.id, email='therapist@gmail.com'))
    db.commit()
    return token


def _token_client(status_code: int, payload: dict, calls: list) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(parse_qs(request.content.decode()))
        return httpx.Response(status_code, json=payload)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_versioned_update_rejects_stale_version(db, user) -> None:
    _store_token(db, user, utcnow() + timedelta(minutes=30), version=3)

    assert google_oauth.store_refreshed_token(db, user.id, 2, 'stale', utcnow()) is False
    assert google_oauth.store_refreshed_token(db, user.id, 3, 'fresh', utcnow() + timedelta(hours=1)) is True

    db.expire_all()
    token = db.query(GoogleOAuthToken).filter(GoogleOAuthToken.user_id == user.id).one()
    assert token.access_token == 'fresh'
    assert token.version == 4


def test_token_with_less_than_a_minute_left_is_not_fresh(db, user) -> None:
    _store_token(db, user, utcnow() + timedelta(seconds=30))

    manager = GoogleTokenManager(db, user.id, None, SETTINGS).load()

    assert manager.has_fresh_access_token() is False


def test_token_with_plenty_of_time_left_is_used_from_cache(db, user) -> None:
    _store_token(db, user, utcnow() + timedelta(minutes=10))
    manager = GoogleTokenManager(db, user.id, None, SETTINGS).load()

    access_token, from_cache = asyncio.run(manager.get_access_token())

    assert access_token == 'cached-token'
    assert from_cache is True
    assert manager.refresh_count == 0


def test_load_without_token_row_is_not_connected(db, user) -> None:
    with pytest.raises(CalendarError) as exception_info:
        GoogleTokenManager(db, user.id, None, SETTINGS).load()

    assert exception_info.value.code is CalendarErrorCode.NOT_CONNECTED
    assert exception_info.value.status_code == 409


def test_expiring_token_is_refreshed_and_persisted(db, user) -> None:
    _store_token(db, user, utcnow() + timedelta(seconds=30), version=5)
    calls: list = []

    async def scenario():
        async with _token_client(200, {'access_token': 'new-token', 'expires_in': 3599}, calls) as client:
            manager = GoogleTokenManager(db, user.id, client, SETTINGS).load()
            return await manager.get_access_token(), manager

    (access_token, from_cache), manager = asyncio.run(scenario())

    assert access_token == 'new-token'
    assert from_cache is False
    assert manager.refresh_count == 1
    assert calls[0]['grant_type'] == ['refresh_token']
    assert calls[0]['refresh_token'] == ['refresh-token']

    db.expire_all()
    token = db.query(GoogleOAuthToken).filter(GoogleOAuthToken.user_id == user.id).one()
    assert token.access_token == 'new-token'
    assert token.version == 6
    assert token.expires_at > utcnow() + timedelta(minutes=50)


@pytest.mark.parametrize('error_code', ['invalid_grant', 'unauthorized_client'])
def test_revoked_refresh_token_deletes_connection(db, user, error_code: str) -> None:
    _store_token(db, user, utcnow() - timedelta(minutes=5))

    async def scenario():
        async with _token_client(400, {'error': error_code}, []) as client:
            manager = GoogleTokenManager(db, user.id, client, SETTINGS).load()
            await manager.get_access_token()

    with pytest.raises(CalendarError) as exception_info:
        asyncio.run(scenario())

    assert exception_info.value.code is CalendarErrorCode.NOT_CONNECTED
    assert db.query(GoogleOAuthToken).count() == 0
    assert db.query(GoogleOAuthConnection).count() == 0


def test_other_refresh_failures_keep_connection(db, user) -> None:
    _store_token(db, user, utcnow() - timedelta(minutes=5))

    async def scenario():
        async with _token_client(500, {'error': 'backend_error'}, []) as client:
            manager = GoogleTokenManager(db, user.id, client, SETTINGS).load()
            await manager.refresh()

    with pytest.raises(CalendarError) as exception_info:
        asyncio.run(scenario())

    assert exception_info.value.code is CalendarErrorCode.REFRESH_FAILED
    assert exception_info.value.status_code == 500
    assert db.query(GoogleOAuthToken).count() == 1


def test_save_connection_keeps_previous_refresh_token(db, user) -> None:
    _store_token(db, user, utcnow() - timedelta(minutes=5), version=2)

    token = google_oauth.save_connection(
        db,
        user.id,
        {'access_token': 'consented-token', 'expires_in': 3600, 'scope': 'calendar.events'},
        'new-account@gmail.com',
    )

    assert token.refresh_token == 'refresh-token'
    assert token.access_token == 'consented-token'
    assert token.version == 3
    connection = db.query(GoogleOAuthConnection).filter(GoogleOAuthConnection.user_id == user.id).one()
    assert connection.email == 'new-account@gmail.com'


def test_save_connection_without_any_refresh_token_fails(db, user) -> None:
    with pytest.raises(CalendarError) as exception_info:
        google_oauth.save_connection(db, user.id, {'access_token': 'only-access'}, None)

    assert exception_info.value.code is CalendarErrorCode.NOT_CONNECTED


def test_oauth_state_is_single_use(db, user) -> None:
    state = google_oauth.create_oauth_state(db, user.id, 'https://app.example.com')

    assert google_oauth.decode_state_origin(state) == 'https://app.example.com'
    assert google_oauth.consume_oauth_state(db, state) == user.id
    assert google_oauth.consume_oauth_state(db, state) is None


def test_expired_oauth_state_is_rejected(db, user) -> None:
    created = utcnow() - timedelta(minutes=30)
    state = google_oauth.create_oauth_state(db, user.id, 'https://app.example.com', now=created)

    assert google_oauth.consume_oauth_state(db, state) is None


def test_decode_state_origin_rejects_garbage_and_non_http_origins() -> None:
    assert google_oauth.decode_state_origin('not-base64!') == ''
    assert google_oauth.decode_state_origin(google_oauth.encode_state('javascript:alert(1)')) == ''


def test_consent_url_requests_offline_calendar_access() -> None:
    url = google_oauth.build_consent_url(SETTINGS, SETTINGS.redirect_uri, 'state-value')
    query = parse_qs(url.split('?', 1)[1])

    assert query['access_type'] == ['offline']
    assert query['prompt'] == ['consent']
    assert query['scope'] == ['https://www.googleapis.com/auth/calendar.events']
    assert query['state'] == ['state-value']


def test_local_origins_use_local_redirect_uri() -> None:
    assert google_oauth.select_redirect_uri(SETTINGS, 'http://localhost:5173') == SETTINGS.redirect_uri_local
    assert google_oauth.select_redirect_uri(SETTINGS, 'https://app.example.com') == SETTINGS.redirect_uri
