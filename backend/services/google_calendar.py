"""
Google Calendar event management and Meet link resolution.

Each patient keeps one long-lived calendar event whose conference link is
reused for every session. Resolution walks the cheapest route first:

    existing link -> patch known event -> fetch known event -> create event
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from urllib.parse import quote

import httpx
from sqlalchemy.orm import Session

from backend.core import config
from backend.core.timeutils import next_business_day, utcnow
from backend.models.patient import Patient
from backend.models.session import CANCELLED_STATUS, TherapySession
from backend.services.google_oauth import CalendarError, CalendarErrorCode, GoogleTokenManager

logger = logging.getLogger(__name__)

DEFAULT_EVENT_DURATION_MINUTES = 60
DEFAULT_CALENDAR_ID = 'primary'
DEFAULT_PATIENT_NAME = 'Patient'
MEET_LINK_MARKER = 'meet.google.com/'


class LinkOutcome(str, Enum):
    EXISTING = 'existing'
    UPDATED = 'updated'
    RECOVERED = 'recovered'
    CREATED = 'created'


@dataclass
class MeetLinkRequest:
    patient_name: str = ''
    patient_email: str = ''
    invite_patient: bool = False
    session_start: Optional[datetime] = None
    duration_minutes: Optional[int] = None

    @property
    def wants_update(self) -> bool:
        return self.session_start is not None or self.invite_patient


@dataclass
class MeetLinkResult:
    link: Optional[str]
    event_id: Optional[str]
    calendar_id: Optional[str]
    outcome: LinkOutcome


def is_meet_link(link: Optional[str]) -> bool:
    return bool(link and MEET_LINK_MARKER in link)


def extract_meet_link(event: Optional[dict]) -> Optional[str]:
    if not isinstance(event, dict):
        return None
    if isinstance(event.get('hangoutLink'), str):
        return event['hangoutLink']
    entry_points = (event.get('conferenceData') or {}).get('entryPoints')
    if isinstance(entry_points, list):
        for entry in entry_points:
            if isinstance(entry, dict) and entry.get('entryPointType') == 'video' and entry.get('uri'):
                return entry['uri']
    return None


def _rfc3339(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat() + 'Z'


def _event_details(patient_name: str) -> dict:
    return {
        'summary': f'Session - {patient_name}',
        'description': f'Standing video link for sessions with {patient_name}.',
        'transparency': 'transparent',
        'visibility': 'private',
    }


def _event_window(start: datetime, duration_minutes: Optional[int]) -> dict:
    if not duration_minutes or duration_minutes <= 0:
        duration_minutes = DEFAULT_EVENT_DURATION_MINUTES
    end = start + timedelta(minutes=duration_minutes)
    return {'start': {'dateTime': _rfc3339(start)}, 'end': {'dateTime': _rfc3339(end)}}


def build_event_payload(patient_name: str, start: datetime, duration_minutes: Optional[int]) -> dict:
    payload = _event_details(patient_name)
    payload.update(_event_window(start, duration_minutes))
    payload['conferenceData'] = {
        'createRequest': {
            'requestId': uuid.uuid4().hex,
            'conferenceSolutionKey': {'type': 'hangoutsMeet'},
        }
    }
    return payload


class GoogleCalendarClient:
    """Calendar API calls with one retry on a stale cached token."""

    def __init__(self, http_client: httpx.AsyncClient, tokens: GoogleTokenManager):
        self.http_client = http_client
        self.tokens = tokens

    async def _request(self, method: str, path: str, params: dict, json: Optional[dict] = None) -> httpx.Response:
        url = f'{config.GOOGLE_CALENDAR_API}{path}'
        access_token, from_cache = await self.tokens.get_access_token()
        response = await self.http_client.request(
            method,
            url,
            params=params,
            json=json,
            headers={'Authorization': f'Bearer {access_token}'},
        )

        if response.status_code == 401 and from_cache:
            logger.info('Calendar API rejected cached token for user %s, refreshing', self.tokens.user_id)
            access_token = await self.tokens.refresh()
            response = await self.http_client.request(
                method,
                url,
                params=params,
                json=json,
                headers={'Authorization': f'Bearer {access_token}'},
            )

        return response

    @staticmethod
    def _event_path(calendar_id: str, event_id: Optional[str] = None) -> str:
        path = f'/calendars/{quote(calendar_id, safe="")}/events'
        if event_id:
            path += f'/{quote(event_id, safe="")}'
        return path

    @staticmethod
    def _params(send_updates: bool) -> dict:
        params = {'conferenceDataVersion': '1'}
        if send_updates:
            params['sendUpdates'] = 'all'
        return params

    async def create_event(self, calendar_id: str, payload: dict, send_updates: bool = False) -> dict:
        response = await self._request('POST', self._event_path(calendar_id), self._params(send_updates), payload)
        if response.status_code not in (200, 201):
            logger.error('Failed to create calendar event: %s %s', response.status_code, response.text)
            raise CalendarError(CalendarErrorCode.EVENT_CREATE_FAILED)
        return response.json()

    async def patch_event(
        self,
        calendar_id: str,
        event_id: str,
        payload: dict,
        send_updates: bool = False,
    ) -> Optional[dict]:
        try:
            response = await self._request(
                'PATCH',
                self._event_path(calendar_id, event_id),
                self._params(send_updates),
                payload,
            )
        except httpx.HTTPError:
            logger.exception('Calendar update request for event %s failed', event_id)
            return None
        if response.status_code != 200:
            logger.error('Failed to update calendar event %s: %s %s', event_id, response.status_code, response.text)
            return None
        return response.json()

    async def get_event(self, calendar_id: str, event_id: str) -> Optional[dict]:
        try:
            response = await self._request('GET', self._event_path(calendar_id, event_id), self._params(False))
        except httpx.HTTPError:
            logger.exception('Calendar fetch request for event %s failed', event_id)
            return None
        if response.status_code != 200:
            logger.warning('Could not fetch calendar event %s: %s', event_id, response.status_code)
            return None
        return response.json()


def next_session_for_patient(db: Session, patient: Patient, now: datetime) -> Optional[TherapySession]:
    return db.query(TherapySession).filter(
        TherapySession.patient_id == patient.id,
        TherapySession.payment_status != CANCELLED_STATUS,
        TherapySession.session_date >= now,
    ).order_by(TherapySession.session_date.asc()).first()


def reuse_existing_link(patient: Optional[Patient], request: MeetLinkRequest) -> Optional[MeetLinkResult]:
    """Fast path that needs neither tokens nor network."""
    if patient is None or request.wants_update or not is_meet_link(patient.session_link):
        return None
    return MeetLinkResult(
        link=patient.session_link,
        event_id=patient.meet_event_id,
        calendar_id=patient.meet_calendar_id,
        outcome=LinkOutcome.EXISTING,
    )


async def resolve_meet_link(
    db: Session,
    calendar: GoogleCalendarClient,
    patient: Optional[Patient],
    request: MeetLinkRequest,
    now: Optional[datetime] = None,
) -> MeetLinkResult:
    now = now or utcnow()
    patient_name = (patient.full_name if patient else '') or request.patient_name or DEFAULT_PATIENT_NAME
    attendees = [{'email': request.patient_email}] if request.invite_patient else None

    if patient is not None and patient.meet_event_id:
        calendar_id = patient.meet_calendar_id or DEFAULT_CALENDAR_ID

        if request.wants_update:
            payload = _event_details(patient_name)
            if request.session_start is not None:
                payload.update(_event_window(request.session_start, request.duration_minutes))
            if attendees:
                payload['attendees'] = attendees

            updated_event = await calendar.patch_event(
                calendar_id,
                patient.meet_event_id,
                payload,
                send_updates=request.invite_patient,
            )
            refreshed_link = extract_meet_link(updated_event)
            if refreshed_link and refreshed_link != patient.session_link:
                patient.session_link = refreshed_link
                db.commit()
            link = refreshed_link or patient.session_link
            if updated_event is not None or is_meet_link(link):
                return MeetLinkResult(link, patient.meet_event_id, calendar_id, LinkOutcome.UPDATED)
        else:
            existing_event = await calendar.get_event(calendar_id, patient.meet_event_id)
            recovered_link = extract_meet_link(existing_event)
            if recovered_link:
                patient.session_link = recovered_link
                db.commit()
                return MeetLinkResult(recovered_link, patient.meet_event_id, calendar_id, LinkOutcome.RECOVERED)

    start = request.session_start
    duration_minutes = request.duration_minutes
    if start is None and patient is not None:
        upcoming = next_session_for_patient(db, patient, now)
        if upcoming is not None:
            start = upcoming.session_date
            duration_minutes = duration_minutes or upcoming.duration_minutes
    if start is None:
        start = next_business_day(now)

    payload = build_event_payload(patient_name, start, duration_minutes)
    if attendees:
        payload['attendees'] = attendees

    event = await calendar.create_event(DEFAULT_CALENDAR_ID, payload, send_updates=request.invite_patient)
    meet_link = extract_meet_link(event)
    if not meet_link:
        raise CalendarError(CalendarErrorCode.MEET_LINK_NOT_RETURNED)

    event_id = event.get('id') if isinstance(event.get('id'), str) else None
    if patient is not None:
        patient.session_link = meet_link
        patient.meet_event_id = event_id
        patient.meet_calendar_id = DEFAULT_CALENDAR_ID
        db.commit()

    logger.info('Created calendar event %s for patient %s', event_id, patient.id if patient else '(unsaved)')
    return MeetLinkResult(meet_link, event_id, DEFAULT_CALENDAR_ID, LinkOutcome.CREATED)
