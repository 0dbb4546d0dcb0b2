"""Session conflict detection.

An existing session occupies ``[start, start + duration + buffer)``. The
trailing buffer keeps back-to-back bookings one minute apart.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from backend.models.session import CANCELLED_STATUS, TherapySession

DEFAULT_SESSION_DURATION_MINUTES = 50
SESSION_BUFFER_MINUTES = 1


@dataclass(frozen=True)
class SessionSlot:
    session: TherapySession
    start: datetime
    end: datetime

    @property
    def buffered_end(self) -> datetime:
        return self.end + timedelta(minutes=SESSION_BUFFER_MINUTES)


def effective_duration_minutes(duration_minutes: Optional[int]) -> int:
    if not duration_minutes or duration_minutes <= 0:
        return DEFAULT_SESSION_DURATION_MINUTES
    return int(duration_minutes)


def build_session_slots(
    sessions: Iterable[TherapySession],
    exclude_session_id: Optional[int] = None,
) -> list[SessionSlot]:
    slots: list[SessionSlot] = []
    for session in sessions:
        if exclude_session_id is not None and session.id == exclude_session_id:
            continue
        if session.payment_status == CANCELLED_STATUS or session.session_date is None:
            continue
        start = session.session_date
        end = start + timedelta(minutes=effective_duration_minutes(session.duration_minutes))
        slots.append(SessionSlot(session=session, start=start, end=end))

    # Sorting makes "first conflict" mean "earliest conflict" whatever order
    # the caller queried in.
    slots.sort(key=lambda slot: (slot.start, slot.session.id or 0))
    return slots


def intervals_overlap(candidate_start: datetime, candidate_end: datetime, slot: SessionSlot) -> bool:
    return candidate_start < slot.buffered_end and candidate_end > slot.start


def find_session_conflict(
    sessions: Iterable[TherapySession],
    candidate_start: datetime,
    duration_minutes: Optional[int] = None,
    exclude_session_id: Optional[int] = None,
) -> Optional[TherapySession]:
    candidate_end = candidate_start + timedelta(minutes=effective_duration_minutes(duration_minutes))

    for slot in build_session_slots(sessions, exclude_session_id):
        if intervals_overlap(candidate_start, candidate_end, slot):
            return slot.session

    return None


def first_available_session_start(
    sessions: Iterable[TherapySession],
    candidate_start: datetime,
    duration_minutes: Optional[int] = None,
    exclude_session_id: Optional[int] = None,
) -> datetime:
    """Return the earliest start at or after ``candidate_start`` that fits."""
    duration = timedelta(minutes=effective_duration_minutes(duration_minutes))
    cursor = candidate_start

    for slot in build_session_slots(sessions, exclude_session_id):
        if slot.buffered_end <= cursor:
            continue
        if cursor + duration <= slot.start:
            return cursor
        if intervals_overlap(cursor, cursor + duration, slot):
            cursor = slot.buffered_end

    return cursor
