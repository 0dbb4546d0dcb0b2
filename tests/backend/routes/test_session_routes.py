from datetime import date, datetime, timezone

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from backend.models.patient import Patient
from backend.models.session import TherapySession
from backend.routes import session_routes
from backend.routes.session_routes import (
    ConflictCheckRequest,
    CreateRecurringSessionsRequest,
    CreateSessionRequest,
    UpdateSessionRequest,
    check_session_conflict,
    create_recurring_sessions,
    create_session,
    recurring_start_dates,
    update_session,
)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def patient(db, user):
    record = Patient(user_id=user.id, full_name='Ana Souza', session_price=180)
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def _add_session(db, user, patient, start: datetime, duration: int = 50, status: str = 'pending') -> TherapySession:
    session = TherapySession(
        user_id=user.id,
        patient_id=patient.id,
        session_date=start,
        duration_minutes=duration,
        payment_status=status,
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def test_naive_session_dates_are_read_as_local_time() -> None:
    request = CreateSessionRequest(patient_id=1, session_date=datetime(2026, 3, 2, 10, 0))

    assert request.session_date == datetime(2026, 3, 2, 13, 0)


def test_aware_session_dates_are_stored_as_naive_utc() -> None:
    request = CreateSessionRequest(patient_id=1, session_date='2026-03-02T10:00:00-03:00')

    assert request.session_date == datetime(2026, 3, 2, 13, 0)


def test_invalid_payment_status_is_rejected() -> None:
    with pytest.raises(ValidationError):
        CreateSessionRequest(patient_id=1, session_date=_utc(2026, 3, 2, 13, 0), payment_status='refunded')


def test_create_session_fills_defaults_from_patient(db, user, patient) -> None:
    session = create_session(
        CreateSessionRequest(patient_id=patient.id, session_date=_utc(2026, 3, 2, 13, 0)),
        current_user=user,
        db=db,
    )

    assert session.duration_minutes == 50
    assert session.session_price == 180
    assert session.session_type == 'Individual session'
    assert session.payment_status == 'pending'


def test_create_session_rejects_overlap_with_conflict_details(db, user, patient) -> None:
    existing = _add_session(db, user, patient, datetime(2026, 3, 2, 13, 0))

    with pytest.raises(HTTPException) as exception_info:
        create_session(
            CreateSessionRequest(patient_id=patient.id, session_date=_utc(2026, 3, 2, 13, 30), duration_minutes=30),
            current_user=user,
            db=db,
        )

    assert exception_info.value.status_code == 409
    detail = exception_info.value.detail
    assert detail['conflict_session_id'] == existing.id
    assert detail['first_available_start'] == '2026-03-02T13:51:00'
    assert db.query(TherapySession).count() == 1


def test_create_session_after_buffer_is_accepted(db, user, patient) -> None:
    _add_session(db, user, patient, datetime(2026, 3, 2, 13, 0))

    session = create_session(
        CreateSessionRequest(patient_id=patient.id, session_date=_utc(2026, 3, 2, 13, 52), duration_minutes=30),
        current_user=user,
        db=db,
    )

    assert session.session_date == datetime(2026, 3, 2, 13, 52)


def test_cancelled_sessions_do_not_block_new_ones(db, user, patient) -> None:
    _add_session(db, user, patient, datetime(2026, 3, 2, 13, 0), status='cancelled')

    session = create_session(
        CreateSessionRequest(patient_id=patient.id, session_date=_utc(2026, 3, 2, 13, 0)),
        current_user=user,
        db=db,
    )

    assert session.id is not None


def test_other_practitioners_sessions_do_not_conflict(db, user, other_user, patient) -> None:
    other_patient = Patient(user_id=other_user.id, full_name='Someone Else')
    db.add(other_patient)
    db.commit()
    _add_session(db, other_user, other_patient, datetime(2026, 3, 2, 13, 0))

    session = create_session(
        CreateSessionRequest(patient_id=patient.id, session_date=_utc(2026, 3, 2, 13, 0)),
        current_user=user,
        db=db,
    )

    assert session.user_id == user.id


def test_create_session_for_unknown_patient_is_not_found(db, user, other_user) -> None:
    foreign = Patient(user_id=other_user.id, full_name='Not Yours')
    db.add(foreign)
    db.commit()

    with pytest.raises(HTTPException) as exception_info:
        create_session(
            CreateSessionRequest(patient_id=foreign.id, session_date=_utc(2026, 3, 2, 13, 0)),
            current_user=user,
            db=db,
        )

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == 'Patient not found.'


def test_rescheduling_a_session_ignores_itself(db, user, patient) -> None:
    session = _add_session(db, user, patient, datetime(2026, 3, 2, 13, 0))

    updated = update_session(
        session.id,
        UpdateSessionRequest(session_date=_utc(2026, 3, 2, 13, 20)),
        current_user=user,
        db=db,
    )

    assert updated.session_date == datetime(2026, 3, 2, 13, 20)


def test_rescheduling_onto_another_session_conflicts(db, user, patient) -> None:
    _add_session(db, user, patient, datetime(2026, 3, 2, 13, 0))
    later = _add_session(db, user, patient, datetime(2026, 3, 2, 15, 0))

    with pytest.raises(HTTPException) as exception_info:
        update_session(
            later.id,
            UpdateSessionRequest(session_date=_utc(2026, 3, 2, 13, 40)),
            current_user=user,
            db=db,
        )

    assert exception_info.value.status_code == 409


def test_editing_notes_does_not_run_conflict_check(db, user, patient) -> None:
    # Two overlapping sessions can exist from before the check was introduced.
    _add_session(db, user, patient, datetime(2026, 3, 2, 13, 0))
    overlapping = _add_session(db, user, patient, datetime(2026, 3, 2, 13, 10))

    updated = update_session(
        overlapping.id,
        UpdateSessionRequest(session_notes='Discussed sleep routine.'),
        current_user=user,
        db=db,
    )

    assert updated.session_notes == 'Discussed sleep routine.'


def test_check_conflict_reports_first_available_start(db, user, patient) -> None:
    existing = _add_session(db, user, patient, datetime(2026, 3, 2, 13, 0))

    response = check_session_conflict(
        ConflictCheckRequest(session_date=_utc(2026, 3, 2, 13, 10)),
        current_user=user,
        db=db,
    )

    assert response.conflict.id == existing.id
    assert response.first_available_start == datetime(2026, 3, 2, 13, 51)


def test_recurring_start_dates_begin_next_monday() -> None:
    wednesday = date(2026, 3, 4)

    assert recurring_start_dates(wednesday, 1, 2) == [date(2026, 3, 9), date(2026, 3, 16)]
    assert recurring_start_dates(wednesday, 0, 1) == [date(2026, 3, 15)]
    assert recurring_start_dates(date(2026, 3, 2), 5, 1) == [date(2026, 3, 6)]


def test_recurring_sessions_skip_conflicting_slots(db, user, patient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(session_routes, 'utcnow', lambda: datetime(2026, 3, 4, 12, 0))
    blocking = _add_session(db, user, patient, datetime(2026, 3, 16, 13, 20))

    response = create_recurring_sessions(
        CreateRecurringSessionsRequest(
            patient_id=patient.id,
            schedules=[{'day_of_week': 1, 'time': '10:00'}],
            weeks=3,
        ),
        current_user=user,
        db=db,
    )

    assert [session.session_date for session in response.created] == [
        datetime(2026, 3, 9, 13, 0),
        datetime(2026, 3, 23, 13, 0),
    ]
    assert response.skipped[0].session_date == datetime(2026, 3, 16, 13, 0)
    assert response.skipped[0].conflict_session_id == blocking.id


def test_recurring_schedules_never_overlap_each_other(db, user, patient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(session_routes, 'utcnow', lambda: datetime(2026, 3, 4, 12, 0))

    response = create_recurring_sessions(
        CreateRecurringSessionsRequest(
            patient_id=patient.id,
            schedules=[
                {'day_of_week': 2, 'time': '09:00'},
                {'day_of_week': 2, 'time': '09:30'},
            ],
            weeks=2,
        ),
        current_user=user,
        db=db,
    )

    assert len(response.created) == 2
    assert len(response.skipped) == 2
    assert all(session.session_date.hour == 12 and session.session_date.minute == 0 for session in response.created)


def test_recurring_schedule_rejects_bad_time() -> None:
    with pytest.raises(ValidationError):
        CreateRecurringSessionsRequest(patient_id=1, schedules=[{'day_of_week': 1, 'time': '25:00'}])
