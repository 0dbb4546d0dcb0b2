import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite://')

from backend.database import Base  # noqa: E402
from backend.models import document, financial, google_oauth, patient, profile, public_schedule, push, session  # noqa: E402,F401
from backend.models.user import User  # noqa: E402


@pytest.fixture
def db():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def user(db):
    practitioner = User(email='therapist@example.com', hashed_password='not-a-real-hash')
    db.add(practitioner)
    db.commit()
    db.refresh(practitioner)
    return practitioner


@pytest.fixture
def other_user(db):
    practitioner = User(email='other@example.com', hashed_password='not-a-real-hash')
    db.add(practitioner)
    db.commit()
    db.refresh(practitioner)
    return practitioner


@pytest.fixture(autouse=True)
def fixed_timezone(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv('APP_TIMEZONE', '-03:00')
