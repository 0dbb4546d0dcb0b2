import os
from dotenv import load_dotenv
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker


load_dotenv()
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./mypsi.db")

engine = create_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_patient_schema_checked = False
_push_subscription_schema_checked = False


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _apply_column_migrations(table_name: str, migration_steps: list[tuple[str, str]], index_statements: list[str]) -> None:
    inspector = inspect(engine)

    if table_name not in inspector.get_table_names():
        return

    existing_columns = {column['name'] for column in inspector.get_columns(table_name)}

    with engine.begin() as connection:
        for column_name, statement in migration_steps:
            if column_name not in existing_columns:
                connection.execute(text(statement))
        for statement in index_statements:
            connection.execute(text(statement))


def ensure_patient_schema() -> None:
    global _patient_schema_checked

    if _patient_schema_checked:
        return

    with _schema_lock:
        if _patient_schema_checked:
            return

        _apply_column_migrations(
            'patients',
            [
                ('auto_renew_sessions', 'ALTER TABLE patients ADD COLUMN auto_renew_sessions BOOLEAN DEFAULT FALSE'),
                ('session_link', 'ALTER TABLE patients ADD COLUMN session_link VARCHAR'),
                ('meet_event_id', 'ALTER TABLE patients ADD COLUMN meet_event_id VARCHAR'),
                ('meet_calendar_id', 'ALTER TABLE patients ADD COLUMN meet_calendar_id VARCHAR'),
                ('calendar_color', 'ALTER TABLE patients ADD COLUMN calendar_color VARCHAR'),
                ('is_temp', 'ALTER TABLE patients ADD COLUMN is_temp BOOLEAN DEFAULT FALSE'),
            ],
            [
                'CREATE INDEX IF NOT EXISTS idx_patients_user_name ON patients(user_id, full_name)',
            ],
        )
        _apply_column_migrations(
            'sessions',
            [],
            [
                'CREATE INDEX IF NOT EXISTS idx_sessions_user_date ON sessions(user_id, session_date)',
                'CREATE INDEX IF NOT EXISTS idx_sessions_patient_date ON sessions(patient_id, session_date)',
            ],
        )

        _patient_schema_checked = True


def ensure_push_subscription_schema() -> None:
    global _push_subscription_schema_checked

    if _push_subscription_schema_checked:
        return

    with _schema_lock:
        if _push_subscription_schema_checked:
            return

        _apply_column_migrations(
            'push_subscriptions',
            [
                ('last_seen_at', 'ALTER TABLE push_subscriptions ADD COLUMN last_seen_at TIMESTAMP'),
                ('meta', 'ALTER TABLE push_subscriptions ADD COLUMN meta JSON'),
            ],
            [
                'CREATE INDEX IF NOT EXISTS idx_push_subscriptions_patient_id ON push_subscriptions(patient_id)',
                'CREATE INDEX IF NOT EXISTS idx_push_subscriptions_enabled ON push_subscriptions(is_enabled)',
            ],
        )

        _push_subscription_schema_checked = True
