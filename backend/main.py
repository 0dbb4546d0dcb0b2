import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from backend.core import config
from backend.database import Base, engine, ensure_patient_schema, ensure_push_subscription_schema
from backend.models import document, financial, google_oauth, patient, profile, public_schedule, push, session, user  # noqa: F401
from backend.routes import (
    auth_routes,
    document_routes,
    financial_routes,
    google_routes,
    patient_routes,
    profile_routes,
    public_schedule_routes,
    push_routes,
    session_routes,
)

logging.basicConfig(level=config.LOG_LEVEL)

config.validate_runtime_config()

app = FastAPI(title='MyPsi API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_patient_schema()
        ensure_push_subscription_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.get('/')
def root():
    return {'status': 'MyPsi API Running'}


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(profile_routes.router, prefix='/profile')
app.include_router(patient_routes.router, prefix='/patients')
app.include_router(session_routes.router, prefix='/sessions')
app.include_router(financial_routes.router, prefix='/financial')
app.include_router(document_routes.router, prefix='/documents')
app.include_router(google_routes.router, prefix='/google')
app.include_router(push_routes.router, prefix='/push')
app.include_router(public_schedule_routes.router, prefix='/public-schedule')
