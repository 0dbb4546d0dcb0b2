import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


def _get_env(key: str) -> str:
    return (os.getenv(key) or "").strip()


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

CORS_ALLOWED_ORIGINS = _get_list(os.getenv("CORS_ALLOWED_ORIGINS"), ["http://localhost:5173"])
CORS_ALLOW_CREDENTIALS = _get_bool(os.getenv("CORS_ALLOW_CREDENTIALS"), default=True)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

DEFAULT_TIMEZONE_OFFSET = "-03:00"

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar.events"
GOOGLE_HTTP_TIMEOUT_SECONDS = float(os.getenv("GOOGLE_HTTP_TIMEOUT_SECONDS", "15"))


class ConfigurationError(RuntimeError):
    """A secret required by the current request is not configured."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


@dataclass(frozen=True)
class GoogleOAuthSettings:
    client_id: str
    client_secret: str
    redirect_uri: str
    redirect_uri_local: str


@dataclass(frozen=True)
class FirebaseSettings:
    project_id: str
    client_email: str
    private_key: str


def get_google_oauth_settings(require_secret: bool = True) -> GoogleOAuthSettings:
    # Read on every call so a rotated secret does not need a restart.
    settings = GoogleOAuthSettings(
        client_id=_get_env("GOOGLE_CLIENT_ID"),
        client_secret=_get_env("GOOGLE_CLIENT_SECRET"),
        redirect_uri=_get_env("GOOGLE_REDIRECT_URI"),
        redirect_uri_local=_get_env("GOOGLE_REDIRECT_URI_LOCAL"),
    )
    if not settings.client_id or (require_secret and not settings.client_secret):
        raise ConfigurationError("GOOGLE_OAUTH_NOT_CONFIGURED")
    return settings


def get_firebase_settings() -> FirebaseSettings:
    settings = FirebaseSettings(
        project_id=_get_env("FIREBASE_PROJECT_ID"),
        client_email=_get_env("FIREBASE_CLIENT_EMAIL"),
        private_key=_get_env("FIREBASE_PRIVATE_KEY").replace("\\n", "\n"),
    )
    if not settings.project_id or not settings.client_email or not settings.private_key:
        raise ConfigurationError("FIREBASE_NOT_CONFIGURED")
    return settings


def get_app_timezone() -> str:
    return _get_env("APP_TIMEZONE") or DEFAULT_TIMEZONE_OFFSET


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
