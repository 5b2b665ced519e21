import logging
import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_busy_timeout_ms: int = int(os.getenv("DATABASE_BUSY_TIMEOUT_MS", "5000"))

    # Session settings
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    session_cookie: str = os.getenv("SESSION_COOKIE", "library_session")
    session_max_age: int = int(os.getenv("SESSION_MAX_AGE", str(14 * 24 * 60 * 60)))
    allow_admin_registration: bool = _env_bool("ALLOW_ADMIN_REGISTRATION", "True")
    # browser origins allowed to send the session cookie cross-site
    cors_origins: List[str] = field(
        default_factory=lambda: _env_list("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
    )

    # Circulation rules
    borrow_limit: int = int(os.getenv("BORROW_LIMIT", "5"))
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    almost_overdue_days: int = int(os.getenv("ALMOST_OVERDUE_DAYS", "2"))
    default_client_password: str = os.getenv("DEFAULT_CLIENT_PASSWORD", "0000")
    label_max_part: int = 20

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "15"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    """Set up root logging once for the API server and the CLI."""
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
