"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Load environment variables once, prioritizing runtime env over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _str_to_tuple(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if not value:
        return default
    items = tuple(item.strip().lower() for item in value.split(",") if item.strip())
    return items or default


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    fallback_path = BASE_DIR / "db" / "warranty.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


_MB = 1024 * 1024

_DEFAULT_MIME_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "video/mp4",
    "video/quicktime",
    "video/webm",
)


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "SmartSeller Warranty")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    # Flask run configuration (used by run.py)
    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))
    DB_STATEMENT_TIMEOUT_MS: Final[int] = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "0"))

    # Barcode issuance
    BARCODE_DEFAULT_PREFIX: Final[str] = os.getenv("BARCODE_DEFAULT_PREFIX", "WB")
    PUBLIC_CLAIM_URL_BASE: Final[str] = os.getenv(
        "PUBLIC_CLAIM_URL_BASE", "https://warranty.smartseller.com/claim"
    )
    BATCH_MAX_QUANTITY: Final[int] = int(os.getenv("BATCH_MAX_QUANTITY", "100000"))
    BATCH_CHUNK_SIZE: Final[int] = int(os.getenv("BATCH_CHUNK_SIZE", "250"))
    BATCH_WORKERS: Final[int] = int(os.getenv("BATCH_WORKERS", "4"))
    BATCH_MAX_RETRIES: Final[int] = int(os.getenv("BATCH_MAX_RETRIES", "3"))
    BATCH_FAILURE_THRESHOLD: Final[float] = float(os.getenv("BATCH_FAILURE_THRESHOLD", "0.05"))
    BATCH_COMMIT_BACKOFF_SECONDS: Final[float] = float(os.getenv("BATCH_COMMIT_BACKOFF_SECONDS", "0.1"))
    BATCH_EXECUTION_MODE: Final[str] = os.getenv("BATCH_EXECUTION_MODE", "thread").strip().lower()
    BATCH_RATE_WINDOW: Final[int] = int(os.getenv("BATCH_RATE_WINDOW", "5"))

    # Claims & repair tickets
    CLAIM_BULK_MAX_ITEMS: Final[int] = int(os.getenv("CLAIM_BULK_MAX_ITEMS", "100"))
    CLAIM_PROCESSING_SLA_HOURS: Final[int] = int(os.getenv("CLAIM_PROCESSING_SLA_HOURS", "72"))
    CLAIM_LIST_MAX_PAGE_SIZE: Final[int] = int(os.getenv("CLAIM_LIST_MAX_PAGE_SIZE", "100"))
    CUSTOMER_APPROVAL_COST_THRESHOLD: Final[float] = float(
        os.getenv("CUSTOMER_APPROVAL_COST_THRESHOLD", "500.00")
    )

    # Attachments
    ATTACHMENT_MAX_IMAGE_BYTES: Final[int] = int(os.getenv("ATTACHMENT_MAX_IMAGE_BYTES", str(5 * _MB)))
    ATTACHMENT_MAX_DOCUMENT_BYTES: Final[int] = int(os.getenv("ATTACHMENT_MAX_DOCUMENT_BYTES", str(10 * _MB)))
    ATTACHMENT_MAX_VIDEO_BYTES: Final[int] = int(os.getenv("ATTACHMENT_MAX_VIDEO_BYTES", str(50 * _MB)))
    ATTACHMENT_ALLOWED_MIME_TYPES: Final[tuple[str, ...]] = _str_to_tuple(
        os.getenv("ATTACHMENT_ALLOWED_MIME_TYPES"), _DEFAULT_MIME_TYPES
    )
    ATTACHMENT_SCANNER_URL: Final[str] = os.getenv("ATTACHMENT_SCANNER_URL", "")

    # External collaborators
    NOTIFICATION_WEBHOOK_URL: Final[str] = os.getenv("NOTIFICATION_WEBHOOK_URL", "")
    COLLABORATOR_TIMEOUT_SECONDS: Final[float] = float(os.getenv("COLLABORATOR_TIMEOUT_SECONDS", "5"))

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")
    OBSERVABILITY_ENABLED: Final[bool] = _str_to_bool(os.getenv("OBSERVABILITY_ENABLED"), default=True)

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["BATCH_EXECUTION_MODE"] = cls.BATCH_EXECUTION_MODE
        app.config["MAX_CONTENT_LENGTH"] = cls.ATTACHMENT_MAX_VIDEO_BYTES
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        app.config["OBSERVABILITY_ENABLED"] = cls.OBSERVABILITY_ENABLED
