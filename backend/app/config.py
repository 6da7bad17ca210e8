"""
Process-wide configuration.

Settings are read once at startup from the environment (and a .env file, if
present) and handed to the request handlers as an immutable object via the
``get_settings`` dependency. Nothing reads ``os.environ`` per request.

Environment variables
---------------------
SMTP_HOST       SMTP server hostname (required to send).
SMTP_PORT       SMTP port (default: 587).
SMTP_SECURE     "true" for implicit TLS, e.g. port 465 (default: false).
SMTP_USER       SMTP username (required to send).
SMTP_PASS       SMTP password (required to send).
MAIL_FROM       Sender address (default: SMTP_USER).
MAIL_TO         Recipient address (default: SMTP_USER).
PORT            HTTP listen port (default: 4040).
CORS_ORIGINS    Comma-separated allowed origins (default: "*").
TRUST_PROXY     "true" to take the client IP from X-Forwarded-For.
MAX_FILE_SIZE   Per-file upload limit in bytes (default: 10 MiB).
"""

import logging
import os
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Request
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

DEFAULT_SMTP_PORT = 587
DEFAULT_HTTP_PORT = 4040
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MiB


class SmtpConfig(BaseModel):
    """SMTP connection settings. Validation happens in build_transport()."""

    model_config = ConfigDict(frozen=True)

    host: Optional[str] = None
    port: int = DEFAULT_SMTP_PORT
    secure: bool = False
    username: Optional[str] = None
    password: Optional[str] = None


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    smtp: SmtpConfig = SmtpConfig()
    mail_from: Optional[str] = None
    mail_to: Optional[str] = None
    port: int = DEFAULT_HTTP_PORT
    cors_origins: List[str] = ["*"]
    trust_proxy: bool = False
    max_file_size: int = DEFAULT_MAX_FILE_SIZE

    @property
    def sender(self) -> Optional[str]:
        """MAIL_FROM, falling back to the SMTP username."""
        return self.mail_from or self.smtp.username

    @property
    def recipient(self) -> Optional[str]:
        """MAIL_TO, falling back to the SMTP username."""
        return self.mail_to or self.smtp.username


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() == "true"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}; using {default}")
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_settings() -> Settings:
    """
    Build Settings from the environment.

    A .env file in the working directory is loaded first without overriding
    variables that are already set.
    """
    load_dotenv()

    smtp = SmtpConfig(
        host=_env_str("SMTP_HOST"),
        port=_env_int("SMTP_PORT", DEFAULT_SMTP_PORT),
        secure=_env_bool("SMTP_SECURE"),
        username=_env_str("SMTP_USER"),
        password=_env_str("SMTP_PASS"),
    )
    return Settings(
        smtp=smtp,
        mail_from=_env_str("MAIL_FROM"),
        mail_to=_env_str("MAIL_TO"),
        port=_env_int("PORT", DEFAULT_HTTP_PORT),
        cors_origins=_env_list("CORS_ORIGINS", ["*"]),
        trust_proxy=_env_bool("TRUST_PROXY"),
        max_file_size=_env_int("MAX_FILE_SIZE", DEFAULT_MAX_FILE_SIZE),
    )


def get_settings(request: Request) -> Settings:
    """FastAPI dependency returning the settings loaded by create_app()."""
    return request.app.state.settings
