import logging
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


class Settings(BaseModel):
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "storefront"
    db_max_pool_size: int = Field(10, ge=1)
    session_ttl_days: int = Field(7, ge=1)
    bcrypt_rounds: int = Field(12, ge=4, le=31)

    email_provider: str = "console"  # console | resend | smtp
    resend_api_key: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    email_from: str = "no-reply@storefront.local"
    email_from_name: str = "Storefront"
    support_email: Optional[str] = None
    frontend_url: str = "http://localhost:5173"

    cors_origins: List[str] = ["*"]
    enable_maintenance: bool = True
    log_level: str = "INFO"
    port: int = 8000


def get_settings() -> Settings:
    """Read settings from the environment (and a .env file if present)."""
    load_dotenv()
    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    return Settings(
        database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
        database_name=os.getenv("DATABASE_NAME", "storefront"),
        db_max_pool_size=_env_int("DB_MAX_POOL_SIZE", 10),
        session_ttl_days=_env_int("SESSION_TTL_DAYS", 7),
        bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 12),
        email_provider=os.getenv("EMAIL_PROVIDER", "console").strip().lower(),
        resend_api_key=os.getenv("RESEND_API_KEY") or None,
        smtp_host=os.getenv("SMTP_HOST") or None,
        smtp_port=_env_int("SMTP_PORT", 587),
        smtp_user=os.getenv("SMTP_USER") or None,
        smtp_password=os.getenv("SMTP_PASSWORD") or None,
        smtp_use_tls=_env_bool("SMTP_USE_TLS", True),
        email_from=os.getenv("EMAIL_FROM", "no-reply@storefront.local"),
        email_from_name=os.getenv("EMAIL_FROM_NAME", "Storefront"),
        support_email=os.getenv("SUPPORT_EMAIL") or None,
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/"),
        cors_origins=origins or ["*"],
        enable_maintenance=_env_bool("ENABLE_MAINTENANCE", True),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        port=_env_int("PORT", 8000),
    )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if any(getattr(h, "_storefront", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - [%(levelname)s] - %(message)s"
    ))
    handler._storefront = True
    root.addHandler(handler)
