import os
import sys
import logging
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    environment: str = "development"
    log_level: Optional[str] = None

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "helmet_store"
    database_transactions: bool = True

    jwt_secret: str = "dev-secret-change-me"
    jwt_expires_min: int = 60

    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: Optional[str] = None
    razorpay_base_url: Optional[str] = None
    payment_timeout_seconds: float = 10.0

    resend_api_key: Optional[str] = None
    email_from: str = "Helmet Store <noreply@helmetstore.com>"
    frontend_url: str = "http://localhost:3000"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("LOG_LEVEL") or None,
            database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "helmet_store"),
            database_transactions=_env_bool("DATABASE_TRANSACTIONS", True),
            jwt_secret=os.getenv("JWT_SECRET", "dev-secret-change-me"),
            jwt_expires_min=int(os.getenv("JWT_EXPIRES_MIN", "60")),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID") or None,
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET") or None,
            razorpay_base_url=os.getenv("RAZORPAY_BASE_URL") or None,
            payment_timeout_seconds=float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "10")),
            resend_api_key=os.getenv("RESEND_API_KEY") or None,
            email_from=os.getenv("EMAIL_FROM", "Helmet Store <noreply@helmetstore.com>"),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
        )

    def warn_missing(self) -> None:
        """Log which optional integrations are switched off."""
        if not self.razorpay_key_id or not self.razorpay_key_secret:
            log.warning("Razorpay not configured - online payments will not work")
        if not self.resend_api_key:
            log.warning("Email not configured - emails will not be sent")
        if self.jwt_secret == "dev-secret-change-me" and self.is_production:
            log.warning("JWT_SECRET is the development default")


def setup_logging(settings: Settings) -> None:
    """Configures the root logger once per process."""
    level_name = settings.log_level or ("INFO" if settings.is_production else "DEBUG")
    root = logging.getLogger()
    root.setLevel(level_name.upper())
    if not any(getattr(h, "_helmet_store", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._helmet_store = True
        root.addHandler(handler)
    # pymongo is chatty at DEBUG
    logging.getLogger("pymongo").setLevel(logging.WARNING)
