import os
from dataclasses import dataclass, field
from typing import Any, Optional

from dotenv import load_dotenv


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _to_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return default


def _env(key: str, default: str = "") -> str:
    return (os.getenv(key) or default).strip()


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 8080
    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])

    db_url: str = "sqlite://db.sqlite3"
    db_ssl_verify: Optional[bool] = None

    encryption_key: str = ""
    backend_secret_key: str = ""
    owner_email: str = ""
    bcrypt_rounds: int = 12

    otp_ttl_seconds: int = 300
    otp_resend_cooldown_seconds: int = 60

    payment_api_base_url: str = ""
    payment_api_key: str = ""
    payment_api_timeout_seconds: float = 15.0
    payment_api_max_retries: int = 1
    poll_interval_seconds: float = 15.0
    poll_ceiling_seconds: float = 30 * 60

    image_api_base_url: str = ""

    mail_api_url: str = "https://api.resend.com/emails"
    mail_api_key: str = ""
    mail_sender: str = "no-reply@localhost"

    order_webhook_url: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        raw_origins = _env("FRONTEND_ORIGINS") or _env("FRONTEND_ORIGIN") or "http://localhost:3000"
        origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
        verify_raw = _env("DB_SSL_VERIFY")

        return cls(
            host=_env("SHOP_API_HOST", "0.0.0.0"),
            port=_to_int(_env("PORT") or _env("SHOP_API_PORT"), default=8080),
            allowed_origins=origins or ["http://localhost:3000"],
            db_url=_env("SUPABASE_DATABASE_URL") or _env("DATABASE_URL") or "sqlite://db.sqlite3",
            db_ssl_verify=_to_bool(verify_raw) if verify_raw else None,
            encryption_key=_env("CREDENTIAL_ENCRYPTION_KEY"),
            backend_secret_key=_env("BACKEND_SECRET_KEY"),
            owner_email=_env("OWNER_EMAIL").lower(),
            bcrypt_rounds=_to_int(_env("BCRYPT_ROUNDS"), default=12),
            otp_ttl_seconds=_to_int(_env("OTP_TTL_SECONDS"), default=300),
            otp_resend_cooldown_seconds=_to_int(_env("OTP_RESEND_COOLDOWN_SECONDS"), default=60),
            payment_api_base_url=_env("PAYMENT_API_BASE_URL"),
            payment_api_key=_env("PAYMENT_API_KEY"),
            payment_api_timeout_seconds=_to_float(_env("PAYMENT_API_TIMEOUT_SECONDS"), default=15.0),
            payment_api_max_retries=_to_int(_env("PAYMENT_API_MAX_RETRIES"), default=1),
            poll_interval_seconds=_to_float(_env("CHECKOUT_POLL_INTERVAL_SECONDS"), default=15.0),
            poll_ceiling_seconds=_to_float(_env("CHECKOUT_POLL_CEILING_SECONDS"), default=30 * 60),
            image_api_base_url=_env("IMAGE_API_BASE_URL"),
            mail_api_url=_env("MAIL_API_URL", "https://api.resend.com/emails"),
            mail_api_key=_env("MAIL_API_KEY"),
            mail_sender=_env("MAIL_SENDER", "no-reply@localhost"),
            order_webhook_url=_env("ORDER_WEBHOOK_URL"),
        )
