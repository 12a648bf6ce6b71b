import ssl
import uuid
from typing import Any, Optional
from urllib.parse import urlparse, parse_qsl, unquote_plus

from tortoise import Tortoise, fields
from tortoise.models import Model

from ..utils.config import Settings
from ..utils.logger import logger


def _new_id() -> str:
    return uuid.uuid4().hex


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


class Product(Model):
    id = fields.CharField(pk=True, max_length=32, default=_new_id)
    product_code = fields.CharField(max_length=64, unique=True)
    name = fields.CharField(max_length=200)
    price = fields.CharField(max_length=32)
    description = fields.TextField(default="")
    images = fields.JSONField(default=list)
    thumbnail_image = fields.CharField(max_length=500, null=True)
    specifications = fields.JSONField(default=list)
    type = fields.CharField(max_length=20, default="available")  # available, preorder
    status = fields.CharField(max_length=20, default="in_stock")  # in_stock, out_of_stock, discontinued
    server = fields.CharField(max_length=10, default="JP")
    game_account = fields.JSONField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)
    created_by = fields.CharField(max_length=64, default="")

    class Meta:
        table = "products"

    def to_record(self) -> dict[str, Any]:
        record = {
            "id": self.id,
            "productCode": self.product_code,
            "name": self.name,
            "price": self.price,
            "description": self.description,
            "images": list(self.images or []),
            "thumbnailImage": self.thumbnail_image,
            "specifications": list(self.specifications or []),
            "type": self.type,
            "status": self.status,
            "server": self.server,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "createdBy": self.created_by,
        }
        if self.game_account:
            record["gameAccount"] = dict(self.game_account)
        return record


class UserProfile(Model):
    """Identity record; ``role`` is written once at creation."""
    uid = fields.CharField(pk=True, max_length=32, default=_new_id)
    email = fields.CharField(max_length=254, unique=True)
    username = fields.CharField(max_length=100, default="")
    role = fields.CharField(max_length=10, default="user")  # user, owner
    email_verified = fields.BooleanField(default=False)
    password_hash = fields.CharField(max_length=128, default="")
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)
    last_login_at = fields.DatetimeField(null=True)

    class Meta:
        table = "user_profiles"

    def to_public(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "email": self.email,
            "username": self.username,
            "role": self.role,
            "emailVerified": self.email_verified,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "lastLoginAt": _iso(self.last_login_at),
        }


class OtpSession(Model):
    email = fields.CharField(pk=True, max_length=254)
    username = fields.CharField(max_length=100, default="")
    code_hash = fields.CharField(max_length=128)
    expires_at = fields.FloatField()
    resend_available_at = fields.FloatField()
    verified = fields.BooleanField(default=False)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "otp_sessions"


class Order(Model):
    order_id = fields.CharField(pk=True, max_length=64)
    product_code = fields.CharField(max_length=64)
    amount = fields.BigIntField()
    email = fields.CharField(max_length=254)
    order_code = fields.CharField(max_length=64, null=True)
    payment_status = fields.CharField(max_length=20, default="pending")  # pending, completed
    delivered = fields.BooleanField(default=False)
    created_at = fields.DatetimeField(auto_now_add=True)
    completed_at = fields.DatetimeField(null=True)

    class Meta:
        table = "orders"


def build_tortoise_config(settings: Settings) -> dict[str, Any]:
    db_url = settings.db_url.strip() or "sqlite://db.sqlite3"

    # Supabase commonly provides postgresql:// URLs; normalize for parsing.
    if db_url.startswith("postgresql://"):
        db_url = "postgres://" + db_url[len("postgresql://") :]

    if not db_url.startswith("postgres://"):
        return {
            "connections": {"default": db_url},
            "apps": {"models": {"models": [__name__], "default_connection": "default"}},
        }

    parsed = urlparse(db_url)
    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    sslmode = str(query.pop("sslmode", "")).strip().lower()
    host = (parsed.hostname or "").lower()

    wants_ssl = (
        sslmode in {"require", "verify-ca", "verify-full"}
        or host.endswith(".pooler.supabase.com")
        or host.endswith(".supabase.co")
    )
    if settings.db_ssl_verify is None:
        verify_ssl = not host.endswith(".pooler.supabase.com")
    else:
        verify_ssl = settings.db_ssl_verify

    logger.info("DB init host=%s ssl=%s ssl_verify=%s", host or "unknown", wants_ssl, verify_ssl)

    credentials: dict[str, Any] = {
        "host": parsed.hostname or None,
        "port": parsed.port or 5432,
        "user": unquote_plus(parsed.username or "") or None,
        "password": unquote_plus(parsed.password or "") if parsed.password is not None else None,
        "database": parsed.path[1:] if parsed.path and parsed.path != "/" else None,
    }
    for key in ("min_size", "max_size"):
        if key in query:
            try:
                credentials[key] = int(query[key])
            except (TypeError, ValueError):
                continue

    if wants_ssl:
        ctx = ssl.create_default_context()
        if not verify_ssl:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        credentials["ssl"] = ctx

    return {
        "connections": {
            "default": {
                "engine": "tortoise.backends.asyncpg",
                "credentials": credentials,
            }
        },
        "apps": {"models": {"models": [__name__], "default_connection": "default"}},
    }


async def init_db(settings: Settings) -> None:
    config = build_tortoise_config(settings)
    try:
        await Tortoise.init(config=config)
    except Exception as exc:
        if "CERTIFICATE_VERIFY_FAILED" not in str(exc):
            raise

        logger.warning("DB certificate verification failed. Retrying with ssl verification disabled.")
        retry_ctx = ssl.create_default_context()
        retry_ctx.check_hostname = False
        retry_ctx.verify_mode = ssl.CERT_NONE
        config["connections"]["default"]["credentials"]["ssl"] = retry_ctx
        await Tortoise.init(config=config)
    await Tortoise.generate_schemas(safe=True)


async def close_db() -> None:
    await Tortoise.close_connections()
