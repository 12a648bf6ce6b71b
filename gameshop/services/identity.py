import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import bcrypt

from .database import UserProfile
from .otp import OtpService, normalize_email, require_email
from ..utils.constants import Role
from ..utils.errors import AuthError, ConflictError, EmailNotVerified, Forbidden, ValidationError
from ..utils.logger import logger

MIN_PASSWORD_LENGTH = 6


@dataclass
class RequestContext:
    """Per-request caller identity, built once by the server middleware."""
    principal_id: Optional[str] = None
    role: str = Role.USER
    backend: bool = False

    @property
    def authenticated(self) -> bool:
        return bool(self.principal_id)


class RoleGate:
    def __init__(self, owner_email: str = ""):
        self.owner_email = normalize_email(owner_email)

    async def role_of(self, principal_id: Optional[str]) -> str:
        if not principal_id:
            return Role.USER
        try:
            profile = await UserProfile.get_or_none(uid=principal_id)
        except Exception as exc:
            logger.error(f"Role lookup failed for {principal_id}: {exc}")
            return Role.USER
        if profile is None or profile.role not in (Role.USER, Role.OWNER):
            return Role.USER
        return profile.role

    async def authorize_owner(self, ctx: RequestContext) -> None:
        if not ctx.principal_id:
            raise AuthError("owner uid required")
        # Never trust ctx.role as presented; the stored profile decides.
        ctx.role = await self.role_of(ctx.principal_id)
        if ctx.role != Role.OWNER:
            logger.warning(f"Owner access denied for {ctx.principal_id}")
            raise Forbidden("owner access required")

    async def bootstrap_role(self, email: str) -> str:
        if not self.owner_email or normalize_email(email) != self.owner_email:
            return Role.USER
        if await UserProfile.filter(role=Role.OWNER).exists():
            return Role.USER
        logger.info(f"Seeding owner role for {email}")
        return Role.OWNER


class AccountService:
    """Password accounts standing in for the external identity provider."""

    def __init__(self, otp: OtpService, gate: RoleGate, bcrypt_rounds: int = 12):
        self.otp = otp
        self.gate = gate
        self.bcrypt_rounds = bcrypt_rounds

    async def create_account(self, email: str, password: str, username: str = "") -> UserProfile:
        email = require_email(email)
        if len(str(password or "")) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        if len(str(password).encode("utf-8")) > 72:
            raise ValidationError("password is too long")
        if not await self.otp.check_verification(email):
            raise EmailNotVerified()
        if await UserProfile.filter(email=email).exists():
            raise ConflictError("email is already registered")

        username = str(username or "").strip() or await self.otp.pending_username(email)
        password_hash = await asyncio.to_thread(self._hash, str(password))
        profile = await UserProfile.create(
            email=email,
            username=username,
            role=await self.gate.bootstrap_role(email),
            email_verified=True,
            password_hash=password_hash,
        )
        logger.info(f"Account created for {email} ({profile.role})")
        return profile

    async def sign_in(self, email: str, password: str) -> UserProfile:
        email = require_email(email)
        if not await self.otp.check_verification(email):
            logger.info(f"Sign-in blocked for {email}: email not verified")
            raise EmailNotVerified()

        profile = await UserProfile.get_or_none(email=email)
        if profile is None or not await self._password_matches(str(password or ""), profile.password_hash):
            logger.info(f"Failed sign-in attempt for {email}")
            raise AuthError("invalid email or password")

        profile.last_login_at = datetime.now(timezone.utc)
        await profile.save(update_fields=["last_login_at", "updated_at"])
        return profile

    def _hash(self, password: str) -> str:
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=self.bcrypt_rounds)).decode("ascii")

    @staticmethod
    async def _password_matches(password: str, password_hash: str) -> bool:
        if not password or not password_hash:
            return False
        try:
            return await asyncio.to_thread(bcrypt.checkpw, password.encode("utf-8"), password_hash.encode("ascii"))
        except ValueError:
            return False
