import asyncio
import math
import re
import secrets
import time
from typing import Callable, NamedTuple

import bcrypt

from .database import OtpSession, UserProfile
from .mailer import Mailer
from ..utils.config import Settings
from ..utils.constants import OTP_CODE_LENGTH
from ..utils.errors import (
    ConflictError,
    CooldownActive,
    EmailNotVerified,
    ExternalServiceError,
    InvalidOTP,
    NotFoundError,
    OTPExpired,
    ValidationError,
)
from ..utils.logger import logger

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(value: object) -> str:
    return str(value or "").strip().lower()


def require_email(value: object) -> str:
    email = normalize_email(value)
    if not email:
        raise ValidationError("email is required")
    if not EMAIL_RE.match(email):
        raise ValidationError("email is not valid")
    return email


def generate_otp_code(length: int = OTP_CODE_LENGTH) -> str:
    return f"{secrets.randbelow(10 ** length):0{length}d}"


class OtpIssue(NamedTuple):
    email: str
    is_resend: bool
    expires_at: float
    countdown: int


class OtpVerification(NamedTuple):
    email: str
    username: str
    newly_verified: bool


class OtpService:
    """
    Email verification for sign-up.

    A session moves ``otp_pending -> otp_verified`` and is deleted by
    ``complete_registration`` once the account exists. Requesting a code for
    an email that already has a session is a resend and obeys the cooldown.
    """

    def __init__(self, settings: Settings, mailer: Mailer, clock: Callable[[], float] = time.time):
        self.mailer = mailer
        self.ttl_seconds = settings.otp_ttl_seconds
        self.cooldown_seconds = settings.otp_resend_cooldown_seconds
        self.bcrypt_rounds = settings.bcrypt_rounds
        self.clock = clock

    async def request_otp(self, email: str, username: str) -> OtpIssue:
        email = require_email(email)
        username = str(username or "").strip()
        if not username:
            raise ValidationError("username is required")

        if await UserProfile.filter(email=email).exists():
            raise ConflictError("email is already registered")

        session = await OtpSession.get_or_none(email=email)
        return await self._issue(email, username, session)

    async def resend_otp(self, email: str) -> OtpIssue:
        email = require_email(email)
        session = await OtpSession.get_or_none(email=email)
        if session is None:
            raise NotFoundError("no pending registration for this email")
        return await self._issue(email, session.username, session)

    async def verify_otp(self, email: str, code: str) -> OtpVerification:
        email = require_email(email)
        clean_code = re.sub(r"\s", "", str(code or ""))
        if len(clean_code) != OTP_CODE_LENGTH or not clean_code.isdigit():
            raise ValidationError(f"OTP must be {OTP_CODE_LENGTH} digits")

        session = await OtpSession.get_or_none(email=email)
        if session is None:
            logger.info(f"OTP verification for {email} failed: no pending session")
            raise InvalidOTP()

        if not session.verified and self.clock() > session.expires_at:
            logger.info(f"OTP verification for {email} failed: code expired")
            raise OTPExpired()

        if not await self._matches(clean_code, session.code_hash):
            logger.info(f"OTP verification for {email} failed: wrong code")
            raise InvalidOTP()

        if session.verified:
            return OtpVerification(email, session.username, newly_verified=False)

        session.verified = True
        await session.save(update_fields=["verified"])
        logger.info(f"OTP verified for {email}")
        return OtpVerification(email, session.username, newly_verified=True)

    async def complete_registration(self, email: str) -> bool:
        email = require_email(email)
        session = await OtpSession.get_or_none(email=email)
        if session is None:
            return False
        if not session.verified:
            raise EmailNotVerified()

        await UserProfile.filter(email=email).update(email_verified=True)
        await session.delete()
        logger.info(f"Registration completed for {email}")
        return True

    async def check_verification(self, email: str) -> bool:
        email = normalize_email(email)
        if not email:
            return False
        if await OtpSession.filter(email=email, verified=True).exists():
            return True
        return await UserProfile.filter(email=email, email_verified=True).exists()

    async def pending_username(self, email: str) -> str:
        session = await OtpSession.get_or_none(email=normalize_email(email))
        return session.username if session else ""

    async def resend_countdown(self, email: str) -> int:
        session = await OtpSession.get_or_none(email=require_email(email))
        if session is None:
            return 0
        return max(0, math.ceil(session.resend_available_at - self.clock()))

    async def _issue(self, email: str, username: str, session: OtpSession | None) -> OtpIssue:
        now = self.clock()
        is_resend = session is not None
        if session is not None and now < session.resend_available_at:
            raise CooldownActive(math.ceil(session.resend_available_at - now))

        code = generate_otp_code()
        code_hash = await asyncio.to_thread(self._hash, code)
        if session is None:
            session = OtpSession(email=email)
        session.username = username
        session.code_hash = code_hash
        session.expires_at = now + self.ttl_seconds
        session.resend_available_at = now + self.cooldown_seconds
        session.verified = False
        await session.save()

        if not self.mailer.configured:
            logger.debug(f"Mail delivery disabled; development OTP for {email}: {code}")
        elif not await self.mailer.send_otp(email, username, code, self.ttl_seconds):
            # The mail never left; release the cooldown.
            session.resend_available_at = now
            await session.save(update_fields=["resend_available_at"])
            raise ExternalServiceError("could not send the verification email, please try again", service="mail")

        logger.info(f"OTP {'re-issued' if is_resend else 'issued'} for {email}")
        return OtpIssue(email, is_resend, session.expires_at, self.cooldown_seconds)

    def _hash(self, code: str) -> str:
        return bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(rounds=self.bcrypt_rounds)).decode("ascii")

    @staticmethod
    async def _matches(code: str, code_hash: str) -> bool:
        try:
            return await asyncio.to_thread(bcrypt.checkpw, code.encode("utf-8"), code_hash.encode("ascii"))
        except ValueError:
            return False
