from aiohttp import web

from .base import BaseRoutes
from ..services.otp import OtpIssue
from ..utils.responses import ok


class AuthRoutes(BaseRoutes):
    def register(self, router: web.UrlDispatcher) -> None:
        router.add_post("/api/auth/register", self.register_email)
        router.add_post("/api/auth/verify-otp", self.verify_otp)
        router.add_post("/api/auth/resend-otp", self.resend_otp)
        router.add_get("/api/auth/check-verification", self.check_verification)
        router.add_post("/api/auth/complete-registration", self.complete_registration)
        router.add_get("/api/auth/resend-countdown", self.resend_countdown)
        router.add_post("/api/auth/signup", self.signup)
        router.add_post("/api/auth/login", self.login)

    async def register_email(self, request: web.Request):
        payload = await self._json_body(request)
        issue = await self.services.otp.request_otp(payload.get("email"), payload.get("username"))
        message = "verification code re-sent" if issue.is_resend else "verification code sent"
        return ok(self._issue_payload(issue), message=message)

    async def verify_otp(self, request: web.Request):
        payload = await self._json_body(request)
        result = await self.services.otp.verify_otp(payload.get("email"), payload.get("otp") or payload.get("code"))
        return ok(
            {"email": result.email, "username": result.username, "verified": True},
            message="email verified" if result.newly_verified else "email already verified",
        )

    async def resend_otp(self, request: web.Request):
        payload = await self._json_body(request)
        issue = await self.services.otp.resend_otp(payload.get("email"))
        return ok(self._issue_payload(issue), message="verification code re-sent")

    async def check_verification(self, request: web.Request):
        email = request.query.get("email", "")
        return ok({"email": email.strip().lower(), "verified": await self.services.otp.check_verification(email)})

    async def complete_registration(self, request: web.Request):
        payload = await self._json_body(request)
        completed = await self.services.otp.complete_registration(payload.get("email"))
        return ok({"completed": completed})

    async def resend_countdown(self, request: web.Request):
        countdown = await self.services.otp.resend_countdown(request.query.get("email", ""))
        return ok({"countdown": countdown})

    async def signup(self, request: web.Request):
        payload = await self._json_body(request)
        profile = await self.services.accounts.create_account(
            payload.get("email"), payload.get("password"), payload.get("username") or ""
        )
        await self.services.otp.complete_registration(profile.email)
        return ok(profile.to_public(), message="account created", status=201)

    async def login(self, request: web.Request):
        payload = await self._json_body(request)
        profile = await self.services.accounts.sign_in(payload.get("email"), payload.get("password"))
        return ok(profile.to_public(), message="signed in")

    @staticmethod
    def _issue_payload(issue: OtpIssue) -> dict:
        return {
            "email": issue.email,
            "isResend": issue.is_resend,
            "countdown": issue.countdown,
            "expiresAt": issue.expires_at,
        }


def setup(server):
    AuthRoutes(server).register(server.app.router)
