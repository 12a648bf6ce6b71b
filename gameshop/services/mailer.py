from html import escape

from .http_client import HttpServiceClient
from ..utils.config import Settings
from ..utils.logger import logger


class Mailer(HttpServiceClient):
    """Transactional mail through a Resend-compatible HTTP API."""

    service_name = "Mail API"

    def __init__(self, api_url: str, api_key: str, sender: str, **kwargs):
        super().__init__(api_url, api_key=api_key, **kwargs)
        self.sender = sender

    @classmethod
    def from_settings(cls, settings: Settings) -> "Mailer":
        return cls(settings.mail_api_url, settings.mail_api_key, settings.mail_sender)

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def send(self, recipient: str, subject: str, html: str) -> bool:
        if not self.configured:
            logger.warning("Mail API is not configured. Set MAIL_API_KEY to deliver email to %s.", recipient)
            return False

        payload = {"from": self.sender, "to": [recipient], "subject": subject, "html": html}
        response = await self._request("POST", self.base_url, payload)
        if response is None:
            return False
        logger.info(f"Mail '{subject}' sent to {recipient}")
        return True

    async def send_otp(self, recipient: str, username: str, code: str, ttl_seconds: int) -> bool:
        minutes = max(1, ttl_seconds // 60)
        html = (
            f"<p>Hi {escape(username or recipient)},</p>"
            f"<p>Your verification code is <strong>{code}</strong>.</p>"
            f"<p>It expires in {minutes} minutes. Ignore this email if you did not sign up.</p>"
        )
        return await self.send(recipient, "Verify your email", html)

    async def send_credentials(
        self,
        recipient: str,
        order_id: str,
        product_name: str,
        username: str,
        password: str,
    ) -> bool:
        html = (
            f"<p>Thanks for your purchase! Order <strong>{escape(order_id)}</strong> is paid.</p>"
            f"<p>Account: {escape(product_name)}</p>"
            f"<p>Username: <code>{escape(username)}</code><br>"
            f"Password: <code>{escape(password)}</code></p>"
            "<p>Change the password after your first sign-in.</p>"
        )
        return await self.send(recipient, f"Your game account for order {order_id}", html)

    async def send_support_notice(self, recipient: str, order_id: str, message: str) -> bool:
        html = f"<p>Order <strong>{escape(order_id)}</strong> is paid.</p><p>{escape(message)}</p>"
        return await self.send(recipient, f"Order {order_id} received", html)
