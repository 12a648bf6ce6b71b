from typing import Any

from .http_client import HttpServiceClient
from ..utils.config import Settings
from ..utils.errors import ExternalServiceError
from ..utils.logger import logger


class PaymentGatewayClient(HttpServiceClient):
    """Client for the bank-transfer payment backend (VietQR transactions)."""

    service_name = "Payment API"

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaymentGatewayClient":
        return cls(
            settings.payment_api_base_url,
            api_key=settings.payment_api_key,
            timeout_seconds=settings.payment_api_timeout_seconds,
            max_retries=settings.payment_api_max_retries,
        )

    async def create_transaction(self, order_id: str, amount: int, product_code: str, email: str) -> dict[str, Any]:
        payload = await self._request(
            "POST",
            "api/payment/create",
            {"orderId": order_id, "amount": amount, "productCode": product_code, "email": email},
        )
        if not isinstance(payload, dict) or payload.get("success") is False:
            logger.error(f"Payment transaction for {order_id} was not created: {payload!r:.300}")
            raise ExternalServiceError("could not create the payment, please try again", service="payment")

        data = self._unwrap(payload)
        order_code = str(data.get("orderCode") or data.get("transactionId") or "").strip() if isinstance(data, dict) else ""
        if not order_code:
            logger.error(f"Payment API response for {order_id} has no orderCode: {payload!r:.300}")
            raise ExternalServiceError("could not create the payment, please try again", service="payment")

        bank_info = data.get("bankInfo")
        return {
            "orderCode": order_code,
            "qrCode": str(data.get("qrCode") or data.get("qrImage") or ""),
            "bankInfo": bank_info if isinstance(bank_info, dict) else {},
        }

    async def get_status(self, order_code: str) -> str:
        payload = await self._request("GET", f"api/payment/status/{order_code}")
        if not isinstance(payload, dict) or payload.get("success") is False:
            raise ExternalServiceError("could not read payment status", service="payment")

        data = self._unwrap(payload)
        status = data.get("status") if isinstance(data, dict) else None
        if not status:
            raise ExternalServiceError("could not read payment status", service="payment")
        return str(status).strip().lower()
