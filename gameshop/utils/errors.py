from typing import Any, Optional


class ShopError(Exception):
    """Base error; the HTTP layer renders it into the response envelope."""

    status = 500
    error = "internal server error"

    def __init__(self, message: Optional[str] = None, *, error: Optional[str] = None):
        self.message = message or self.error
        if error:
            self.error = error
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {"success": False, "error": self.error, "message": self.message}


class ValidationError(ShopError):
    status = 400
    error = "invalid request"


class ConflictError(ValidationError):
    status = 409
    error = "conflict"


class DuplicateProductCode(ConflictError):
    error = "duplicate product code"

    def __init__(self, product_code: str):
        self.product_code = product_code
        super().__init__(f"product code {product_code} already exists")


class AuthError(ShopError):
    status = 401
    error = "unauthenticated"


class Forbidden(AuthError):
    status = 403
    error = "forbidden"


class EmailNotVerified(Forbidden):
    error = "email not verified"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "email has not been verified with an OTP yet")


class NotFoundError(ShopError):
    status = 404
    error = "not found"


class ExternalServiceError(ShopError):
    status = 502
    error = "external service error"

    def __init__(self, message: Optional[str] = None, *, service: str = ""):
        self.service = service
        super().__init__(message or "service temporarily unavailable, please try again")


class DecryptionError(ShopError):
    status = 500
    error = "decryption failed"

    def __init__(self):
        super().__init__("could not decrypt credential")


class OTPError(ValidationError):
    error = "otp verification failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "invalid or expired OTP")


class InvalidOTP(OTPError):
    pass


class OTPExpired(OTPError):
    pass


class CooldownActive(ShopError):
    status = 429
    error = "cooldown active"

    def __init__(self, retry_after: int):
        self.retry_after = max(0, int(retry_after))
        super().__init__(f"please wait {self.retry_after}s before requesting a new OTP")

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["data"] = {"countdown": self.retry_after}
        return payload
