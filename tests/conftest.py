import asyncio
from typing import Any

import pytest
from tortoise import Tortoise

from gameshop.services.catalog import CatalogService, CatalogStore
from gameshop.services.checkout import CheckoutService
from gameshop.services.cipher import CredentialCipher
from gameshop.services.database import UserProfile
from gameshop.services.identity import AccountService, RequestContext, RoleGate
from gameshop.services.image_api import ImageFile
from gameshop.services.otp import OtpService
from gameshop.utils.config import Settings
from gameshop.utils.constants import Role
from gameshop.utils.errors import ExternalServiceError

OWNER_UID = "owner-uid"
OWNER_EMAIL = "owner@example.com"
BACKEND_KEY = "backend-secret"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMailer:
    configured = True

    def __init__(self):
        self.fail = False
        self.codes: dict[str, str] = {}
        self.otp_mails: list[str] = []
        self.credential_mails: list[dict[str, str]] = []
        self.support_mails: list[str] = []

    async def send_otp(self, recipient, username, code, ttl_seconds):
        if self.fail:
            return False
        self.codes[recipient] = code
        self.otp_mails.append(recipient)
        return True

    async def send_credentials(self, recipient, order_id, product_name, username, password):
        self.credential_mails.append(
            {"recipient": recipient, "orderId": order_id, "username": username, "password": password}
        )
        return True

    async def send_support_notice(self, recipient, order_id, message):
        self.support_mails.append(order_id)
        return True


class FakeGateway:
    """Payment backend double; ``statuses`` are returned in order and the last one repeats."""

    def __init__(self, statuses=None, order_code: str = "ORD-XXXX"):
        self.statuses = list(statuses or ["pending"])
        self.order_code = order_code
        self.fail_create = False
        self.created: list[dict[str, Any]] = []
        self.status_calls = 0

    async def create_transaction(self, order_id, amount, product_code, email):
        if self.fail_create:
            raise ExternalServiceError("could not create the payment, please try again", service="payment")
        self.created.append({"orderId": order_id, "amount": amount, "productCode": product_code, "email": email})
        return {"orderCode": self.order_code, "qrCode": "data:image/png;base64,AAAA", "bankInfo": {"bank": "VCB"}}

    async def get_status(self, order_code):
        self.status_calls += 1
        # Yield so overlapping callers would interleave if nothing serialized them.
        await asyncio.sleep(0)
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]


class FakeNotifier:
    def __init__(self):
        self.logs: list[tuple[dict[str, Any], bool]] = []

    async def send_order_log(self, order, delivered):
        self.logs.append((order, delivered))
        return True


class FakeImages:
    def __init__(self):
        self.uploaded: list[ImageFile] = []
        self.deleted: list[str] = []

    async def upload(self, image):
        self.uploaded.append(image)
        return {"filename": image.filename, "url": f"https://img.example.com/{image.filename}"}

    async def upload_multiple(self, images):
        images = list(images)
        self.uploaded.extend(images)
        return [{"filename": image.filename, "url": f"https://img.example.com/{image.filename}"} for image in images]

    async def delete(self, filename):
        self.deleted.append(filename)


def product_payload(code: str = "PJSK-001", **overrides) -> dict[str, Any]:
    payload = {
        "productCode": code,
        "name": "JP starter account",
        "price": "500000",
        "description": "Fresh reroll",
        "images": ["https://img.example.com/a.png"],
        "thumbnailImage": "https://img.example.com/a.png",
        "specifications": [{"label": "Rank", "value": "50"}],
        "type": "available",
        "status": "in_stock",
        "server": "JP",
        "gameAccount": {"username": "player1", "password": "hunter22"},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def settings():
    return Settings(
        encryption_key="test-credential-secret",
        backend_secret_key=BACKEND_KEY,
        owner_email=OWNER_EMAIL,
        bcrypt_rounds=4,
        poll_interval_seconds=0.01,
        poll_ceiling_seconds=5,
        allowed_origins=["http://localhost:3000"],
    )


@pytest.fixture
async def db():
    await Tortoise.init(db_url="sqlite://:memory:", modules={"models": ["gameshop.services.database"]})
    await Tortoise.generate_schemas()
    yield
    await Tortoise.close_connections()


@pytest.fixture
async def owner(db):
    return await UserProfile.create(uid=OWNER_UID, email=OWNER_EMAIL, role=Role.OWNER, email_verified=True)


@pytest.fixture
def owner_ctx(owner):
    return RequestContext(principal_id=OWNER_UID)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def cipher(settings):
    return CredentialCipher(settings.encryption_key)


@pytest.fixture
def gate(settings):
    return RoleGate(settings.owner_email)


@pytest.fixture
def otp(settings, mailer, clock):
    return OtpService(settings, mailer, clock=clock)


@pytest.fixture
def accounts(otp, gate, settings):
    return AccountService(otp, gate, settings.bcrypt_rounds)


@pytest.fixture
def catalog(cipher, gate):
    return CatalogService(CatalogStore(), cipher, gate)


@pytest.fixture
async def checkout(catalog, gateway, mailer, notifier, settings):
    service = CheckoutService(
        catalog,
        gateway,
        mailer,
        notifier,
        poll_interval=settings.poll_interval_seconds,
        poll_ceiling=settings.poll_ceiling_seconds,
    )
    yield service
    await service.shutdown()
