from dataclasses import dataclass

from .catalog import CatalogService, CatalogStore
from .checkout import CheckoutService
from .cipher import CredentialCipher
from .identity import AccountService, RoleGate
from .image_api import ImageBackendClient
from .mailer import Mailer
from .notifications import OrderNotifier
from .otp import OtpService
from .payment_api import PaymentGatewayClient
from ..utils.config import Settings


@dataclass
class ShopServices:
    settings: Settings
    cipher: CredentialCipher
    gate: RoleGate
    otp: OtpService
    accounts: AccountService
    catalog: CatalogService
    checkout: CheckoutService
    payments: PaymentGatewayClient
    images: ImageBackendClient
    mailer: Mailer
    notifier: OrderNotifier

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "ShopServices":
        """Wire the default collaborators; ``overrides`` replaces any of them (tests pass fakes)."""
        cipher = overrides.get("cipher") or CredentialCipher(settings.encryption_key)
        gate = overrides.get("gate") or RoleGate(settings.owner_email)
        mailer = overrides.get("mailer") or Mailer.from_settings(settings)
        notifier = overrides.get("notifier") or OrderNotifier(settings.order_webhook_url)
        payments = overrides.get("payments") or PaymentGatewayClient.from_settings(settings)
        images = overrides.get("images") or ImageBackendClient.from_settings(settings)
        otp = overrides.get("otp") or OtpService(settings, mailer)
        accounts = overrides.get("accounts") or AccountService(otp, gate, settings.bcrypt_rounds)
        catalog = overrides.get("catalog") or CatalogService(CatalogStore(), cipher, gate)
        checkout = overrides.get("checkout") or CheckoutService(
            catalog,
            payments,
            mailer,
            notifier,
            poll_interval=settings.poll_interval_seconds,
            poll_ceiling=settings.poll_ceiling_seconds,
        )
        return cls(
            settings=settings,
            cipher=cipher,
            gate=gate,
            otp=otp,
            accounts=accounts,
            catalog=catalog,
            checkout=checkout,
            payments=payments,
            images=images,
            mailer=mailer,
            notifier=notifier,
        )
