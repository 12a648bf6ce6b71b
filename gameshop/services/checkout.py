import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .catalog import CatalogService, amount_of
from .database import Order
from .mailer import Mailer
from .notifications import OrderNotifier
from .otp import require_email
from .payment_api import PaymentGatewayClient
from ..utils.constants import CheckoutState, PaymentStatus, ProductStatus, SUPPORT_MESSAGE
from ..utils.errors import (
    ConflictError,
    DecryptionError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from ..utils.logger import logger


def new_order_id() -> str:
    return f"ORD-{uuid.uuid4().hex.upper()}"


class PollHandle:
    """Cancellable handle for one checkout's payment polling task."""

    def __init__(self, task: asyncio.Task):
        self.task = task
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled and not self.task.done()

    def cancel(self) -> None:
        self._cancelled = True
        if not self.task.done():
            self.task.cancel()

    async def wait(self) -> None:
        try:
            await self.task
        except asyncio.CancelledError:
            pass


@dataclass
class CheckoutSession:
    order_id: str
    product_code: str
    product_name: str
    amount: int
    email: str
    state: str = CheckoutState.FORM
    order_code: str = ""
    qr_image: str = ""
    bank_info: dict[str, Any] = field(default_factory=dict)
    payment_status: str = PaymentStatus.PENDING
    polling_expired: bool = False
    created_at: float = field(default_factory=time.monotonic)
    completed_at: Optional[str] = None
    poll: Optional[PollHandle] = field(default=None, repr=False)
    poll_generation: int = field(default=0, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "productCode": self.product_code,
            "productName": self.product_name,
            "amount": self.amount,
            "email": self.email,
            "state": self.state,
            "orderCode": self.order_code,
            "qrCode": self.qr_image,
            "bankInfo": self.bank_info,
            "paymentStatus": self.payment_status,
            "polling": bool(self.poll and self.poll.active),
            "pollingExpired": self.polling_expired,
            "completedAt": self.completed_at,
        }


class CheckoutService:
    """
    Drives a purchase ``form -> payment -> success``.

    Each session owns at most one polling task. Ticks inside a session are
    serialized by the session lock, so the loop and a manual refresh can
    never complete the same order twice. When the ceiling elapses the
    session stays in ``payment`` with ``polling_expired`` set.
    """

    def __init__(
        self,
        catalog: CatalogService,
        gateway: PaymentGatewayClient,
        mailer: Mailer,
        notifier: OrderNotifier,
        poll_interval: float = 15.0,
        poll_ceiling: float = 30 * 60,
    ):
        self.catalog = catalog
        self.gateway = gateway
        self.mailer = mailer
        self.notifier = notifier
        self.poll_interval = poll_interval
        self.poll_ceiling = poll_ceiling
        self.sessions: dict[str, CheckoutSession] = {}
        self._background: set[asyncio.Task] = set()

    @property
    def active_poll_count(self) -> int:
        return sum(1 for session in self.sessions.values() if session.poll and session.poll.active)

    def get(self, order_id: str) -> CheckoutSession:
        session = self.sessions.get(str(order_id or "").strip())
        if session is None:
            raise NotFoundError("checkout session not found")
        return session

    async def open_session(self, product_code: str, email: str) -> CheckoutSession:
        email = require_email(email)
        product = await self.catalog.get_public(product_code)
        if product.get("status") != ProductStatus.IN_STOCK:
            raise ValidationError("product is not available for purchase")

        self._prune()
        session = CheckoutSession(
            order_id=new_order_id(),
            product_code=product["productCode"],
            product_name=product.get("name", ""),
            amount=amount_of(product.get("price")),
            email=email,
        )
        self.sessions[session.order_id] = session
        return session

    async def confirm_order(self, session: CheckoutSession) -> CheckoutSession:
        if session.state != CheckoutState.FORM:
            raise ConflictError("order is already confirmed")

        try:
            transaction = await self.gateway.create_transaction(
                session.order_id, session.amount, session.product_code, session.email
            )
        except ExternalServiceError:
            logger.error(f"Checkout {session.order_id} stays in form: payment backend refused the transaction")
            raise

        await Order.create(
            order_id=session.order_id,
            product_code=session.product_code,
            amount=session.amount,
            email=session.email,
            order_code=transaction["orderCode"],
        )
        session.order_code = transaction["orderCode"]
        session.qr_image = transaction["qrCode"]
        session.bank_info = transaction["bankInfo"]
        session.state = CheckoutState.PAYMENT
        logger.info(f"Checkout {session.order_id} awaiting payment {session.order_code}")

        self.start_polling(session)
        return session

    def start_polling(self, session: CheckoutSession) -> PollHandle:
        if session.state != CheckoutState.PAYMENT:
            raise ValidationError("checkout is not awaiting payment")

        if session.poll is not None:
            session.poll.cancel()

        session.poll_generation += 1
        task = asyncio.create_task(
            self._poll_payment(session, session.poll_generation),
            name=f"checkout-poll-{session.order_id}",
        )
        handle = PollHandle(task)
        session.poll = handle
        session.polling_expired = False
        return handle

    async def refresh(self, session: CheckoutSession, *, from_poll: bool = False) -> str:
        """One stateless status read; safe to call any number of times."""
        if session.state != CheckoutState.PAYMENT:
            return session.state

        async with session.lock:
            if session.state != CheckoutState.PAYMENT:
                return session.state
            try:
                status = await self.gateway.get_status(session.order_code)
            except ExternalServiceError:
                logger.warning(f"Payment status check for {session.order_code} failed; will retry on next tick")
                return session.state

            if status == PaymentStatus.COMPLETED:
                await self._mark_completed(session, from_poll=from_poll)
            else:
                session.payment_status = status
        return session.state

    def teardown(self, order_id: str) -> bool:
        session = self.sessions.pop(str(order_id or "").strip(), None)
        if session is None:
            return False
        if session.poll is not None:
            session.poll.cancel()
            session.poll = None
        logger.info(f"Checkout {order_id} torn down in state {session.state}")
        return True

    async def shutdown(self) -> None:
        tasks = []
        for session in self.sessions.values():
            if session.poll is not None:
                session.poll.cancel()
                tasks.append(session.poll.task)
                session.poll = None
        tasks.extend(self._background)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _poll_payment(self, session: CheckoutSession, generation: int) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_ceiling
        try:
            while session.state == CheckoutState.PAYMENT:
                remaining = deadline - loop.time()
                if remaining > 0:
                    await asyncio.sleep(min(self.poll_interval, remaining))
                if loop.time() >= deadline:
                    session.polling_expired = True
                    logger.warning(
                        f"Payment polling for {session.order_id} stopped after {self.poll_ceiling:.0f}s without completion"
                    )
                    break
                await self.refresh(session, from_poll=True)
        finally:
            if session.poll is not None and session.poll_generation == generation:
                session.poll = None

    async def _mark_completed(self, session: CheckoutSession, *, from_poll: bool = False) -> None:
        session.state = CheckoutState.SUCCESS
        session.payment_status = PaymentStatus.COMPLETED
        session.completed_at = datetime.now(timezone.utc).isoformat()
        logger.info(f"Payment {session.order_code} for {session.order_id} completed")

        # A completing poll tick ends its own loop; a manual refresh stops the poll.
        if not from_poll and session.poll is not None:
            session.poll.cancel()
            session.poll = None

        # Delivery must finish even if polling is cancelled or times out meanwhile.
        task = asyncio.create_task(self._fulfill(session))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        await asyncio.shield(task)

    async def _fulfill(self, session: CheckoutSession) -> None:
        delivered = False
        try:
            await Order.filter(order_id=session.order_id).update(
                payment_status=PaymentStatus.COMPLETED,
                completed_at=datetime.now(timezone.utc),
            )
            try:
                product, credentials = await self.catalog.credentials_for_delivery(session.product_code)
            except (ConflictError, DecryptionError, NotFoundError) as exc:
                logger.error(
                    f"Credentials for {session.product_code} are unavailable ({exc}); "
                    f"order {session.order_id} needs manual delivery"
                )
                await self.mailer.send_support_notice(session.email, session.order_id, SUPPORT_MESSAGE)
            else:
                delivered = await self.mailer.send_credentials(
                    session.email,
                    session.order_id,
                    product.get("name", session.product_name),
                    credentials["username"],
                    credentials["password"],
                )
            if delivered:
                await Order.filter(order_id=session.order_id).update(delivered=True)
        except Exception as exc:
            logger.exception(f"Fulfillment for {session.order_id} failed: {exc}")

        try:
            await self.notifier.send_order_log(
                {
                    "orderId": session.order_id,
                    "productCode": session.product_code,
                    "amount": session.amount,
                    "email": session.email,
                },
                delivered,
            )
        except Exception as exc:
            logger.error(f"Order log for {session.order_id} failed: {exc}")

    def _prune(self) -> None:
        horizon = time.monotonic() - 2 * self.poll_ceiling
        stale = [
            order_id
            for order_id, session in self.sessions.items()
            if session.created_at < horizon and not (session.poll and session.poll.active)
        ]
        for order_id in stale:
            self.sessions.pop(order_id, None)
