import asyncio

import pytest

from gameshop.services.checkout import CheckoutService, new_order_id
from gameshop.services.database import Order
from gameshop.utils.constants import CheckoutState, PaymentStatus, ProductStatus
from gameshop.utils.errors import ConflictError, ExternalServiceError, NotFoundError, ValidationError

from .conftest import product_payload


@pytest.fixture
async def listed(owner_ctx, catalog):
    return await catalog.create_product(product_payload(), owner_ctx)


async def wait_for_state(session, state, timeout=2.0):
    async def _spin():
        while session.state != state:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_spin(), timeout)


def test_order_ids_are_unique():
    ids = {new_order_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(order_id.startswith("ORD-") for order_id in ids)


async def test_open_session(listed, checkout):
    session = await checkout.open_session("PJSK-001", "Buyer@Example.com")

    assert session.state == CheckoutState.FORM
    assert session.amount == 500000
    assert session.email == "buyer@example.com"
    assert checkout.get(session.order_id) is session
    assert "gameAccount" not in session.to_dict()


async def test_open_session_rejects_unavailable_products(owner_ctx, catalog, checkout):
    await catalog.create_product(product_payload(status=ProductStatus.OUT_OF_STOCK), owner_ctx)

    with pytest.raises(ValidationError):
        await checkout.open_session("PJSK-001", "buyer@example.com")
    with pytest.raises(NotFoundError):
        await checkout.open_session("MISSING", "buyer@example.com")


async def test_pending_three_times_then_completed(listed, checkout, gateway, mailer, notifier):
    gateway.statuses = ["pending", "pending", "pending", "completed"]
    session = await checkout.open_session("PJSK-001", "buyer@example.com")

    await checkout.confirm_order(session)
    assert session.state == CheckoutState.PAYMENT
    assert session.order_code == "ORD-XXXX"
    handle = session.poll
    assert handle is not None and handle.active

    await asyncio.wait_for(handle.wait(), timeout=2)

    assert session.state == CheckoutState.SUCCESS
    assert session.payment_status == PaymentStatus.COMPLETED
    assert gateway.status_calls == 4
    assert session.poll is None
    assert checkout.active_poll_count == 0

    assert len(mailer.credential_mails) == 1
    assert mailer.credential_mails[0]["username"] == "player1"
    assert mailer.credential_mails[0]["password"] == "hunter22"
    assert len(notifier.logs) == 1 and notifier.logs[0][1] is True

    order = await Order.get(order_id=session.order_id)
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.delivered is True
    assert order.amount == 500000
    product = await checkout.catalog.get_public("PJSK-001")
    assert product["status"] == ProductStatus.OUT_OF_STOCK


async def test_success_happens_once_under_concurrent_refresh(listed, checkout, gateway, mailer):
    gateway.statuses = ["completed"]
    session = await checkout.open_session("PJSK-001", "buyer@example.com")
    await checkout.confirm_order(session)

    await asyncio.gather(*(checkout.refresh(session) for _ in range(5)))
    await wait_for_state(session, CheckoutState.SUCCESS)
    await checkout.shutdown()

    assert len(mailer.credential_mails) == 1
    assert await checkout.refresh(session) == CheckoutState.SUCCESS


async def test_confirm_failure_stays_in_form(listed, checkout, gateway):
    gateway.fail_create = True
    session = await checkout.open_session("PJSK-001", "buyer@example.com")

    with pytest.raises(ExternalServiceError):
        await checkout.confirm_order(session)

    assert session.state == CheckoutState.FORM
    assert session.poll is None
    assert await Order.all().count() == 0


async def test_confirm_twice(listed, checkout):
    session = await checkout.open_session("PJSK-001", "buyer@example.com")
    await checkout.confirm_order(session)

    with pytest.raises(ConflictError):
        await checkout.confirm_order(session)
    assert checkout.active_poll_count == 1


async def test_restarting_poll_keeps_a_single_timer(listed, checkout):
    session = await checkout.open_session("PJSK-001", "buyer@example.com")
    await checkout.confirm_order(session)
    first = session.poll

    second = checkout.start_polling(session)

    assert first.active is False
    assert second.active is True
    assert checkout.active_poll_count == 1
    await first.wait()
    assert session.poll is second


async def test_ceiling_leaves_session_in_payment(owner_ctx, catalog, gateway, mailer, notifier):
    await catalog.create_product(product_payload(), owner_ctx)
    checkout = CheckoutService(catalog, gateway, mailer, notifier, poll_interval=0.01, poll_ceiling=0.05)
    session = await checkout.open_session("PJSK-001", "buyer@example.com")
    await checkout.confirm_order(session)

    await asyncio.wait_for(session.poll.wait(), timeout=2)

    assert session.state == CheckoutState.PAYMENT
    assert session.polling_expired is True
    assert session.to_dict()["pollingExpired"] is True
    assert session.to_dict()["polling"] is False
    assert checkout.active_poll_count == 0
    assert mailer.credential_mails == []


async def test_status_errors_are_retried_next_tick(listed, checkout, gateway):
    calls = []
    complete_after = 3

    async def flaky_status(order_code):
        calls.append(order_code)
        if len(calls) < complete_after:
            raise ExternalServiceError("could not read payment status", service="payment")
        return "completed"

    gateway.get_status = flaky_status
    session = await checkout.open_session("PJSK-001", "buyer@example.com")
    await checkout.confirm_order(session)

    await asyncio.wait_for(session.poll.wait(), timeout=2)
    assert session.state == CheckoutState.SUCCESS
    assert len(calls) == complete_after


async def test_teardown_cancels_polling(listed, checkout):
    session = await checkout.open_session("PJSK-001", "buyer@example.com")
    await checkout.confirm_order(session)
    handle = session.poll

    assert checkout.teardown(session.order_id) is True
    await handle.wait()

    assert handle.task.cancelled()
    assert checkout.active_poll_count == 0
    assert checkout.teardown(session.order_id) is False
    with pytest.raises(NotFoundError):
        checkout.get(session.order_id)


async def test_missing_credentials_send_support_notice(owner_ctx, catalog, checkout, gateway, mailer, notifier):
    await catalog.create_product(product_payload(gameAccount=None), owner_ctx)
    gateway.statuses = ["completed"]
    session = await checkout.open_session("PJSK-001", "buyer@example.com")
    await checkout.confirm_order(session)

    await asyncio.wait_for(session.poll.wait(), timeout=2)

    assert mailer.credential_mails == []
    assert mailer.support_mails == [session.order_id]
    assert notifier.logs[0][1] is False
    assert (await Order.get(order_id=session.order_id)).delivered is False


async def test_completing_poll_finishes_instead_of_cancelling(listed, checkout, gateway, notifier):
    gateway.statuses = ["pending", "completed"]
    session = await checkout.open_session("PJSK-001", "buyer@example.com")
    await checkout.confirm_order(session)
    handle = session.poll

    await asyncio.wait_for(handle.wait(), timeout=2)

    assert handle.task.done()
    assert not handle.task.cancelled()
    assert len(notifier.logs) == 1
    assert session.poll is None


async def test_manual_refresh_completion_stops_the_poll(listed, checkout, gateway, mailer):
    session = await checkout.open_session("PJSK-001", "buyer@example.com")
    await checkout.confirm_order(session)
    handle = session.poll

    gateway.statuses = ["completed"]
    assert await checkout.refresh(session) == CheckoutState.SUCCESS
    await handle.wait()

    assert handle.active is False
    assert session.poll is None
    assert len(mailer.credential_mails) == 1


async def test_second_buyer_of_sold_account_gets_support_notice(listed, checkout, gateway, mailer, notifier):
    first = await checkout.open_session("PJSK-001", "first@example.com")
    second = await checkout.open_session("PJSK-001", "second@example.com")
    await checkout.confirm_order(first)
    await checkout.confirm_order(second)
    handles = [first.poll, second.poll]

    gateway.statuses = ["completed"]
    await asyncio.wait_for(asyncio.gather(*(handle.wait() for handle in handles)), timeout=2)

    assert first.state == second.state == CheckoutState.SUCCESS
    assert len(mailer.credential_mails) == 1
    assert len(mailer.support_mails) == 1
    assert sorted(delivered for _, delivered in notifier.logs) == [False, True]
