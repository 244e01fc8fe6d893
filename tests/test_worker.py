import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from fakes import S, FakePage, FakePool
from fulfillment_service.automation.checkout import MerchantCheckout
from fulfillment_service.automation.driver import AutomationDriver
from fulfillment_service.core.clock import utcnow
from fulfillment_service.core.exceptions import (
    AutomationTimeoutError,
    CaptchaLimitExceededError,
    ExternalAutomationError,
    FulfillmentError,
    OrderNotFoundError,
)
from fulfillment_service.models import CaptchaSession, Customer, NotificationLog, Order
from fulfillment_service.models.order import OrderStatus
from fulfillment_service.repositories.captcha import CaptchaRepository
from fulfillment_service.schemas.jobs import FulfillmentJob, JobKind
from fulfillment_service.services.retry import RetryPolicy
from fulfillment_service.services.worker import FulfillmentWorker


def build_worker(session_maker, page, notifier, max_attempts=3, deadline_seconds=5.0, max_captcha_interrupts=3):
    pool = FakePool(page)
    driver = AutomationDriver(
        pool,
        MerchantCheckout("https://merchant.test", confirmation_timeout_ms=1000, settle_timeout_ms=1000),
        max_captcha_interrupts=max_captcha_interrupts
    )
    worker = FulfillmentWorker(
        session_maker,
        driver=driver,
        notifier=notifier,
        policy=RetryPolicy(max_attempts=max_attempts, base_delay=1, max_delay=10),
        deadline_seconds=deadline_seconds
    )
    return worker, pool


async def reload(session, model, key):
    result = await session.execute(
        select(model).where(model.id == key).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def notifications_for(session, order_id):
    result = await session.execute(select(NotificationLog).where(NotificationLog.order_id == order_id))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_successful_run_completes_order_and_notifies(
    db_session, test_async_session_maker, make_order, notifier, sms_requests
):
    order = await make_order(items=((10000, 2, "ERS-100"), (5000, 1, "ERS-200")))
    page = FakePage()
    worker, pool = build_worker(test_async_session_maker, page, notifier)

    await worker.process(FulfillmentJob(order_id=order.id))

    order = await reload(db_session, Order, order.id)
    assert order.status == OrderStatus.COMPLETED.value
    assert order.receipt_url == "https://merchant.test/receipt/R-1001"
    assert order.external_order_id == "R-1001"
    assert order.completed_at is not None
    assert order.error_message is None

    assert pool.acquired == pool.released == 1
    assert page.filled(S["quantity"]) == ["2"]
    assert page.filled(S["address"]) == ["Amir Temur ko'chasi 15, 3-xonadon"]
    assert page.clicks(S["place_order"]) == 1

    logs = await notifications_for(db_session, order.id)
    assert [(log.kind, log.status) for log in logs] == [("confirmation", "sent")]
    assert order.order_number in logs[0].message
    assert len(sms_requests) == 2


@pytest.mark.asyncio
async def test_fatal_error_fails_order_and_sends_one_failure_notification(
    db_session, test_async_session_maker, make_order, notifier
):
    order = await make_order()
    page = FakePage(fail_on=S["place_order"], error=FulfillmentError("Merchant rejected the order"))
    worker, _ = build_worker(test_async_session_maker, page, notifier)

    with pytest.raises(FulfillmentError):
        await worker.process(FulfillmentJob(order_id=order.id))

    order = await reload(db_session, Order, order.id)
    assert order.status == OrderStatus.FAILED.value
    assert order.error_message == "Merchant rejected the order"

    logs = await notifications_for(db_session, order.id)
    assert [(log.kind, log.status) for log in logs] == [("failure", "sent")]


@pytest.mark.asyncio
async def test_failed_notification_does_not_change_order_outcome(
    db_session, test_async_session_maker, make_order, failing_notifier
):
    order = await make_order()
    page = FakePage(fail_on=S["place_order"], error=FulfillmentError("Merchant rejected the order"))
    worker, _ = build_worker(test_async_session_maker, page, failing_notifier)

    with pytest.raises(FulfillmentError):
        await worker.process(FulfillmentJob(order_id=order.id))

    order = await reload(db_session, Order, order.id)
    assert order.status == OrderStatus.FAILED.value

    logs = await notifications_for(db_session, order.id)
    assert [(log.kind, log.status) for log in logs] == [("failure", "failed")]


@pytest.mark.asyncio
async def test_retryable_error_hands_order_back_without_notifying(
    db_session, test_async_session_maker, make_order, notifier
):
    order = await make_order()
    page = FakePage(fail_on=S["place_order"])
    worker, _ = build_worker(test_async_session_maker, page, notifier, max_attempts=3)

    with pytest.raises(ExternalAutomationError):
        await worker.process(FulfillmentJob(order_id=order.id, attempt=1))

    order = await reload(db_session, Order, order.id)
    assert order.status == OrderStatus.PENDING.value
    assert "failed" in order.error_message
    assert await notifications_for(db_session, order.id) == []


@pytest.mark.asyncio
async def test_last_attempt_fails_order(db_session, test_async_session_maker, make_order, notifier):
    order = await make_order()
    page = FakePage(fail_on=S["place_order"])
    worker, _ = build_worker(test_async_session_maker, page, notifier, max_attempts=3)

    with pytest.raises(ExternalAutomationError):
        await worker.process(FulfillmentJob(order_id=order.id, attempt=3))

    order = await reload(db_session, Order, order.id)
    assert order.status == OrderStatus.FAILED.value
    assert len(await notifications_for(db_session, order.id)) == 1


@pytest.mark.asyncio
async def test_unexpected_exception_is_wrapped_as_automation_error(
    db_session, test_async_session_maker, make_order, notifier
):
    order = await make_order()
    page = FakePage(fail_on=S["checkout"], error=RuntimeError("browser crashed"))
    worker, _ = build_worker(test_async_session_maker, page, notifier)

    with pytest.raises(ExternalAutomationError, match="browser crashed"):
        await worker.process(FulfillmentJob(order_id=order.id))

    order = await reload(db_session, Order, order.id)
    assert order.status == OrderStatus.PENDING.value


@pytest.mark.asyncio
async def test_job_deadline_raises_timeout(db_session, test_async_session_maker, make_order, notifier):
    order = await make_order()
    page = FakePage(delay=1.0)
    worker, pool = build_worker(test_async_session_maker, page, notifier, deadline_seconds=0.5)

    with pytest.raises(AutomationTimeoutError):
        await worker.process(FulfillmentJob(order_id=order.id))

    order = await reload(db_session, Order, order.id)
    assert order.status == OrderStatus.PENDING.value
    assert pool.released == 1


@pytest.mark.asyncio
async def test_captcha_suspends_order(db_session, test_async_session_maker, make_order, notifier):
    order = await make_order()
    page = FakePage(captcha=True)
    worker, _ = build_worker(test_async_session_maker, page, notifier)

    before = utcnow()
    await worker.process(FulfillmentJob(order_id=order.id))

    order = await reload(db_session, Order, order.id)
    assert order.status == OrderStatus.AWAITING_CAPTCHA.value
    assert order.captcha_interrupts == 1
    assert page.clicks(S["place_order"]) == 0

    result = await db_session.execute(select(CaptchaSession).where(CaptchaSession.order_id == order.id))
    captcha = result.scalar_one()
    assert captcha.image_url == "https://merchant.test/captcha/1.png"
    assert not captcha.is_solved
    assert captcha.expires_at - captcha.created_at == timedelta(seconds=600)
    assert captcha.created_at.replace(tzinfo=None) >= before.replace(tzinfo=None, microsecond=0)

    assert await notifications_for(db_session, order.id) == []


@pytest.mark.asyncio
async def test_resume_types_solution_and_completes(db_session, test_async_session_maker, make_order, notifier):
    order = await make_order(status=OrderStatus.AWAITING_CAPTCHA, captcha_interrupts=1)
    now = utcnow()
    db_session.add(CaptchaSession(
        order_id=order.id,
        image_url="https://merchant.test/captcha/1.png",
        solution="x7k2",
        is_solved=True,
        created_at=now,
        expires_at=now + timedelta(minutes=10)
    ))
    await db_session.commit()

    page = FakePage(captcha=True, captcha_after_solution=False)
    worker, _ = build_worker(test_async_session_maker, page, notifier)

    await worker.process(FulfillmentJob(order_id=order.id, kind=JobKind.RESUME))

    order = await reload(db_session, Order, order.id)
    assert order.status == OrderStatus.COMPLETED.value
    assert page.filled(S["captcha_input"]) == ["x7k2"]
    assert page.clicks(S["captcha_submit"]) == 1


@pytest.mark.asyncio
async def test_repeated_captcha_gives_up(db_session, test_async_session_maker, make_order, notifier):
    order = await make_order(captcha_interrupts=2)
    page = FakePage(captcha=True)
    worker, _ = build_worker(test_async_session_maker, page, notifier, max_captcha_interrupts=2)

    with pytest.raises(CaptchaLimitExceededError):
        await worker.process(FulfillmentJob(order_id=order.id))

    order = await reload(db_session, Order, order.id)
    assert order.status == OrderStatus.FAILED.value


@pytest.mark.asyncio
async def test_missing_order_is_fatal(test_async_session_maker, notifier):
    worker, pool = build_worker(test_async_session_maker, FakePage(), notifier)

    with pytest.raises(OrderNotFoundError):
        await worker.process(FulfillmentJob(order_id="does-not-exist"))

    assert pool.acquired == 0
    assert not OrderNotFoundError.retryable


@pytest.mark.asyncio
async def test_concurrent_jobs_for_one_order_run_once(db_session, test_async_session_maker, make_order, notifier):
    order = await make_order()
    page = FakePage(delay=0.01)
    worker, pool = build_worker(test_async_session_maker, page, notifier)

    await asyncio.gather(
        worker.process(FulfillmentJob(order_id=order.id)),
        worker.process(FulfillmentJob(order_id=order.id, attempt=2)),
    )

    assert pool.acquired == 1
    order = await reload(db_session, Order, order.id)
    assert order.status == OrderStatus.COMPLETED.value
    assert len(await notifications_for(db_session, order.id)) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.COMPLETED, OrderStatus.FAILED])
async def test_resume_job_needs_an_awaiting_order(db_session, test_async_session_maker, make_order, notifier, status):
    order = await make_order(status=status)
    worker, pool = build_worker(test_async_session_maker, FakePage(), notifier)

    await worker.process(FulfillmentJob(order_id=order.id, kind=JobKind.RESUME))

    assert pool.acquired == 0
    order = await reload(db_session, Order, order.id)
    assert order.status == status.value


@pytest.mark.asyncio
async def test_completed_order_is_not_driven_again(db_session, test_async_session_maker, make_order, notifier):
    order = await make_order(status=OrderStatus.COMPLETED, receipt_url="https://merchant.test/receipt/R-1")
    worker, pool = build_worker(test_async_session_maker, FakePage(), notifier)

    await worker.process(FulfillmentJob(order_id=order.id))

    assert pool.acquired == 0
    assert await notifications_for(db_session, order.id) == []


@pytest.mark.asyncio
async def test_redelivered_job_takes_over_an_abandoned_claim(db_session, test_async_session_maker, make_order, notifier):
    order = await make_order(status=OrderStatus.PROCESSING, claimed_at=utcnow() - timedelta(minutes=5))
    worker, pool = build_worker(test_async_session_maker, FakePage(), notifier, deadline_seconds=5.0)

    await worker.process(FulfillmentJob(order_id=order.id))

    assert pool.acquired == 1
    order = await reload(db_session, Order, order.id)
    assert order.status == OrderStatus.COMPLETED.value
    assert len(await notifications_for(db_session, order.id)) == 1


@pytest.mark.asyncio
async def test_live_claim_is_not_taken_over(db_session, test_async_session_maker, make_order, notifier):
    order = await make_order(status=OrderStatus.PROCESSING, claimed_at=utcnow())
    worker, pool = build_worker(test_async_session_maker, FakePage(), notifier, deadline_seconds=5.0)

    await worker.process(FulfillmentJob(order_id=order.id))

    assert pool.acquired == 0
    order = await reload(db_session, Order, order.id)
    assert order.status == OrderStatus.PROCESSING.value


@pytest.mark.asyncio
async def test_expired_captcha_fails_order_and_notifies(db_session, test_async_session_maker, make_order, notifier):
    captchas = CaptchaRepository(db_session)
    now = utcnow()

    expired = await make_order(status=OrderStatus.AWAITING_CAPTCHA, captcha_interrupts=1)
    await captchas.open(expired.id, "https://merchant.test/captcha/1.png", None,
                        created_at=now - timedelta(minutes=20), expires_at=now - timedelta(minutes=10))

    solved = await make_order(status=OrderStatus.AWAITING_CAPTCHA, captcha_interrupts=1)
    await captchas.open(solved.id, "https://merchant.test/captcha/2.png", None,
                        created_at=now - timedelta(minutes=20), expires_at=now - timedelta(minutes=10))
    assert await captchas.mark_solved(solved.id, "x7k2", now - timedelta(minutes=15))
    await db_session.commit()

    open_order = await make_order(status=OrderStatus.AWAITING_CAPTCHA, captcha_interrupts=1)
    await captchas.open(open_order.id, "https://merchant.test/captcha/3.png", None,
                        created_at=now, expires_at=now + timedelta(minutes=10))

    worker, pool = build_worker(test_async_session_maker, FakePage(), notifier)

    assert await worker.fail_expired_captchas() == 1
    assert await worker.fail_expired_captchas() == 0

    assert pool.acquired == 0
    order = await reload(db_session, Order, expired.id)
    assert order.status == OrderStatus.FAILED.value
    assert order.error_message == "Captcha was not solved in time"
    logs = await notifications_for(db_session, expired.id)
    assert [(log.kind, log.status) for log in logs] == [("failure", "sent")]

    for other in (solved, open_order):
        order = await reload(db_session, Order, other.id)
        assert order.status == OrderStatus.AWAITING_CAPTCHA.value
        assert await notifications_for(db_session, other.id) == []


@pytest.mark.asyncio
async def test_merchant_credentials_are_issued_once(db_session, test_async_session_maker, make_order, customer, notifier):
    first = await make_order()
    second = await make_order()

    first_page = FakePage()
    worker, _ = build_worker(test_async_session_maker, first_page, notifier)
    await worker.process(FulfillmentJob(order_id=first.id))

    stored = await reload(db_session, Customer, customer.id)
    assert stored.has_external_credentials
    assert stored.external_id.startswith("ERS_")
    assert first_page.filled(S["login"]) == [stored.external_login]

    second_page = FakePage()
    worker, _ = build_worker(test_async_session_maker, second_page, notifier)
    await worker.process(FulfillmentJob(order_id=second.id))

    assert second_page.filled(S["login"]) == [stored.external_login]
    assert second_page.filled(S["password"]) == [stored.external_password]
