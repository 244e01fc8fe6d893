import hashlib
import json

import httpx
import pytest
from sqlalchemy import select

from fulfillment_service.api.payments import get_providers
from fulfillment_service.core.exceptions import OrderNotFoundError, UnsupportedPaymentMethodError
from fulfillment_service.main import app
from fulfillment_service.models import Order, OutboxMessage, PaymentLog
from fulfillment_service.models.order import OrderStatus
from fulfillment_service.services.payments import build_providers
from fulfillment_service.services.payments.base import md5_signature, sha256_signature
from fulfillment_service.services.payments.service import PaymentService


def gateway(requests: list, paid: bool = True) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        path = request.url.path
        if path.endswith("/receipts.create"):
            return httpx.Response(200, json={"result": {"receipt": {"_id": "rcpt-1"}}})
        if path.endswith("/receipts.get"):
            return httpx.Response(200, json={"result": {"receipt": {"_id": "rcpt-1", "state": 2 if paid else 0, "amount": 2000000}}})
        if path.endswith("/invoice/create"):
            return httpx.Response(200, json={"error_code": -5, "error_note": "Service not found"})
        if path.endswith("/payment/create"):
            return httpx.Response(200, json={"success": True, "payment_url": "https://pay.uzcard.test/uz-1", "transaction_id": "uz-1"})
        if path.endswith("/payment/status"):
            return httpx.Response(503)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.fixture
def gateway_requests():
    return []


@pytest.fixture
def providers(gateway_requests):
    return build_providers(transport=gateway(gateway_requests))


async def reload_order(session, order_id):
    result = await session.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def logs_for(session, order_id):
    result = await session.execute(
        select(PaymentLog).where(PaymentLog.order_id == order_id).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def staged_jobs(session, order_id):
    result = await session.execute(select(OutboxMessage).where(OutboxMessage.order_id == order_id))
    return [json.loads(message.payload) for message in result.scalars().all()]


def test_signatures():
    assert md5_signature("svc", 100, "order-1", "secret") == hashlib.md5(b"svc100order-1secret").hexdigest()
    assert sha256_signature("m", 1.5, "o") == hashlib.sha256(b"m1.5o").hexdigest()


def test_humo_is_served_by_uzcard(providers):
    assert providers["humo"] is providers["uzcard"]
    assert set(providers) == {"payme", "click", "uzcard", "humo"}


@pytest.mark.asyncio
async def test_unsupported_method_is_logged_and_order_untouched(db_session, make_order, providers):
    order = await make_order()
    service = PaymentService(db_session, providers)

    with pytest.raises(UnsupportedPaymentMethodError):
        await service.create_payment(order.id, "bitcoin", 20000)

    logs = await logs_for(db_session, order.id)
    assert [(log.payment_method, log.status) for log in logs] == [("bitcoin", "failed")]

    order = await reload_order(db_session, order.id)
    assert order.payment_status == "pending"
    assert order.status == OrderStatus.PENDING.value


@pytest.mark.asyncio
async def test_payment_for_missing_order(db_session, providers):
    service = PaymentService(db_session, providers)

    with pytest.raises(OrderNotFoundError):
        await service.create_payment("no-such-order", "payme", 20000)


@pytest.mark.asyncio
async def test_payme_payment_is_created(db_session, make_order, providers, gateway_requests):
    order = await make_order()
    service = PaymentService(db_session, providers)

    response = await service.create_payment(order.id, "payme", 20000)

    assert response.success
    assert response.payment_url == "https://checkout.paycom.uz/rcpt-1"
    assert response.transaction_id == "rcpt-1"

    request = gateway_requests[0]
    body = json.loads(request.content)
    assert body["params"]["amount"] == 2000000
    assert body["params"]["account"] == {"order_id": order.id}
    assert "X-Auth" in request.headers

    logs = await logs_for(db_session, order.id)
    assert [(log.status, log.transaction_id) for log in logs] == [("completed", "rcpt-1")]


@pytest.mark.asyncio
async def test_rejected_click_payment_is_reported(db_session, make_order, providers):
    order = await make_order()
    service = PaymentService(db_session, providers)

    response = await service.create_payment(order.id, "click", 20000)

    assert not response.success
    assert response.message == "Service not found"

    order = await reload_order(db_session, order.id)
    assert order.payment_status == "failed"
    logs = await logs_for(db_session, order.id)
    assert [log.status for log in logs] == ["failed"]


@pytest.mark.asyncio
async def test_humo_payment_goes_through_uzcard(db_session, make_order, providers, gateway_requests):
    order = await make_order()
    service = PaymentService(db_session, providers)

    response = await service.create_payment(order.id, "HUMO", 20000)

    assert response.success
    assert response.transaction_id == "uz-1"
    assert gateway_requests[0].url.path.endswith("/payment/create")
    assert "signature" in json.loads(gateway_requests[0].content)


@pytest.mark.asyncio
async def test_network_failure_is_a_failed_payment(db_session, make_order):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    order = await make_order()
    service = PaymentService(db_session, build_providers(transport=httpx.MockTransport(handler)))

    response = await service.create_payment(order.id, "payme", 20000)

    assert not response.success
    assert "connection refused" in response.message


@pytest.mark.asyncio
async def test_html_response_is_a_failed_payment(db_session, make_order):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    order = await make_order()
    service = PaymentService(db_session, build_providers(transport=httpx.MockTransport(handler)))

    response = await service.create_payment(order.id, "payme", 20000)

    assert not response.success
    assert "non-JSON" in response.message
    logs = await logs_for(db_session, order.id)
    assert [log.status for log in logs] == ["failed"]


@pytest.mark.asyncio
async def test_incomplete_receipt_is_a_failed_payment(db_session, make_order):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"result": {"receipt": {"state": 2}}})

    order = await make_order()
    service = PaymentService(db_session, build_providers(transport=httpx.MockTransport(handler)))

    response = await service.create_payment(order.id, "payme", 20000)
    assert not response.success

    result = await service.verify_payment("rcpt-1", "payme")
    assert not result.success
    assert await staged_jobs(db_session, order.id) == []

    logs = await logs_for(db_session, order.id)
    assert [log.status for log in logs] == ["failed"]


@pytest.mark.asyncio
async def test_verified_payment_stages_fulfillment(db_session, make_order, providers):
    order = await make_order()
    service = PaymentService(db_session, providers)
    await service.create_payment(order.id, "payme", 20000)

    result = await service.verify_payment("rcpt-1", "payme")

    assert result.success
    assert result.amount == 20000

    order = await reload_order(db_session, order.id)
    assert order.payment_status == "completed"
    assert order.status == OrderStatus.PENDING.value

    jobs = await staged_jobs(db_session, order.id)
    assert [(job["kind"], job["attempt"]) for job in jobs] == [("fulfill", 1)]


@pytest.mark.asyncio
async def test_verified_payment_for_settled_order_stages_nothing(db_session, make_order, providers):
    order = await make_order(status=OrderStatus.COMPLETED)
    service = PaymentService(db_session, providers)
    await service.create_payment(order.id, "payme", 20000)

    result = await service.verify_payment("rcpt-1", "payme")

    assert result.success
    assert await staged_jobs(db_session, order.id) == []


@pytest.mark.asyncio
async def test_unpaid_receipt_is_not_verified(db_session, make_order, gateway_requests):
    order = await make_order()
    service = PaymentService(db_session, build_providers(transport=gateway(gateway_requests, paid=False)))
    await service.create_payment(order.id, "payme", 20000)

    result = await service.verify_payment("rcpt-1", "payme")

    assert not result.success
    assert result.message == "Payment not completed"
    assert await staged_jobs(db_session, order.id) == []
    logs = await logs_for(db_session, order.id)
    assert [log.status for log in logs] == ["failed"]


@pytest.mark.asyncio
async def test_verify_with_unsupported_method(db_session, providers):
    with pytest.raises(UnsupportedPaymentMethodError):
        await PaymentService(db_session, providers).verify_payment("rcpt-1", "bitcoin")


@pytest.mark.asyncio
async def test_verify_gateway_outage(db_session, providers):
    result = await PaymentService(db_session, providers).verify_payment("uz-1", "uzcard")

    assert not result.success
    assert result.transaction_id == "uz-1"


@pytest.mark.asyncio
async def test_payments_api(client, make_order, providers):
    app.dependency_overrides[get_providers] = lambda: providers
    order = await make_order()

    response = await client.post("/payments/create", json={"order_id": order.id, "payment_method": "payme", "amount": 20000})
    assert response.status_code == 200
    assert response.json()["payment_url"] == "https://checkout.paycom.uz/rcpt-1"

    response = await client.post("/payments/create", json={"order_id": order.id, "payment_method": "bitcoin", "amount": 20000})
    assert response.status_code == 400
    assert response.json()["detail"] == "Unsupported payment method: bitcoin"

    response = await client.post("/payments/create", json={"order_id": "missing", "payment_method": "payme", "amount": 20000})
    assert response.status_code == 404

    response = await client.post("/payments/verify", json={"transaction_id": "rcpt-1", "payment_method": "payme"})
    assert response.status_code == 200
    assert response.json()["success"] is True

    response = await client.get("/payments/logs", params={"order_id": order.id, "limit": 1})
    assert response.status_code == 200
    page = response.json()
    assert page["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
    assert len(page["logs"]) == 1
