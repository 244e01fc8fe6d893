import uuid

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool

from fulfillment_service.main import app
from fulfillment_service.core.database import get_db
from fulfillment_service.core.broker import broker
from fulfillment_service.models import Base, Customer, Order, OrderItem, Product
from fulfillment_service.models.order import OrderStatus
from fulfillment_service.services.notifications import NotificationDispatcher
from fulfillment_service.services.sms import SmsClient


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}",
        poolclass=NullPool,
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def test_async_session_maker(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest_asyncio.fixture
async def db_session(test_async_session_maker):
    async with test_async_session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def client(test_async_session_maker):
    async def override_get_db():
        async with test_async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def mock_broker(monkeypatch):
    published_messages = []

    async def mock_publish(routing_key: str, message: bytes, expiration=None):
        published_messages.append({
            "routing_key": routing_key,
            "message": message,
            "expiration": expiration
        })

    monkeypatch.setattr(broker, "publish", mock_publish)

    yield published_messages


@pytest_asyncio.fixture
async def customer(db_session):
    customer = Customer(id=str(uuid.uuid4()), name="Aziz Karimov", phone="+998 90 123-45-67")
    db_session.add(customer)
    await db_session.commit()
    return customer


@pytest_asyncio.fixture
async def make_order(db_session, customer):
    async def _make_order(items=((10000, 2, "ERS-100"),), status=OrderStatus.PENDING, **overrides) -> Order:
        order_id = str(uuid.uuid4())
        order_items = []
        total = 0
        for price, quantity, external_id in items:
            product = Product(id=str(uuid.uuid4()), name=f"Product {external_id}", price=price, external_id=external_id)
            db_session.add(product)
            order_items.append(OrderItem(product_id=product.id, product=product, quantity=quantity, price=price))
            total += price * quantity

        fields = dict(
            id=order_id,
            order_number=f"ERS-TEST-{order_id[:8].upper()}",
            customer_id=customer.id,
            total_amount=total,
            status=status.value,
            payment_status="pending",
            payment_method="payme",
            customer_name="Aziz Karimov",
            customer_phone="+998 90 123-45-67",
            customer_address="Amir Temur ko'chasi 15, 3-xonadon",
            customer_region="Toshkent",
            customer_district="Yunusobod",
            items=order_items,
        )
        fields.update(overrides)
        order = Order(**fields)
        db_session.add(order)
        await db_session.commit()
        return order

    return _make_order


def sms_gateway(requests: list, fail: bool = False) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.endswith("/auth/login"):
            return httpx.Response(200, json={"data": {"token": "token-1"}})
        if fail:
            return httpx.Response(500, json={"status": "error"})
        return httpx.Response(200, json={"id": "sms-1", "status": "success"})

    return httpx.MockTransport(handler)


@pytest.fixture
def sms_requests():
    return []


@pytest.fixture
def notifier(test_async_session_maker, sms_requests):
    sms_client = SmsClient(
        "https://sms.test/api", email="ops@example.com", password="secret", sender="ERSAG",
        transport=sms_gateway(sms_requests)
    )
    return NotificationDispatcher(test_async_session_maker, sms_client)


@pytest.fixture
def failing_notifier(test_async_session_maker, sms_requests):
    sms_client = SmsClient(
        "https://sms.test/api", email="ops@example.com", password="secret", sender="ERSAG",
        transport=sms_gateway(sms_requests, fail=True)
    )
    return NotificationDispatcher(test_async_session_maker, sms_client)
