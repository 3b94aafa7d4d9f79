"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- A recording WhatsApp gateway instead of the real providers
- Catalog/order test data factories
"""
# DEBUG=true לפני ייבוא order_bot - בלי זה הולידטור דורש credentials של Cloud API
import os
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from decimal import Decimal
from typing import AsyncGenerator, Optional
from unittest.mock import patch

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from order_bot.core.circuit_breaker import CircuitBreaker
from order_bot.core.exceptions import WhatsAppError
from order_bot.db import models  # noqa: F401
from order_bot.db.database import Base, get_db
from order_bot.db.models.catalog import Category, Item, ItemCondition, ItemPrice, ItemStock
from order_bot.db.models.customer import Customer
from order_bot.db.models.order import Order, OrderLine, OrderStatus
from order_bot.db.models.warehouse import Warehouse
from order_bot.domain.services.whatsapp.base_provider import BaseWhatsAppProvider
from order_bot.domain.services.whatsapp.provider_factory import reset_providers


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_PHONE = "255712345678"


def _enable_sqlite_savepoints(engine) -> None:
    """
    pysqlite מנהל BEGIN בעצמו ושובר SAVEPOINT (begin_nested).
    מכבים את ההתנהגות ופותחים טרנזקציה ידנית - לפי התיעוד של SQLAlchemy.
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    _enable_sqlite_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def reset_singletons():
    """ספקים ו-circuit breakers הם singletons - מאפסים בין בדיקות"""
    reset_providers()
    CircuitBreaker.reset_all()
    yield
    reset_providers()
    CircuitBreaker.reset_all()


# ============================================================================
# Recording WhatsApp gateway
# ============================================================================


class RecordingGateway(BaseWhatsAppProvider):
    """
    ספק WhatsApp לבדיקות - שומר כל קריאה ב-self.sent.

    fail=True גורם לכל שליחה לזרוק WhatsAppError (כמו ספק שמיצה retries).
    """

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[dict] = []
        self.read: list[str] = []

    def _record(self, kind: str, to: str, **payload) -> None:
        if self.fail:
            raise WhatsAppError("gateway down", details={"to": to})
        self.sent.append({"kind": kind, "to": to, **payload})

    async def send_text(self, to: str, body: str) -> None:
        self._record("text", to, body=body)

    async def send_buttons(self, to: str, body: str, buttons) -> None:
        self._record("buttons", to, body=body, buttons=[button.id for button in buttons])

    async def send_list(self, to, body, button_text, sections, header=None, footer=None) -> None:
        rows = [row.id for section in sections for row in section.rows]
        self._record("list", to, body=body, rows=rows, header=header)

    async def send_image(self, to: str, url: str, caption: Optional[str] = None) -> None:
        self._record("image", to, url=url, caption=caption)

    async def mark_read(self, message_id: str) -> None:
        if self.fail:
            raise WhatsAppError("gateway down")
        self.read.append(message_id)

    def normalize_phone(self, phone: str) -> str:
        return phone.lstrip("+")

    @property
    def provider_name(self) -> str:
        return "recording"

    def texts(self) -> list[str]:
        return [message["body"] for message in self.sent if "body" in message]


@pytest.fixture
def recording_gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def failing_gateway() -> RecordingGateway:
    return RecordingGateway(fail=True)


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, recording_gateway: RecordingGateway):
    """Create test client with database override and the recording gateway"""
    from httpx import ASGITransport, AsyncClient

    from order_bot.main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    with patch("order_bot.api.webhooks.whatsapp.get_whatsapp_provider", return_value=recording_gateway), \
            patch(
                "order_bot.domain.services.whatsapp.provider_factory.get_whatsapp_notifications_provider",
                return_value=recording_gateway,
            ), \
            patch(
                "order_bot.domain.services.whatsapp.get_whatsapp_notifications_provider",
                return_value=recording_gateway,
            ):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client

    app.dependency_overrides.clear()


# ============================================================================
# Test Data Factories
# ============================================================================


@pytest.fixture
def catalog_factory(db_session: AsyncSession):
    """
    Factory for a sellable item: category + warehouse + item + active price + stock.

    Returns the Item; ``item.test_stock`` / ``item.test_warehouse`` point to the
    created rows for convenience.
    """
    counter = {"n": 0}

    async def _create(
        name: str = "Coca Cola 500ml",
        price: Optional[Decimal] = Decimal("1500.00"),
        stock: Optional[int] = 10,
        category: Optional[Category] = None,
        warehouse: Optional[Warehouse] = None,
        code: Optional[str] = None,
        image_url: Optional[str] = None,
        condition: ItemCondition = ItemCondition.NEW,
    ) -> Item:
        counter["n"] += 1
        if category is None:
            category = Category(name="Drinks")
            db_session.add(category)
        if warehouse is None:
            warehouse = Warehouse(name="Main Warehouse", location="Dar es Salaam")
            db_session.add(warehouse)
        await db_session.flush()

        item = Item(
            code=code or f"ITEM{counter['n']:03d}",
            name=name,
            description=None,
            condition=condition,
            image_url=image_url,
            category_id=category.id,
        )
        db_session.add(item)
        await db_session.flush()

        if price is not None:
            db_session.add(ItemPrice(item_id=item.id, selling_price=price, is_active=True))
        stock_row = None
        if stock is not None:
            stock_row = ItemStock(item_id=item.id, warehouse_id=warehouse.id, quantity=stock)
            db_session.add(stock_row)
        await db_session.commit()

        item.test_stock = stock_row
        item.test_warehouse = warehouse
        item.test_category = category
        return item

    return _create


@pytest.fixture
def customer_factory(db_session: AsyncSession):
    async def _create(phone: str = TEST_PHONE, name: str = "Asha") -> Customer:
        customer = Customer(phone=phone, name=name)
        db_session.add(customer)
        await db_session.commit()
        return customer

    return _create


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Insert an order directly (bypassing OrderService) with one line per item."""
    counter = {"n": 0}

    async def _create(
        items: list[tuple[Item, int]],
        phone: str = TEST_PHONE,
        status: OrderStatus = OrderStatus.PENDING,
        customer: Optional[Customer] = None,
        rating: Optional[int] = None,
        delivery_address: Optional[str] = "Mikocheni B, Dar es Salaam",
    ) -> Order:
        counter["n"] += 1
        lines = []
        total = Decimal("0")
        for item, quantity in items:
            unit_price = Decimal("1500.00")
            lines.append(OrderLine(
                item_id=item.id,
                item_name=item.name,
                quantity=quantity,
                unit_price=unit_price,
                total_price=unit_price * quantity,
            ))
            total += unit_price * quantity
        order = Order(
            order_number=f"WA000000{counter['n']:04d}",
            customer_phone=phone,
            customer=customer,
            warehouse_id=items[0][0].test_warehouse.id,
            total_amount=total,
            status=status,
            delivery_address=delivery_address,
            rating=rating,
            notified_for_current_status=False,
            lines=lines,
        )
        db_session.add(order)
        await db_session.commit()
        return order

    return _create
