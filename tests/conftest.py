"""
Pytest configuration and shared test fixtures.

Service and API tests run against a file-backed SQLite database created
per test, so every test starts from an empty schema. Users for each role
are registered through the user directory.
"""

from decimal import Decimal
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from orderflow.core.config import Settings
from orderflow.database.connection import (
    create_all_tables,
    create_engine,
    create_session_factory,
)
from orderflow.database.models.user import UserRole
from orderflow.services.identity.directory import UserDirectory
from orderflow.services.identity.permissions import Actor
from orderflow.services.notifications.channel import DeliveryChannel
from orderflow.services.notifications.service import NotificationService
from orderflow.services.orders.inputs import CustomerInfo, ItemInput
from orderflow.services.orders.service import OrderService


# ============================================================================
# Settings and Database Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Test settings backed by a SQLite file in the test's tmp dir."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orderflow.db'}",
        environment="test",
        live_push_backend="memory",
        auto_create_tables=False,
        sse_keepalive_seconds=0.05,
    )


@pytest.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_engine(settings)
    await create_all_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


# ============================================================================
# Actor Fixtures
# ============================================================================


@pytest.fixture
def sales() -> Actor:
    return Actor(id="sales-1", role=UserRole.SALES, name="Sam Sales")


@pytest.fixture
def other_sales() -> Actor:
    return Actor(id="sales-2", role=UserRole.SALES, name="Sue Sales")


@pytest.fixture
def accountant() -> Actor:
    return Actor(id="acct-1", role=UserRole.ACCOUNTANT, name="Alex Accountant")


@pytest.fixture
def warehouse() -> Actor:
    return Actor(id="wh-1", role=UserRole.WAREHOUSE, name="Wes Warehouse")


@pytest.fixture
def shipper() -> Actor:
    return Actor(id="ship-1", role=UserRole.SHIPPER, name="Shay Shipper")


@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin-1", role=UserRole.ADMIN, name="Ada Admin")


@pytest.fixture
def directory(session_factory) -> UserDirectory:
    return UserDirectory(session_factory)


@pytest.fixture
async def registered_users(
    directory, sales, other_sales, accountant, warehouse, shipper, admin
) -> dict[str, Actor]:
    """Register one active user per role plus a second sales user."""
    actors = [sales, other_sales, accountant, warehouse, shipper, admin]
    for actor in actors:
        await directory.register(actor.id, actor.name, actor.role)
    return {actor.id: actor for actor in actors}


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def channel() -> DeliveryChannel:
    return DeliveryChannel(queue_size=10)


@pytest.fixture
def notification_service(
    session_factory, channel, directory, settings
) -> NotificationService:
    return NotificationService(
        session_factory=session_factory,
        channel=channel,
        directory=directory,
        settings=settings,
    )


@pytest.fixture
def order_service(
    session_factory, notification_service, settings, registered_users
) -> OrderService:
    return OrderService(
        session_factory=session_factory,
        notifications=notification_service,
        settings=settings,
    )


@pytest.fixture
def customer() -> CustomerInfo:
    return CustomerInfo(
        name="Acme Corp",
        email="buyer@acme.test",
        phone="+1 555 0100",
        address="1 Main St",
    )


@pytest.fixture
def items() -> list[ItemInput]:
    return [
        ItemInput(name="Widget", price=Decimal("10.00"), quantity=3, sku="W-1"),
        ItemInput(name="Gadget", price="25.50", quantity=2),
    ]


# ============================================================================
# API Fixtures
# ============================================================================


@pytest.fixture
async def async_client(
    settings, session_factory, channel, registered_users
) -> AsyncGenerator[AsyncClient, None]:
    """
    HTTP client bound to an application wired to the test database.

    The lifespan is not run; state is set directly instead.
    """
    from orderflow.main import create_app

    app = create_app(settings)
    app.state.session_factory = session_factory
    app.state.delivery_channel = channel

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client

