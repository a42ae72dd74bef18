# conftest.py
import os

# models.py builds its engine at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ADMIN_USER", "admin")
os.environ.setdefault("ADMIN_PASS", "secret")

from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cash_service import start_shift
from day_service import open_day
from inventory_models import InventoryItem
from models import ProductType, Settings, create_db_tables
from recipe_service import create_product


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pos.db'}")
    await create_db_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
async def day(session):
    return await open_day(session)


@pytest.fixture
async def shift(session, day):
    return await start_shift(session, 100, "tester")


@pytest.fixture
async def burger(session):
    """Burger = 1 Bun (0.5) + 1 Patty (2.0), sold at 10."""
    bun = await create_product(session, "Bun", ProductType.RAW_MATERIAL, cost="0.5")
    patty = await create_product(session, "Patty", ProductType.RAW_MATERIAL, cost="2.0")
    burger = await create_product(
        session, "Burger", ProductType.MANUFACTURED, price=10, product_ref="burger",
        components=[(bun.id, 1), (patty.id, 1)],
    )
    return SimpleNamespace(bun_id=bun.id, patty_id=patty.id, burger_id=burger.id, burger=burger)


async def stock_of(session: AsyncSession, product_id: int) -> Decimal:
    res = await session.execute(select(InventoryItem.quantity).where(InventoryItem.product_id == product_id))
    return Decimal(str(res.scalar_one()))


async def update_settings(session: AsyncSession, **values) -> Settings:
    settings = await session.get(Settings, 1)
    for key, value in values.items():
        setattr(settings, key, value)
    await session.commit()
    return settings


class FakeStaffNotifier:
    def __init__(self):
        self.web_orders = []
        self.deficits = []

    async def new_web_order(self, order, customer_name=None):
        self.web_orders.append((order.id, customer_name))

    async def shift_deficit(self, shift):
        self.deficits.append(shift.id)
