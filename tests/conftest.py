"""Shared fixtures: a fresh SQLite database file per test."""

import pytest
import pytest_asyncio
from sqlalchemy import select

from funrun import orders
from funrun.gateway import MockPay
from funrun.infra import timings
from funrun.infra.sql import make_async_engine
from funrun.model.orm import Base, Order, TicketCategory

# 2025-10-09 08:53:20 UTC
NOW = 1_760_000_000.0
DAY = 24 * 3600


@pytest.fixture(autouse=True)
def clear_timings():
    timings.reset()
    yield
    timings.reset()


@pytest_asyncio.fixture
async def db(tmp_path):
    database = make_async_engine(f"sqlite:///{tmp_path / 'funrun.db'}")
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def session(db):
    async with db.session() as s:
        yield s


@pytest.fixture
def mockpay() -> MockPay:
    return MockPay("test-secret")


@pytest.fixture
def add_category(db):
    async def _add(**kw) -> int:
        values = dict(
            name="Fun Run 5K",
            description=None,
            price=150000,
            stock=10,
            sold=0,
            is_active=True,
            sale_start_date=NOW - DAY,
            sale_end_date=NOW + DAY,
            created_at=NOW,
        )
        values.update(kw)
        async with db.sessions() as s:
            async with s.begin():
                category = TicketCategory(**values)
                s.add(category)
        return category.id
    return _add


@pytest.fixture
def add_order(db):
    """Insert an order row directly, bypassing purchase (no stock moved)."""
    counter = {"n": 0}

    async def _add(ticket_id: int, status: str = "awaiting_payment",
                   bib_number=None, stock_held: bool = False,
                   **kw) -> str:
        counter["n"] += 1
        values = dict(
            order_number=f"FR-20251009-T{counter['n']:05d}",
            ticket_id=ticket_id,
            quantity=1,
            unit_price=150000,
            total_price=150000,
            status=status,
            bib_number=bib_number,
            stock_held=stock_held,
            form_data={},
            race_pack_collected=False,
            created_at=NOW,
        )
        values.update(kw)
        async with db.sessions() as s:
            async with s.begin():
                s.add(Order(**values))
        return values["order_number"]
    return _add


@pytest.fixture
def buy(db, mockpay):
    """Run a purchase in its own session, like one HTTP request."""
    async def _buy(category_id: int, quantity: int = 1, gateway=None,
                   now: float = NOW, **form):
        form.setdefault("name", "Budi")
        form.setdefault("email", "budi@example.com")
        async with db.session() as s:
            return await orders.purchase(
                s, gateway or mockpay, category_id, quantity, form,
                now=now,
            )
    return _buy


@pytest.fixture
def fetch_order(db):
    async def _fetch(order_number: str) -> Order:
        async with db.sessions() as s:
            return (await s.execute(
                select(Order).where(Order.order_number == order_number)
            )).scalar_one()
    return _fetch


@pytest.fixture
def fetch_category(db):
    async def _fetch(category_id: int) -> TicketCategory:
        async with db.sessions() as s:
            return await s.get(TicketCategory, category_id)
    return _fetch
