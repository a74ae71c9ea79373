"""Default ticket categories for a fresh database.

    python -m funrun.seed
"""
from __future__ import annotations
import asyncio
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select

from .config import DATABASE_URL
from .helpers import now_ts
from .infra.sql import Database, make_async_engine
from .logs import get_logger, setup_logging
from .model.orm import Base, TicketCategory

log = get_logger(__name__)

DAY = 24 * 3600

# sale windows are offsets in days relative to seeding time
DEFAULT_CATEGORIES: List[Dict[str, Any]] = [
    {
        "name": "Fun Run 5K",
        "description": "5 km route for beginners and families. "
                       "Finisher medal and goodie bag included.",
        "price": 150000,
        "stock": 500,
        "sale_start_days": -7,
        "sale_end_days": 30,
    },
    {
        "name": "Fun Run 10K",
        "description": "10 km route for intermediate runners. "
                       "Running jersey, medal and certificate included.",
        "price": 200000,
        "stock": 300,
        "sale_start_days": -7,
        "sale_end_days": 30,
    },
    {
        "name": "Half Marathon 21K",
        "description": "21 km half marathon on a demanding route. "
                       "Exclusive finisher medal, running gear and "
                       "official certificate.",
        "price": 350000,
        "stock": 200,
        "sale_start_days": -7,
        "sale_end_days": 30,
    },
    {
        "name": "Kids Run 1K",
        "description": "1 km course for children aged 5 to 12. "
                       "Kids medal, goodie bag and snacks included.",
        "price": 75000,
        "stock": 100,
        "sale_start_days": -7,
        "sale_end_days": 30,
    },
    {
        "name": "Virtual Run",
        "description": "Run the distance wherever you are and upload "
                       "proof of your run. The medal is shipped to you.",
        "price": 100000,
        "stock": 1000,
        "sale_start_days": -7,
        "sale_end_days": 60,
    },
]


def build_category(values: Dict[str, Any], now: float) -> TicketCategory:
    start = values.get("sale_start_days")
    end = values.get("sale_end_days")
    return TicketCategory(
        name=values["name"],
        description=values.get("description"),
        price=int(values["price"]),
        stock=int(values["stock"]),
        sold=0,
        is_active=values.get("is_active", True),
        sale_start_date=None if start is None else now + start * DAY,
        sale_end_date=None if end is None else now + end * DAY,
        created_at=now,
    )


async def seed_categories(
    db: Database,
    categories: Optional[Iterable[Dict[str, Any]]] = None,
    *,
    now: float,
) -> int:
    """Insert categories when the table is empty. Returns rows inserted."""
    categories = DEFAULT_CATEGORIES if categories is None else categories
    async with db.gated():
        async with db.sessions() as session:
            async with session.begin():
                existing = (await session.execute(
                    select(func.count()).select_from(TicketCategory)
                )).scalar_one()
                if existing:
                    log.info("ticket_categories not empty (%d), "
                             "skipping seed", existing)
                    return 0
                rows = [build_category(c, now) for c in categories]
                session.add_all(rows)
    log.info("seeded %d ticket categories", len(rows))
    return len(rows)


async def _main() -> None:
    if DATABASE_URL is None:
        raise SystemExit("DATABASE_URL is not set")
    db = make_async_engine(DATABASE_URL)
    try:
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await seed_categories(db, now=now_ts())
    finally:
        await db.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(_main())
