from __future__ import annotations

from sqlalchemy import Integer, cast, func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import DuplicateGenerationExhausted
from .orm import Order
from .status import OrderStatus

BIB_WIDTH = 5
BIB_MAX_PROBES = 100

# pg_advisory_xact_lock key for cross-process allocation
BIB_LOCK_KEY = 0x42494221


def format_bib(n: int) -> str:
    return str(n).zfill(BIB_WIDTH)


async def _lock_allocation(db: AsyncSession) -> None:
    # in-process callers already hold Database.exclusive(); this extends the
    # boundary to other worker processes sharing the database
    if db.bind.dialect.name == "postgresql":
        await db.execute(
            text("SELECT pg_advisory_xact_lock(:k)"), {"k": BIB_LOCK_KEY}
        )


async def _highest_paid(db: AsyncSession) -> int:
    last = (await db.execute(
        # numeric max: "100000" sorts below "99999" as text
        select(func.max(cast(Order.bib_number, Integer)))
        .where(Order.status == OrderStatus.PAID.value)
        .where(Order.bib_number.is_not(None))
    )).scalar()
    if not last:
        return 0
    return int(last)


async def bib_taken(db: AsyncSession, bib: str) -> bool:
    row = (await db.execute(
        select(Order.id).where(Order.bib_number == bib).limit(1)
    )).first()
    return row is not None


async def allocate(db: AsyncSession) -> str:
    """
    Next bib number: highest bib among paid orders + 1, zero padded.

    Call only while holding the allocation boundary and inside the same
    transaction that writes the paid status. The probe loop below covers a
    candidate that is still attached to a non-paid order.
    """
    await _lock_allocation(db)
    n = await _highest_paid(db) + 1
    for _ in range(BIB_MAX_PROBES):
        candidate = format_bib(n)
        if not await bib_taken(db, candidate):
            return candidate
        n += 1
    raise DuplicateGenerationExhausted("bib number", BIB_MAX_PROBES)
