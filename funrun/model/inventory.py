# model/inventory.py
"""
Ticket stock accounting on the ticket_categories table.

- reserve: sold += qty, guarded by stock - sold >= qty in the same statement
- release: sold -= qty, floored at 0
- sale predicates (active flag, sale window, remaining stock)
- inventory read APIs
"""

from __future__ import annotations
from typing import Dict, Any, List

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import to_iso
from .errors import (
    InsufficientStock, SaleNotActive, SaleWindowClosed, TicketNotFound,
    ValidationError,
)
from .orm import TicketCategory


SQL_RESERVE = r"""
UPDATE ticket_categories
SET sold = sold + :q
WHERE id = :id
  AND stock - sold >= :q
RETURNING sold, stock
"""

SQL_RELEASE = r"""
UPDATE ticket_categories
SET sold = CASE WHEN sold >= :q THEN sold - :q ELSE 0 END
WHERE id = :id
RETURNING sold, stock
"""


# ------------------------------------------------------------------------------
# Stock mutations (caller owns the transaction)
# ------------------------------------------------------------------------------

async def reserve(db: AsyncSession, category_id: int, qty: int) -> int:
    """
    Atomically count `qty` units as sold. Concurrent reservations cannot both
    pass the check because check and increment are one statement.
    Returns the remaining availability.
    """
    if qty < 1:
        raise ValidationError("quantity must be at least 1")

    row = (await db.execute(
        text(SQL_RESERVE), {"id": category_id, "q": qty}
    )).first()
    if row is None:
        current = (await db.execute(
            text("SELECT stock - sold FROM ticket_categories WHERE id=:id"),
            {"id": category_id},
        )).first()
        if current is None:
            raise TicketNotFound(category_id)
        raise InsufficientStock(category_id, qty, available=int(current[0]))

    sold, stock = int(row[0]), int(row[1])
    return stock - sold


async def release(db: AsyncSession, category_id: int, qty: int) -> int:
    """
    Give `qty` units back to the category. Returns remaining availability.
    """
    row = (await db.execute(
        text(SQL_RELEASE), {"id": category_id, "q": qty}
    )).first()
    if row is None:
        raise TicketNotFound(category_id)
    sold, stock = int(row[0]), int(row[1])
    return stock - sold


# ------------------------------------------------------------------------------
# Sale predicates (read-only, no locking)
# ------------------------------------------------------------------------------

def in_sale_window(category: TicketCategory, now: float) -> bool:
    start_ok = (category.sale_start_date is None
                or now >= category.sale_start_date)
    end_ok = category.sale_end_date is None or now <= category.sale_end_date
    return start_ok and end_ok


def is_on_sale(category: TicketCategory, now: float) -> bool:
    return (
        bool(category.is_active)
        and in_sale_window(category, now)
        and category.available > 0
    )


def check_on_sale(category: TicketCategory, now: float) -> None:
    """Raise the precise reason a category cannot be bought right now."""
    if not category.is_active:
        raise SaleNotActive(category.id)
    if not in_sale_window(category, now):
        raise SaleWindowClosed(category.id)
    if category.available <= 0:
        raise InsufficientStock(category.id, 1, available=category.available)


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def get_category(db: AsyncSession, category_id: int) -> TicketCategory:
    category = (await db.execute(
        select(TicketCategory)
        .where(TicketCategory.id == category_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if category is None:
        raise TicketNotFound(category_id)
    return category


async def list_on_sale(db: AsyncSession, now: float) -> List[TicketCategory]:
    """Active categories inside their sale window with stock left."""
    result = await db.execute(
        select(TicketCategory)
        .where(TicketCategory.is_active.is_(True))
        .where(
            (TicketCategory.sale_start_date.is_(None))
            | (TicketCategory.sale_start_date <= now)
        )
        .where(
            (TicketCategory.sale_end_date.is_(None))
            | (TicketCategory.sale_end_date >= now)
        )
        .where(TicketCategory.stock > TicketCategory.sold)
        .order_by(TicketCategory.created_at.desc(), TicketCategory.id.desc())
    )
    return list(result.scalars().all())


async def compute_inventory(db: AsyncSession, now: float) -> Dict[str, Any]:
    """
    Returns:
      {
        "<id>": { "name": ..., "stock": ..., "sold": ..., "available": ...,
                  "sold_out": ..., "on_sale": ..., "timestamp": ... },
        ...
      }
    """
    out: Dict[str, Any] = {}
    result = await db.execute(
        select(TicketCategory).order_by(TicketCategory.id)
    )
    for category in result.scalars():
        out[str(category.id)] = {
            "name": category.name,
            "stock": category.stock,
            "sold": category.sold,
            "available": category.available,
            "sold_out": category.available <= 0,
            "on_sale": is_on_sale(category, now),
            "timestamp": to_iso(now),
        }
    return out
