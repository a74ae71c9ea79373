# model/lifecycle.py
"""
Order state machine.

Every status change goes through `transition`, which applies the side effects
tied to the target status:
- paid:      bib number allocated (once), stock re-held if it was released
- cancelled: stock released, bib number and paid_at cleared
- leaving paid (admin only): bib number and paid_at cleared, stock released
- anything else: relabel only

The caller owns the transaction and, for transitions that may touch stock or
bib numbers, holds Database.exclusive() around it.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import bib, inventory
from .errors import AlreadyInTargetState, InvalidTransition, OrderNotFound
from .orm import Order
from .status import OrderStatus, TERMINAL

DEFAULT_COLLECTOR = "Admin"


class Source(str, Enum):
    GATEWAY = "gateway"
    ADMIN = "admin"


@dataclass(frozen=True)
class Transition:
    order_number: str
    previous: str
    status: str
    bib_number: Optional[str]


def needs_exclusive(target: OrderStatus | str, source: Source) -> bool:
    target = OrderStatus(target)
    if source is Source.ADMIN:
        return True
    return target in (OrderStatus.PAID, OrderStatus.CANCELLED)


async def load_order(db: AsyncSession, order_number: str,
                     for_update: bool = True) -> Order:
    stmt = (
        select(Order)
        .where(Order.order_number == order_number)
        .execution_options(populate_existing=True)
    )
    if for_update:
        # no-op on SQLite, where BEGIN IMMEDIATE already holds the write lock
        stmt = stmt.with_for_update()
    order = (await db.execute(stmt)).scalar_one_or_none()
    if order is None:
        raise OrderNotFound(order_number)
    return order


async def transition(
    db: AsyncSession,
    order: Order,
    target: OrderStatus | str,
    *,
    now: float,
    method: Optional[str] = None,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    source: Source = Source.GATEWAY,
) -> Transition:
    target = OrderStatus(target)
    current = OrderStatus(order.status)

    if current is target:
        raise AlreadyInTargetState(order.order_number, target.value)
    if source is Source.GATEWAY and current in TERMINAL:
        raise InvalidTransition(
            f"{current.value} order does not accept gateway status "
            f"{target.value}"
        )

    if target is OrderStatus.PAID:
        await _mark_paid(db, order, now, method, reference)
    elif target is OrderStatus.CANCELLED:
        await _cancel(db, order)
    else:
        if current is OrderStatus.PAID:
            await _unpay(db, order)
        order.status = target.value
        if method is not None:
            order.payment_method = method
        if reference is not None:
            order.payment_reference = reference

    if notes is not None:
        order.notes = notes
    order.updated_at = now
    return Transition(
        order_number=order.order_number,
        previous=current.value,
        status=order.status,
        bib_number=order.bib_number,
    )


async def _mark_paid(db: AsyncSession, order: Order, now: float,
                     method: Optional[str], reference: Optional[str]) -> None:
    if not order.stock_held:
        await inventory.reserve(db, order.ticket_id, order.quantity)
        order.stock_held = True
    if not order.bib_number:
        order.bib_number = await bib.allocate(db)
    order.status = OrderStatus.PAID.value
    order.payment_method = method
    order.payment_reference = reference
    order.paid_at = now


async def _release_stock(db: AsyncSession, order: Order) -> None:
    if order.stock_held:
        await inventory.release(db, order.ticket_id, order.quantity)
        order.stock_held = False


async def _cancel(db: AsyncSession, order: Order) -> None:
    await _release_stock(db, order)
    order.status = OrderStatus.CANCELLED.value
    order.bib_number = None
    order.paid_at = None


async def _unpay(db: AsyncSession, order: Order) -> None:
    await _release_stock(db, order)
    order.bib_number = None
    order.paid_at = None


# ----------------------------
# Race pack pickup (only meaningful while paid)
# ----------------------------
def collect_race_pack(order: Order, now: float,
                      collected_by: Optional[str] = None) -> None:
    if order.status != OrderStatus.PAID.value:
        raise InvalidTransition(
            "race pack can only be collected for paid orders"
        )
    order.race_pack_collected = True
    order.race_pack_collected_at = now
    order.race_pack_collected_by = collected_by or DEFAULT_COLLECTOR
    order.updated_at = now


def uncollect_race_pack(order: Order, now: float) -> None:
    order.race_pack_collected = False
    order.race_pack_collected_at = None
    order.race_pack_collected_by = None
    order.updated_at = now


def toggle_race_pack(order: Order, now: float,
                     collected_by: Optional[str] = None) -> bool:
    if order.status != OrderStatus.PAID.value:
        raise InvalidTransition(
            "race pack can only be collected for paid orders"
        )
    if order.race_pack_collected:
        uncollect_race_pack(order, now)
    else:
        collect_race_pack(order, now, collected_by)
    return bool(order.race_pack_collected)
