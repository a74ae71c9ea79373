"""Order operations: purchase, status changes, race pack pickup.

Every public function here opens its own transaction through the gated
session, so a domain error raised half-way rolls back everything it touched.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import tzinfo, timezone
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from .gateway import PaymentAdapter
from .helpers import is_valid_email, to_iso
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .logs import get_logger
from .model import inventory, lifecycle, ordernumber
from .model.customer import customer_view
from .model.errors import (
    DuplicateGenerationExhausted, DuplicateRegistrant,
    GatewayCommunicationFailure, InvalidTransition, ValidationError,
)
from .model.lifecycle import Source, Transition
from .model.orm import Order, TicketCategory
from .model.status import LIVE, OrderStatus, payment_status

log = get_logger(__name__)

# pg_advisory_xact_lock namespace for the duplicate registrant check
REGISTRANT_LOCK_KEY = 0x52454721


@dataclass(frozen=True)
class PurchaseResult:
    order_number: str
    payment_token: str
    redirect_url: str
    total_price: int


# ----------------------------
# Purchase
# ----------------------------
def validate_purchase(quantity: int, form_data: Mapping[str, Any],
                      max_quantity: int) -> None:
    if not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("quantity must be at least 1")
    if quantity > max_quantity:
        raise ValidationError(
            f"at most {max_quantity} ticket(s) per order"
        )
    if not isinstance(form_data, Mapping):
        raise ValidationError("form_data must be an object")
    email = form_data.get("email")
    if email and not is_valid_email(email):
        raise ValidationError("email must be a valid email address")


async def _registrant_exists(db, field: str, value: Any) -> bool:
    row = (await db.execute(
        select(Order.id)
        .where(Order.form_data[field].as_string() == str(value))
        .where(Order.status.in_([s.value for s in LIVE]))
        .limit(1)
    )).first()
    return row is not None


async def _lock_registrant(db, field: str, value: Any) -> None:
    # SQLite is single-writer already (BEGIN IMMEDIATE); on PostgreSQL the
    # check and the insert must not interleave across workers
    if db.bind.dialect.name == "postgresql":
        await db.execute(
            text("SELECT pg_advisory_xact_lock(CAST(:ns AS integer), "
                 "hashtext(CAST(:v AS text)))"),
            {"ns": REGISTRANT_LOCK_KEY, "v": f"{field}={value}"},
        )


async def _create_order(db, category_id: int, quantity: int,
                        form_data: Mapping[str, Any], *, now: float,
                        tz: tzinfo, unique_field: Optional[str]):
    async with db.begin():
        category = await inventory.get_category(db, category_id)
        inventory.check_on_sale(category, now)

        if unique_field and form_data.get(unique_field):
            value = form_data[unique_field]
            await _lock_registrant(db, unique_field, value)
            if await _registrant_exists(db, unique_field, value):
                raise DuplicateRegistrant(unique_field)

        async with timeit("inventory.reserve"):
            await inventory.reserve(db, category.id, quantity)

        order = Order(
            order_number=await ordernumber.generate(db, now, tz),
            ticket_id=category.id,
            quantity=quantity,
            unit_price=category.price,
            total_price=category.price * quantity,
            status=OrderStatus.AWAITING_PAYMENT.value,
            stock_held=True,
            form_data=dict(form_data),
            race_pack_collected=False,
            created_at=now,
            updated_at=now,
        )
        db.add(order)
        # unique order number violations surface here, inside the block
        await db.flush()
    return category, order


async def purchase(
    db: GatedAsyncSession,
    gateway: PaymentAdapter,
    category_id: int,
    quantity: int,
    form_data: Mapping[str, Any],
    *,
    now: float,
    tz: tzinfo = timezone.utc,
    max_quantity: int = 1,
    unique_field: Optional[str] = None,
) -> PurchaseResult:
    """
    Reserve stock, create the order in awaiting_payment and open a payment
    session. Nothing is persisted unless the reservation succeeded; if the
    gateway fails afterwards the new order is cancelled again.
    """
    validate_purchase(quantity, form_data, max_quantity)

    attempts = ordernumber.ORDER_NUMBER_MAX_ATTEMPTS
    async with db.gated():
        for attempt in range(1, attempts + 1):
            try:
                category, order = await _create_order(
                    db.session, category_id, quantity, form_data,
                    now=now, tz=tz, unique_field=unique_field,
                )
                break
            except IntegrityError:
                # a concurrent purchase took the same order number between
                # the check and the insert; the rollback returned the stock
                log.warning("order number collision (attempt %s/%s)",
                            attempt, attempts)
        else:
            raise DuplicateGenerationExhausted("order number", attempts)
    order_number = order.order_number

    log.info("order %s created for ticket %s (qty %s)",
             order_number, category.id, quantity)

    try:
        async with timeit("gateway.create_session"):
            session = await gateway.create_session(order, category)
    except GatewayCommunicationFailure:
        log.warning("payment session failed, cancelling %s", order_number)
        await change_status(db, order_number, OrderStatus.CANCELLED,
                            now=now, source=Source.ADMIN,
                            notes="payment session could not be created")
        raise

    return PurchaseResult(
        order_number=order_number,
        payment_token=session["token"],
        redirect_url=session["redirect_url"],
        total_price=order.total_price,
    )


async def renew_payment_session(
    db: GatedAsyncSession, gateway: PaymentAdapter, order_number: str
) -> Dict[str, str]:
    """Fresh payment session for an order that has not been paid yet."""
    async with db.gated():
        async with db.session.begin():
            order = await lifecycle.load_order(
                db.session, order_number, for_update=False
            )
            category = await inventory.get_category(
                db.session, order.ticket_id
            )
    if order.status not in (OrderStatus.AWAITING_PAYMENT.value,
                            OrderStatus.PENDING.value):
        raise InvalidTransition(
            f"{order.status} order cannot be paid again"
        )
    async with timeit("gateway.create_session"):
        return await gateway.create_session(order, category)


# ----------------------------
# Status changes
# ----------------------------
async def change_status(
    db: GatedAsyncSession,
    order_number: str,
    target: OrderStatus | str,
    *,
    now: float,
    method: Optional[str] = None,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    source: Source = Source.ADMIN,
) -> Transition:
    """
    Single entry point for status changes outside the gateway path
    (mark-paid callback, admin override, cancellation).
    Raises AlreadyInTargetState when there is nothing to do.
    """
    target = OrderStatus(target)
    async with db.gated():
        if lifecycle.needs_exclusive(target, source):
            async with db.exclusive():
                return await _change_status(
                    db, order_number, target, now=now, method=method,
                    reference=reference, notes=notes, source=source,
                )
        return await _change_status(
            db, order_number, target, now=now, method=method,
            reference=reference, notes=notes, source=source,
        )


async def _change_status(db: GatedAsyncSession, order_number: str,
                         target: OrderStatus, **kw) -> Transition:
    async with db.session.begin():
        order = await lifecycle.load_order(db.session, order_number)
        async with timeit(f"lifecycle.{target.value}"):
            result = await lifecycle.transition(db.session, order, target,
                                                **kw)
    log.info("order %s: %s -> %s (%s)", order_number, result.previous,
             result.status, kw.get("source", Source.ADMIN).value)
    return result


async def mark_paid(db: GatedAsyncSession, order_number: str, *, now: float,
                    method: Optional[str] = None,
                    reference: Optional[str] = None) -> Transition:
    return await change_status(
        db, order_number, OrderStatus.PAID, now=now, method=method,
        reference=reference, source=Source.ADMIN,
    )


async def cancel(db: GatedAsyncSession, order_number: str, *,
                 now: float) -> Transition:
    return await change_status(
        db, order_number, OrderStatus.CANCELLED, now=now, source=Source.ADMIN
    )


# ----------------------------
# Race pack pickup
# ----------------------------
async def race_pack(db: GatedAsyncSession, order_number: str, action: str,
                    *, now: float,
                    collected_by: Optional[str] = None) -> Dict[str, Any]:
    """action: 'collect' | 'uncollect' | 'toggle'"""
    if action not in ("collect", "uncollect", "toggle"):
        raise ValidationError("action must be collect, uncollect or toggle")
    async with db.gated():
        async with db.session.begin():
            order = await lifecycle.load_order(db.session, order_number)
            if action == "collect":
                lifecycle.collect_race_pack(order, now, collected_by)
            elif action == "uncollect":
                lifecycle.uncollect_race_pack(order, now)
            else:
                lifecycle.toggle_race_pack(order, now, collected_by)
    return order_view(order)


# ----------------------------
# Read
# ----------------------------
async def get_order(db: GatedAsyncSession, order_number: str) -> Order:
    async with db.gated():
        async with db.session.begin():
            return await lifecycle.load_order(
                db.session, order_number, for_update=False
            )


def order_view(order: Order,
               category: Optional[TicketCategory] = None) -> Dict[str, Any]:
    out = {
        "order_number": order.order_number,
        "bib_number": order.bib_number,
        "status": order.status,
        "payment_status": payment_status(order.status),
        "ticket_id": order.ticket_id,
        "quantity": order.quantity,
        "unit_price": order.unit_price,
        "total_price": order.total_price,
        "payment_method": order.payment_method,
        "payment_reference": order.payment_reference,
        "paid_at": to_iso(order.paid_at),
        "customer": customer_view(order.form_data),
        "race_pack_collected": bool(order.race_pack_collected),
        "race_pack_collected_at": to_iso(order.race_pack_collected_at),
        "race_pack_collected_by": order.race_pack_collected_by,
        "can_download": order.status == OrderStatus.PAID.value,
    }
    if category is not None:
        out["ticket_name"] = category.name
    return out


async def describe_order(db: GatedAsyncSession,
                         order_number: str) -> Dict[str, Any]:
    """order_view with the ticket name, as shown on the order lookup page."""
    async with db.gated():
        async with db.session.begin():
            order = await lifecycle.load_order(
                db.session, order_number, for_update=False
            )
            category = await inventory.get_category(
                db.session, order.ticket_id
            )
    return order_view(order, category)
