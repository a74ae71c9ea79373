"""Payment reconciliation.

Push (gateway webhook) and pull (active status check) both end up in
`apply_report`, which maps the gateway's transaction status onto the order
lifecycle. Reports are fingerprinted; a fingerprint that was already processed
is acknowledged without touching the order again.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .gateway import PaymentAdapter, StatusReport
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .logs import get_logger
from .model import lifecycle
from .model.errors import (
    AlreadyInTargetState, InsufficientStock, InvalidTransition,
)
from .model.lifecycle import Source
from .model.status import OrderStatus

log = get_logger(__name__)

# session -> NotificationLog (see model.notifications.new_store)
StoreFactory = Callable[[AsyncSession], object]

APPLIED = "applied"
IDEMPOTENT = "idempotent"
DUPLICATE = "duplicate"
IGNORED = "ignored"
NO_TRANSACTION = "no_transaction"
# paid report for an order whose stock is gone; needs manual follow-up
CONFLICT = "conflict"


@dataclass(frozen=True)
class Reconciled:
    order_number: str
    outcome: str
    status: Optional[str] = None
    previous: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.outcome == APPLIED


_SIMPLE = {
    "settlement": OrderStatus.PAID,
    "pending": OrderStatus.PENDING,
    "deny": OrderStatus.DENIED,
    "expire": OrderStatus.EXPIRED,
    "cancel": OrderStatus.CANCELLED,
}

_CAPTURE = {
    "challenge": OrderStatus.CHALLENGE,
    "accept": OrderStatus.PAID,
}


def resolve(report: StatusReport) -> Optional[OrderStatus]:
    """Target status for a gateway report, None when it calls for no action."""
    status = report.transaction_status
    if status == "capture":
        return _CAPTURE.get(report.fraud_status or "")
    return _SIMPLE.get(status)


async def apply_report(
    db: GatedAsyncSession,
    report: StatusReport,
    *,
    now: float,
    notifications: Optional[StoreFactory] = None,
    acknowledge_conflicts: bool = False,
) -> Reconciled:
    """
    Apply one gateway report. Raises OrderNotFound for unknown orders; never
    creates one. Stale reports (order already terminal) and reports for the
    status the order already has are acknowledged without a change.

    A paid report that needs stock back (the order was moved off paid by an
    admin and the category sold out since) raises InsufficientStock, unless
    `acknowledge_conflicts` is set: then it is logged and answered with the
    CONFLICT outcome, and the order keeps its status.
    """
    target = resolve(report)
    if target is None:
        log.info("no action for %s: status=%s fraud=%s",
                 report.order_number, report.transaction_status,
                 report.fraud_status)
        return Reconciled(report.order_number, IGNORED)

    async with db.gated():
        if lifecycle.needs_exclusive(target, Source.GATEWAY):
            async with db.exclusive():
                result, store = await _apply(db, report, target, now,
                                             notifications,
                                             acknowledge_conflicts)
        else:
            result, store = await _apply(db, report, target, now,
                                         notifications,
                                         acknowledge_conflicts)

    # stores outside the database are marked once the transition is durable
    if store is not None and not store.transactional \
            and result.outcome != DUPLICATE:
        await store.mark(report.fingerprint(), report.order_number, now)
    return result


async def _apply(db: GatedAsyncSession, report: StatusReport,
                 target: OrderStatus, now: float,
                 notifications: Optional[StoreFactory],
                 acknowledge_conflicts: bool = False):
    store = notifications(db.session) if notifications else None
    fp = report.fingerprint()
    try:
        async with db.session.begin():
            if store is not None and await store.seen(fp):
                log.info("duplicate report for %s (%s)", report.order_number,
                         report.transaction_status)
                return Reconciled(report.order_number, DUPLICATE), store

            order = await lifecycle.load_order(db.session, report.order_number)
            previous = order.status
            try:
                async with timeit(f"reconcile.{target.value}"):
                    await lifecycle.transition(
                        db.session, order, target, now=now,
                        method=report.payment_type,
                        reference=report.transaction_id,
                        source=Source.GATEWAY,
                    )
                outcome = APPLIED
            except AlreadyInTargetState:
                outcome = IDEMPOTENT
            except InvalidTransition as e:
                log.info("stale report for %s ignored: %s",
                         report.order_number, e.message)
                outcome = IGNORED
            except InsufficientStock:
                if not acknowledge_conflicts:
                    raise
                log.error("paid report for %s (txn %s) has no stock left, "
                          "order stays %s", report.order_number,
                          report.transaction_id, order.status)
                outcome = CONFLICT

            if store is not None and store.transactional:
                await store.mark(fp, report.order_number, now)
                # surface a concurrent duplicate inside this block
                await db.session.flush()
    except IntegrityError:
        log.info("duplicate report for %s lost the race",
                 report.order_number)
        return Reconciled(report.order_number, DUPLICATE), store

    if outcome == APPLIED:
        log.info("order %s: %s -> %s (gateway %s)", report.order_number,
                 previous, order.status, report.transaction_status)
    return Reconciled(report.order_number, outcome, order.status,
                      previous), store


async def check_status(
    db: GatedAsyncSession,
    gateway: PaymentAdapter,
    order_number: str,
    *,
    now: float,
    notifications: Optional[StoreFactory] = None,
) -> Reconciled:
    """Ask the gateway for the order's transaction and apply what it says."""
    async with db.gated():
        async with db.session.begin():
            order = await lifecycle.load_order(
                db.session, order_number, for_update=False
            )
            current = order.status

    async with timeit("gateway.fetch_status"):
        report = await gateway.fetch_status(order_number)
    if report is None:
        return Reconciled(order_number, NO_TRANSACTION, current)
    return await apply_report(db, report, now=now,
                              notifications=notifications)
