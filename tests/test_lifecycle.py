import pytest

from conftest import NOW
from funrun import orders
from funrun.model import lifecycle
from funrun.model.errors import (
    AlreadyInTargetState, InsufficientStock, InvalidTransition,
)
from funrun.model.lifecycle import Source
from funrun.model.status import OrderStatus, payment_status


async def _change(db, order_number, target, **kw):
    async with db.session() as s:
        return await orders.change_status(s, order_number, target,
                                          now=NOW, **kw)


async def _gateway(db, order_number, target):
    async with db.sessions() as s:
        async with s.begin():
            order = await lifecycle.load_order(s, order_number)
            return await lifecycle.transition(s, order, target, now=NOW,
                                              source=Source.GATEWAY)


class TestPaid:

    async def test_paid_assigns_bib_and_keeps_stock(self, db, add_category,
                                                    buy, fetch_order,
                                                    fetch_category):
        cid = await add_category(stock=5)
        r = await buy(cid)
        assert (await fetch_category(cid)).sold == 1

        async with db.session() as s:
            t = await orders.mark_paid(s, r.order_number, now=NOW + 5,
                                       method="bank_transfer",
                                       reference="TX-1")
        assert t.previous == "awaiting_payment"
        assert t.bib_number == "00001"

        order = await fetch_order(r.order_number)
        assert order.status == "paid"
        assert order.bib_number == "00001"
        assert order.paid_at == NOW + 5
        assert order.payment_method == "bank_transfer"
        assert order.payment_reference == "TX-1"
        assert (await fetch_category(cid)).sold == 1

    async def test_paid_twice_is_a_noop(self, db, add_category, buy,
                                        fetch_order):
        cid = await add_category()
        r = await buy(cid)
        await _change(db, r.order_number, OrderStatus.PAID)
        with pytest.raises(AlreadyInTargetState):
            await _change(db, r.order_number, OrderStatus.PAID)
        assert (await fetch_order(r.order_number)).bib_number == "00001"

    async def test_bibs_follow_payment_order(self, db, add_category, buy):
        cid = await add_category()
        first = await buy(cid)
        second = await buy(cid)
        t2 = await _change(db, second.order_number, OrderStatus.PAID)
        t1 = await _change(db, first.order_number, OrderStatus.PAID)
        assert (t2.bib_number, t1.bib_number) == ("00001", "00002")


class TestCancel:

    async def test_cancel_releases_stock_once(self, db, add_category, buy,
                                              fetch_category, fetch_order):
        cid = await add_category(stock=5)
        r = await buy(cid)
        await _change(db, r.order_number, OrderStatus.CANCELLED)
        assert (await fetch_category(cid)).sold == 0

        with pytest.raises(AlreadyInTargetState):
            await _change(db, r.order_number, OrderStatus.CANCELLED)
        assert (await fetch_category(cid)).sold == 0
        assert (await fetch_order(r.order_number)).stock_held is False

    async def test_cancel_paid_order_clears_bib(self, db, add_category, buy,
                                                fetch_category, fetch_order):
        cid = await add_category(stock=5)
        r = await buy(cid)
        await _change(db, r.order_number, OrderStatus.PAID)
        async with db.session() as s:
            await orders.cancel(s, r.order_number, now=NOW)

        order = await fetch_order(r.order_number)
        assert order.status == "cancelled"
        assert order.bib_number is None
        assert order.paid_at is None
        assert (await fetch_category(cid)).sold == 0

    async def test_paid_after_cancel_holds_stock_again(self, db,
                                                       add_category, buy,
                                                       fetch_category):
        cid = await add_category(stock=5)
        r = await buy(cid)
        await _change(db, r.order_number, OrderStatus.CANCELLED)
        t = await _change(db, r.order_number, OrderStatus.PAID)
        assert t.bib_number == "00001"
        assert (await fetch_category(cid)).sold == 1

    async def test_paid_after_cancel_needs_stock(self, db, add_category,
                                                 buy, fetch_order,
                                                 fetch_category):
        cid = await add_category(stock=1)
        r = await buy(cid)
        await _change(db, r.order_number, OrderStatus.CANCELLED)
        await buy(cid)  # takes the last unit

        with pytest.raises(InsufficientStock):
            await _change(db, r.order_number, OrderStatus.PAID)
        order = await fetch_order(r.order_number)
        assert order.status == "cancelled"
        assert order.bib_number is None
        assert (await fetch_category(cid)).sold == 1


class TestAdminOverride:

    async def test_leaving_paid_clears_bib_and_releases(self, db,
                                                        add_category, buy,
                                                        fetch_order,
                                                        fetch_category):
        cid = await add_category(stock=5)
        r = await buy(cid)
        await _change(db, r.order_number, OrderStatus.PAID)
        t = await _change(db, r.order_number, OrderStatus.PENDING,
                          notes="payment reversed")
        assert (t.previous, t.status) == ("paid", "pending")

        order = await fetch_order(r.order_number)
        assert order.bib_number is None
        assert order.paid_at is None
        assert order.notes == "payment reversed"
        assert (await fetch_category(cid)).sold == 0

        # a later settlement picks the stock up again
        t = await _gateway(db, r.order_number, OrderStatus.PAID)
        assert t.bib_number == "00001"
        assert (await fetch_category(cid)).sold == 1

    async def test_relabel_keeps_stock(self, db, add_category, buy,
                                       fetch_order, fetch_category):
        cid = await add_category(stock=5)
        r = await buy(cid)
        await _gateway(db, r.order_number, OrderStatus.PENDING)
        await _gateway(db, r.order_number, OrderStatus.CHALLENGE)
        order = await fetch_order(r.order_number)
        assert order.status == "challenge"
        assert order.bib_number is None
        assert (await fetch_category(cid)).sold == 1


class TestGatewaySource:

    @pytest.mark.parametrize("terminal", ["paid", "cancelled", "expired",
                                          "denied"])
    async def test_terminal_orders_reject_gateway_reports(
            self, db, add_category, add_order, terminal):
        cid = await add_category()
        bib_number = "00001" if terminal == "paid" else None
        n = await add_order(cid, status=terminal, bib_number=bib_number)
        with pytest.raises(InvalidTransition):
            await _gateway(db, n, OrderStatus.PENDING)

    async def test_unknown_order(self, db):
        from funrun.model.errors import OrderNotFound
        with pytest.raises(OrderNotFound):
            await _gateway(db, "FR-20251009-NOPE00", OrderStatus.PAID)


class TestRacePack:

    async def _paid(self, db, add_category, buy):
        cid = await add_category()
        r = await buy(cid)
        await _change(db, r.order_number, OrderStatus.PAID)
        return r.order_number

    async def test_collect_requires_paid(self, db, add_category, buy):
        cid = await add_category()
        r = await buy(cid)
        async with db.session() as s:
            with pytest.raises(InvalidTransition):
                await orders.race_pack(s, r.order_number, "collect", now=NOW)

    async def test_collect_defaults_collector(self, db, add_category, buy):
        n = await self._paid(db, add_category, buy)
        async with db.session() as s:
            view = await orders.race_pack(s, n, "collect", now=NOW + 1)
        assert view["race_pack_collected"] is True
        assert view["race_pack_collected_by"] == "Admin"
        assert view["race_pack_collected_at"] is not None
        assert view["bib_number"] == "00001"

    async def test_toggle_flips_and_keeps_bib(self, db, add_category, buy,
                                              fetch_order):
        n = await self._paid(db, add_category, buy)
        async with db.session() as s:
            view = await orders.race_pack(s, n, "toggle", now=NOW,
                                          collected_by="Desk 3")
            assert view["race_pack_collected_by"] == "Desk 3"
            view = await orders.race_pack(s, n, "toggle", now=NOW)
        assert view["race_pack_collected"] is False
        assert view["race_pack_collected_by"] is None
        order = await fetch_order(n)
        assert order.bib_number == "00001"
        assert order.status == "paid"

    async def test_uncollect_allowed_after_cancel(self, db, add_category,
                                                  buy):
        n = await self._paid(db, add_category, buy)
        async with db.session() as s:
            await orders.race_pack(s, n, "collect", now=NOW)
            await orders.cancel(s, n, now=NOW)
            view = await orders.race_pack(s, n, "uncollect", now=NOW)
        assert view["race_pack_collected"] is False


@pytest.mark.parametrize("status,expected", [
    ("awaiting_payment", "pending"),
    ("pending", "pending"),
    ("challenge", "pending"),
    ("paid", "paid"),
    ("cancelled", "failed"),
    ("denied", "failed"),
    ("expired", "expired"),
    ("something-else", "pending"),
])
def test_payment_status(status, expected):
    assert payment_status(status) == expected
