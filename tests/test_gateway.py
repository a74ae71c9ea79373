import hashlib
import json

import httpx
import pytest

from funrun.gateway import MidtransGateway, MockPay, StatusReport
from funrun.model.errors import GatewayCommunicationFailure, ValidationError
from funrun.model.orm import Order, TicketCategory


def _order():
    return Order(order_number="FR-20251009-ABC123", ticket_id=2, quantity=1,
                 unit_price=200000, total_price=200000,
                 form_data={"name": "Rina", "email": "rina@example.com"})


def _category():
    return TicketCategory(id=2, name="Fun Run 10K", price=200000, stock=300,
                          sold=0)


def _midtrans(handler) -> MidtransGateway:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MidtransGateway(http, "SB-server-key")


class TestStatusReport:

    def test_from_payload_normalises_case(self):
        r = StatusReport.from_payload({
            "order_id": "FR-1", "transaction_status": "Capture",
            "fraud_status": "ACCEPT", "payment_type": "credit_card",
        })
        assert r.transaction_status == "capture"
        assert r.fraud_status == "accept"

    def test_from_payload_requires_ids(self):
        with pytest.raises(ValidationError):
            StatusReport.from_payload({"transaction_status": "settlement"})


class TestMockPay:

    async def test_signed_notification_verifies(self):
        mock = MockPay("s3cret")
        body = mock.emit(StatusReport("FR-1", "settlement"))
        report = mock.verify_notification(
            body, {"x-mockpay-signature": mock.sign(body)}
        )
        assert report.order_number == "FR-1"
        assert (await mock.fetch_status("FR-1")).transaction_status \
            == "settlement"

    def test_bad_signature(self):
        mock = MockPay("s3cret")
        body = mock.emit(StatusReport("FR-1", "settlement"))
        with pytest.raises(ValidationError):
            mock.verify_notification(body, {"x-mockpay-signature": "nope"})
        with pytest.raises(ValidationError):
            mock.verify_notification(body, {})

    async def test_unknown_transaction(self):
        assert await MockPay("s").fetch_status("FR-none") is None


class TestMidtrans:

    async def test_create_session(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={
                "token": "tok-1",
                "redirect_url": "https://app.sandbox.midtrans.com/x",
            })

        result = await _midtrans(handler).create_session(_order(),
                                                         _category())
        assert result["token"] == "tok-1"
        assert "sandbox" in seen["url"]
        details = seen["body"]["transaction_details"]
        assert details == {"order_id": "FR-20251009-ABC123",
                           "gross_amount": 200000}
        assert seen["body"]["customer_details"]["phone"] == "N/A"

    async def test_create_session_failure(self):
        def handler(request):
            return httpx.Response(500, json={"error": "boom"})

        with pytest.raises(GatewayCommunicationFailure):
            await _midtrans(handler).create_session(_order(), _category())

    async def test_fetch_status(self):
        def handler(request):
            assert request.url.path.endswith("/FR-1/status")
            return httpx.Response(200, json={
                "status_code": "200", "order_id": "FR-1",
                "transaction_status": "settlement",
                "payment_type": "bank_transfer", "transaction_id": "T-9",
            })

        report = await _midtrans(handler).fetch_status("FR-1")
        assert report.transaction_status == "settlement"
        assert report.transaction_id == "T-9"

    async def test_fetch_status_unknown_transaction(self):
        def handler(request):
            return httpx.Response(200, json={
                "status_code": "404",
                "status_message": "Transaction doesn't exist.",
            })

        assert await _midtrans(handler).fetch_status("FR-1") is None

    async def test_fetch_status_network_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable")

        with pytest.raises(GatewayCommunicationFailure):
            await _midtrans(handler).fetch_status("FR-1")

    def test_notification_signature(self):
        gw = _midtrans(lambda request: httpx.Response(200))
        body = {"order_id": "FR-1", "status_code": "200",
                "gross_amount": "150000.00",
                "transaction_status": "settlement"}
        body["signature_key"] = hashlib.sha512(
            b"FR-1200150000.00SB-server-key"
        ).hexdigest()
        report = gw.verify_notification(json.dumps(body).encode(), {})
        assert report.transaction_status == "settlement"

        body["signature_key"] = "0" * 128
        with pytest.raises(ValidationError):
            gw.verify_notification(json.dumps(body).encode(), {})

    def test_notification_rejects_garbage(self):
        gw = _midtrans(lambda request: httpx.Response(200))
        with pytest.raises(ValidationError):
            gw.verify_notification(b"not json", {})
