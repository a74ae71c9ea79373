from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, TypedDict
import base64
import hashlib
import hmac
import json
import uuid

import httpx

from .logs import get_logger
from .model.errors import GatewayCommunicationFailure, ValidationError
from .model.orm import Order, TicketCategory
from .model.customer import customer_view

log = get_logger(__name__)


# ----------------------------
# Status report (gateway -> core)
# ----------------------------
@dataclass(frozen=True)
class StatusReport:
    order_number: str
    transaction_status: str
    fraud_status: Optional[str] = None
    payment_type: Optional[str] = None
    transaction_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "StatusReport":
        order_number = payload.get("order_id")
        status = payload.get("transaction_status")
        if not order_number or not status:
            raise ValidationError(
                "order_id and transaction_status are required"
            )
        return cls(
            order_number=str(order_number),
            transaction_status=str(status).lower(),
            fraud_status=(
                str(payload["fraud_status"]).lower()
                if payload.get("fraud_status") else None
            ),
            payment_type=payload.get("payment_type"),
            transaction_id=payload.get("transaction_id"),
        )

    def fingerprint(self) -> str:
        raw = "|".join([
            self.order_number,
            self.transaction_status,
            self.fraud_status or "",
            self.transaction_id or "",
        ])
        return hashlib.sha256(raw.encode()).hexdigest()


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    token: str
    redirect_url: str


class PaymentAdapter(ABC):
    @abstractmethod
    async def create_session(
            self, order: Order, category: TicketCategory
    ) -> CreateSessionResult: ...

    # None when the gateway has no transaction for this order (yet)
    @abstractmethod
    async def fetch_status(self, order_number: str) -> Optional[StatusReport]:
        ...

    @abstractmethod
    def verify_notification(
            self, payload: bytes, headers: Dict[str, str]
    ) -> StatusReport: ...


def _parse_json(payload: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON")
    return body


# ----------------------------
# Midtrans (Snap + Core status API)
# ----------------------------
SNAP_URL = "https://app.midtrans.com/snap/v1/transactions"
SNAP_SANDBOX_URL = "https://app.sandbox.midtrans.com/snap/v1/transactions"
API_URL = "https://api.midtrans.com/v2"
API_SANDBOX_URL = "https://api.sandbox.midtrans.com/v2"


class MidtransGateway(PaymentAdapter):

    def __init__(self, http: httpx.AsyncClient, server_key: str,
                 is_production: bool = False,
                 item_category: str = "Fun Run Ticket") -> None:
        if not server_key:
            raise RuntimeError("Midtrans server key not configured")
        self.http = http
        self.server_key = server_key
        self.snap_url = SNAP_URL if is_production else SNAP_SANDBOX_URL
        self.api_url = API_URL if is_production else API_SANDBOX_URL
        self.item_category = item_category

    def _auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.server_key, "")

    def session_params(self, order: Order,
                       category: TicketCategory) -> Dict[str, Any]:
        customer = customer_view(order.form_data)
        return {
            "transaction_details": {
                "order_id": order.order_number,
                "gross_amount": int(order.total_price),
            },
            "customer_details": {
                "first_name": customer["name"],
                "email": customer["email"],
                "phone": customer["phone"],
            },
            "item_details": [{
                "id": str(category.id),
                "price": int(order.unit_price),
                "quantity": order.quantity,
                "name": category.name,
                "category": self.item_category,
            }],
        }

    async def create_session(
            self, order: Order, category: TicketCategory
    ) -> CreateSessionResult:
        try:
            r = await self.http.post(
                self.snap_url,
                json=self.session_params(order, category),
                auth=self._auth(),
                headers={"accept": "application/json"},
            )
            r.raise_for_status()
            body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            log.error("snap token creation failed for %s: %s",
                      order.order_number, e)
            raise GatewayCommunicationFailure(
                f"Error creating Snap token: {e}"
            )
        return {"token": body["token"], "redirect_url": body["redirect_url"]}

    async def fetch_status(self, order_number: str) -> Optional[StatusReport]:
        try:
            r = await self.http.get(
                f"{self.api_url}/{order_number}/status",
                auth=self._auth(),
                headers={"accept": "application/json"},
            )
            r.raise_for_status()
            body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            log.error("status check failed for %s: %s", order_number, e)
            raise GatewayCommunicationFailure(
                f"Unable to check transaction status: {e}"
            )
        # the status API answers 200 with status_code "404" for unknown ids
        if str(body.get("status_code")) == "404":
            return None
        log.info("transaction status for %s: %s", order_number,
                 body.get("transaction_status"))
        return StatusReport.from_payload(body)

    def signature(self, body: Dict[str, Any]) -> str:
        raw = (
            f"{body.get('order_id', '')}{body.get('status_code', '')}"
            f"{body.get('gross_amount', '')}{self.server_key}"
        )
        return hashlib.sha512(raw.encode()).hexdigest()

    def verify_notification(
            self, payload: bytes, headers: Dict[str, str]
    ) -> StatusReport:
        body = _parse_json(payload)
        sig = body.get("signature_key")
        if not sig or not hmac.compare_digest(self.signature(body), sig):
            raise ValidationError("Invalid signature")
        return StatusReport.from_payload(body)


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    In-process stand-in for the gateway. Notifications are signed with
    HMAC-SHA256 over the body; emitted statuses are remembered so the active
    status check has something to read.
    """

    def __init__(self, secret: str) -> None:
        self.secret = secret
        self.transactions: Dict[str, StatusReport] = {}

    async def create_session(
            self, order: Order, category: TicketCategory
    ) -> CreateSessionResult:
        token = f"mock_{uuid.uuid4().hex}"
        return {"token": token,
                "redirect_url": f"/mockpay/{order.order_number}"}

    async def fetch_status(self, order_number: str) -> Optional[StatusReport]:
        return self.transactions.get(order_number)

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def emit(self, report: StatusReport) -> bytes:
        """Remember `report` and return the signed notification body."""
        self.transactions[report.order_number] = report
        return json.dumps({
            "order_id": report.order_number,
            "transaction_status": report.transaction_status,
            "fraud_status": report.fraud_status,
            "payment_type": report.payment_type,
            "transaction_id": report.transaction_id,
        }).encode()

    def verify_notification(
            self, payload: bytes, headers: Dict[str, str]
    ) -> StatusReport:
        sig = headers.get("x-mockpay-signature")
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise ValidationError("Invalid signature")
        return StatusReport.from_payload(_parse_json(payload))
