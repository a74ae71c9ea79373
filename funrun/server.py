from __future__ import annotations
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from . import config, orders, reconcile
from .gateway import MidtransGateway, MockPay, PaymentAdapter, StatusReport
from .helpers import ct_equal, now_ts, to_iso
from .infra.sql import Database, GatedAsyncSession, make_async_engine
from .infra.timings import summary, timeit
from .logs import get_logger, setup_logging
from .model import inventory
from .model.errors import (
    AdminRequired, DomainError, ErrorCode, OrderNotFound, ValidationError,
)
from .model.notifications import new_store
from .model.orm import Base
from .model.status import OrderStatus, payment_status
from .seed import seed_categories

log = get_logger(__name__)

HTTP_STATUS = {
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.DUPLICATE_REGISTRANT: 422,
    ErrorCode.TICKET_NOT_FOUND: 404,
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.INSUFFICIENT_STOCK: 409,
    ErrorCode.SALE_WINDOW_CLOSED: 409,
    ErrorCode.SALE_NOT_ACTIVE: 409,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.DUPLICATE_GENERATION_EXHAUSTED: 503,
    ErrorCode.GATEWAY_COMMUNICATION_FAILURE: 502,
    ErrorCode.ADMIN_REQUIRED: 401,
}


def error_response(e: DomainError) -> ORJSONResponse:
    if e.code is ErrorCode.ALREADY_IN_TARGET_STATE:
        return ORJSONResponse({"ok": True, "idempotent": True})
    return ORJSONResponse(
        {"error": e.code.value, "message": e.message},
        status_code=HTTP_STATUS.get(e.code, 400),
    )


# ----------------------------
# Request bodies
# ----------------------------
class PurchaseIn(BaseModel):
    quantity: int = 1
    form_data: Dict[str, Any] = Field(default_factory=dict)


class MarkPaidIn(BaseModel):
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None


class StatusIn(BaseModel):
    status: str
    notes: Optional[str] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None


class RacePackIn(BaseModel):
    action: str = "toggle"
    collected_by: Optional[str] = None


class EmitIn(BaseModel):
    transaction_status: str
    fraud_status: Optional[str] = None
    payment_type: Optional[str] = "mockpay"


def make_gateway(name: str, http: httpx.AsyncClient) -> PaymentAdapter:
    if name == "midtrans":
        return MidtransGateway(
            http,
            config.MIDTRANS_SERVER_KEY,
            is_production=config.MIDTRANS_IS_PRODUCTION,
        )
    return MockPay(config.MOCK_SECRET)


def create_app(
    database_url: Optional[str] = None,
    *,
    gateway: Optional[PaymentAdapter] = None,
    notify_backend: Optional[str] = None,
    seed: Optional[bool] = None,
    admin_token: Optional[str] = None,
) -> FastAPI:
    """
    uvicorn --factory funrun.server:create_app

    Arguments override the matching environment settings in funrun.config.
    """
    database_url = database_url or config.DATABASE_URL
    if database_url is None:
        raise RuntimeError("NEED DATABASE_URL!")
    notify_backend = notify_backend or config.NOTIFY_BACKEND
    seed = config.SEED_ON_STARTUP if seed is None else seed
    admin_token = config.ADMIN_TOKEN if admin_token is None else admin_token
    tz = ZoneInfo(config.EVENT_TIMEZONE)

    db: Database = make_async_engine(database_url)

    app = FastAPI(
        title="FunRun Tickets",
        default_response_class=ORJSONResponse,
    )
    app.state.db = db
    app.state.gateway = gateway
    app.state.redis = None
    app.state.http = None

    # ---
    # dependencies
    # ---
    async def get_db() -> GatedAsyncSession:
        async with db.session() as session:
            yield session

    def get_gateway() -> PaymentAdapter:
        gw = app.state.gateway
        if gw is None:
            raise RuntimeError("payment gateway not initialized")
        return gw

    def notifications(session):
        if notify_backend == "redis":
            return new_store(r=app.state.redis, backend="redis")
        return new_store(db=session, backend="sql")

    def require_admin(request: Request) -> None:
        if not admin_token:
            return
        given = request.headers.get("x-admin-token", "")
        if not ct_equal(given, admin_token):
            raise AdminRequired()

    # ---
    # errors
    # ---
    @app.exception_handler(DomainError)
    async def _domain_error(request: Request, e: DomainError):
        if e.code is ErrorCode.GATEWAY_COMMUNICATION_FAILURE:
            log.warning("%s %s: %s", request.method, request.url.path, e)
        return error_response(e)

    @app.exception_handler(RequestValidationError)
    async def _request_error(request: Request, e: RequestValidationError):
        return ORJSONResponse(
            {"error": ErrorCode.VALIDATION_ERROR.value,
             "message": "invalid request body",
             "details": jsonable_encoder(e.errors())},
            status_code=422,
        )

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        setup_logging()
        log.info("FunRun Tickets starting up: gateway=%s notifications=%s",
                 config.PAYMENT_GATEWAY if gateway is None
                 else type(gateway).__name__,
                 notify_backend)

    @app.on_event("startup")
    async def _db_init():
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        if seed:
            await seed_categories(db, now=now_ts())

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=10.0,
            limits=httpx.Limits(
                max_connections=128, max_keepalive_connections=64
            ),
        )
        if app.state.gateway is None:
            app.state.gateway = make_gateway(config.PAYMENT_GATEWAY,
                                             app.state.http)

    @app.on_event("startup")
    async def _redis_start():
        if notify_backend == "redis":
            app.state.redis = redis.from_url(
                config.REDIS_URL,
                decode_responses=True,
                max_connections=config.REDIS_MAX_CONN,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = app.state.http
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _redis_stop():
        r = app.state.redis
        if r is not None:
            await r.aclose()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _db_stop():
        await db.dispose()

    # ----------------------------
    # Tickets & inventory
    # ----------------------------
    @app.get("/api/tickets")
    async def list_tickets(session: GatedAsyncSession = Depends(get_db)):
        now = now_ts()
        async with session.gated():
            async with session.session.begin():
                categories = await inventory.list_on_sale(session.session,
                                                          now)
        return {"items": [
            {
                "id": c.id,
                "name": c.name,
                "description": c.description,
                "price": c.price,
                "available": c.available,
                "sale_end_date": to_iso(c.sale_end_date),
            }
            for c in categories
        ]}

    @app.get("/api/inventory")
    async def get_inventory(session: GatedAsyncSession = Depends(get_db)):
        async with session.gated():
            async with session.session.begin():
                return await inventory.compute_inventory(session.session,
                                                         now_ts())

    # ----------------------------
    # Purchase
    # ----------------------------
    @app.post("/api/tickets/{category_id}/purchase")
    async def purchase(
        category_id: int,
        body: PurchaseIn,
        session: GatedAsyncSession = Depends(get_db),
        gw: PaymentAdapter = Depends(get_gateway),
    ):
        async with timeit("api.purchase"):
            result = await orders.purchase(
                session, gw, category_id, body.quantity, body.form_data,
                now=now_ts(),
                tz=tz,
                max_quantity=config.MAX_TICKETS_PER_ORDER,
                unique_field=config.UNIQUE_FORM_FIELD or None,
            )
        return {
            "order_number": result.order_number,
            "payment_token": result.payment_token,
            "redirect_url": result.redirect_url,
            "total_price": result.total_price,
        }

    # ----------------------------
    # Orders
    # ----------------------------
    @app.get("/api/orders/{order_number}")
    async def get_order(order_number: str,
                        session: GatedAsyncSession = Depends(get_db)):
        return await orders.describe_order(session, order_number)

    @app.post("/api/orders/{order_number}/payment-token")
    async def payment_token(
        order_number: str,
        session: GatedAsyncSession = Depends(get_db),
        gw: PaymentAdapter = Depends(get_gateway),
    ):
        result = await orders.renew_payment_session(session, gw,
                                                    order_number)
        return {"order_number": order_number,
                "payment_token": result["token"],
                "redirect_url": result["redirect_url"]}

    @app.post("/api/orders/{order_number}/check-status")
    async def check_status(
        order_number: str,
        session: GatedAsyncSession = Depends(get_db),
        gw: PaymentAdapter = Depends(get_gateway),
    ):
        result = await reconcile.check_status(
            session, gw, order_number, now=now_ts(),
            notifications=notifications,
        )
        return _reconciled(result)

    @app.post("/api/orders/{order_number}/mark-paid",
              dependencies=[Depends(require_admin)])
    async def mark_paid(
        order_number: str,
        body: Optional[MarkPaidIn] = None,
        session: GatedAsyncSession = Depends(get_db),
    ):
        body = body or MarkPaidIn()
        t = await orders.mark_paid(
            session, order_number, now=now_ts(),
            method=body.payment_method,
            reference=body.payment_reference,
        )
        return {"ok": True, "order_number": t.order_number,
                "status": t.status, "bib_number": t.bib_number}

    # ----------------------------
    # Webhook endpoint (Midtrans / MockPay)
    # ----------------------------
    @app.post("/payments/notification")
    async def payments_notification(
        request: Request,
        session: GatedAsyncSession = Depends(get_db),
        gw: PaymentAdapter = Depends(get_gateway),
    ):
        payload = await request.body()
        try:
            report = gw.verify_notification(payload, dict(request.headers))
        except ValidationError as e:
            log.warning("rejected notification: %s", e.message)
            return ORJSONResponse(
                {"error": e.code.value, "message": e.message},
                status_code=400,
            )

        try:
            async with timeit("api.notification"):
                result = await reconcile.apply_report(
                    session, report, now=now_ts(),
                    notifications=notifications,
                    acknowledge_conflicts=True,
                )
        except OrderNotFound:
            # the gateway retries non-2xx answers; an unknown order never
            # becomes known, so acknowledge it
            log.warning("notification for unknown order %s",
                        report.order_number)
            return {"ok": True, "ignored": True}
        return _reconciled(result)

    # ----------------------------
    # Admin
    # ----------------------------
    @app.post("/api/admin/orders/{order_number}/status",
              dependencies=[Depends(require_admin)])
    async def admin_status(
        order_number: str,
        body: StatusIn,
        session: GatedAsyncSession = Depends(get_db),
    ):
        try:
            target = OrderStatus(body.status)
        except ValueError:
            raise ValidationError(f"unknown status {body.status!r}")
        t = await orders.change_status(
            session, order_number, target, now=now_ts(),
            method=body.payment_method, reference=body.payment_reference,
            notes=body.notes,
        )
        return {"ok": True, "order_number": t.order_number,
                "previous": t.previous, "status": t.status,
                "bib_number": t.bib_number}

    @app.post("/api/admin/orders/{order_number}/cancel",
              dependencies=[Depends(require_admin)])
    async def admin_cancel(order_number: str,
                           session: GatedAsyncSession = Depends(get_db)):
        t = await orders.cancel(session, order_number, now=now_ts())
        return {"ok": True, "order_number": t.order_number,
                "previous": t.previous, "status": t.status}

    @app.post("/api/admin/orders/{order_number}/race-pack",
              dependencies=[Depends(require_admin)])
    async def admin_race_pack(
        order_number: str,
        body: RacePackIn,
        session: GatedAsyncSession = Depends(get_db),
    ):
        return await orders.race_pack(
            session, order_number, body.action, now=now_ts(),
            collected_by=body.collected_by,
        )

    @app.get("/api/timings")
    async def get_timings():
        return summary()

    # ----------------------------
    # MockPay (development gateway)
    # ----------------------------
    def get_mockpay() -> MockPay:
        gw = get_gateway()
        if not isinstance(gw, MockPay):
            raise HTTPException(404, detail="mockpay disabled")
        return gw

    @app.get("/mockpay/{order_number}")
    async def mockpay_screen(order_number: str,
                             session: GatedAsyncSession = Depends(get_db),
                             mock: MockPay = Depends(get_mockpay)):
        view = await orders.describe_order(session, order_number)
        return {
            "order_number": order_number,
            "ticket_name": view.get("ticket_name"),
            "total_price": view["total_price"],
            "status": view["status"],
            "webhook_url": config.MOCK_WEBHOOK_URL,
        }

    @app.post("/mockpay/{order_number}/emit")
    async def mockpay_emit(order_number: str, body: EmitIn,
                           mock: MockPay = Depends(get_mockpay)):
        report = StatusReport(
            order_number=order_number,
            transaction_status=body.transaction_status.lower(),
            fraud_status=(body.fraud_status.lower()
                          if body.fraud_status else None),
            payment_type=body.payment_type,
            transaction_id=f"mock-{order_number}-"
                           f"{body.transaction_status.lower()}",
        )
        payload = mock.emit(report)
        sig = mock.sign(payload)

        delivered = False
        try:
            r = await app.state.http.post(
                config.MOCK_WEBHOOK_URL,
                content=payload,
                headers={
                    "x-mockpay-signature": sig,
                    "content-type": "application/json",
                },
            )
            delivered = r.status_code < 300
        except httpx.HTTPError as e:
            # the status stays queryable through check-status
            log.warning("webhook delivery failed for %s: %s",
                        order_number, e)

        return {
            "delivered": delivered,
            "payload": payload.decode(),
            "signature": sig,
        }

    return app


def _reconciled(result: reconcile.Reconciled) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "ok": True,
        "order_number": result.order_number,
        "outcome": result.outcome,
        "idempotent": result.outcome in (reconcile.IDEMPOTENT,
                                         reconcile.DUPLICATE),
    }
    if result.status is not None:
        out["status"] = result.status
        out["payment_status"] = payment_status(result.status)
    return out
