from __future__ import annotations
import json
import logging
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .errors import BoxOfficeError, ErrorCode
from .gateway import MockGateway, new_gateway
from .infra.sql import make_async_engine
from .infra.timings import install_shutdown_log, summary, timeit
from .model.db import Base
from .model.events import EventStore
from .model.orders import OrderStore
from .service import BoxOffice
from .webhook import handle_payment_callback

log = logging.getLogger(__name__)

STATUS_FOR = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.UNKNOWN_TICKET_TYPE: 400,
    ErrorCode.INVALID_QUANTITY: 400,
    ErrorCode.PRICE_MISMATCH: 400,
    ErrorCode.INVALID_SIGNATURE: 400,
    ErrorCode.CAPACITY_EXCEEDED: 409,
    ErrorCode.EVENT_NOT_FOUND: 404,
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.NOT_EVENT_OWNER: 403,
    ErrorCode.GATEWAY_ERROR: 502,
    ErrorCode.CONCURRENCY_CONFLICT: 503,
}


def status_for(exc: BoxOfficeError) -> int:
    return STATUS_FOR.get(exc.code, 400)


def unfulfilled(payment_id: str, status: int, error: dict) -> ORJSONResponse:
    return ORJSONResponse(status_code=status, content={
        "payment_succeeded": True,
        "payment_id": payment_id,
        "message": "Payment succeeded but the order could not be "
                   "completed. Contact support with your payment id.",
        "error": error,
    })


# ----------------------------
# Dependencies
# ----------------------------
def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    # set by the auth proxy in front of us
    if not x_user_id:
        raise HTTPException(401, detail="missing x-user-id")
    return x_user_id


def box_office(request: Request) -> BoxOffice:
    return request.app.state.box


def event_store(request: Request) -> EventStore:
    return request.app.state.events


def order_store(request: Request) -> OrderStore:
    return request.app.state.orders


# uvicorn --factory boxoffice.server:create_app
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    engine, SessionAsync, gated = make_async_engine(settings)
    gateway = new_gateway(settings)

    app = FastAPI(
        title="BoxOffice",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.gateway = gateway
    app.state.events = EventStore(SessionAsync, gated)
    app.state.orders = OrderStore(SessionAsync, gated)
    app.state.box = BoxOffice(SessionAsync, gated, gateway, settings)

    install_shutdown_log(app)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        print('\n' * 2)
        print('=' * 50)
        print('BoxOffice is starting up...')
        print(f'   - Database: {engine.url.get_backend_name()}')
        print(f'   - Payment gateway: {settings.gateway_backend}')
        print(f'   - Currency: {settings.currency}')
        print('=' * 50)
        print('\n' * 2)

    @app.on_event("startup")
    async def _db_init():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @app.on_event("startup")
    async def _http_client_start():
        # outbound client for the mock gateway's webhook deliveries
        app.state.http = httpx.AsyncClient(timeout=settings.gateway_timeout)

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _gateway_stop():
        await gateway.aclose()

    @app.on_event("shutdown")
    async def _db_stop():
        await engine.dispose()

    @app.exception_handler(BoxOfficeError)
    async def _box_office_error(request: Request, exc: BoxOfficeError):
        return ORJSONResponse(status_code=status_for(exc),
                              content={"error": exc.to_dict()})

    # ----------------------------
    # Events
    # ----------------------------
    @app.post("/api/events", status_code=201)
    async def create_event(payload: dict,
                           user_id: str = Depends(current_user),
                           events: EventStore = Depends(event_store)):
        return await events.create_event(user_id, payload)

    @app.get("/api/events")
    async def list_events(q: Optional[str] = None,
                          category: Optional[str] = None,
                          location: Optional[str] = None,
                          is_free: bool = False,
                          page: int = 1, limit: int = 6,
                          events: EventStore = Depends(event_store)):
        return await events.list_events(q, category, location, is_free,
                                        page, limit)

    @app.get("/api/events/{event_id}")
    async def get_event(event_id: str,
                        events: EventStore = Depends(event_store)):
        return await events.get_event(event_id)

    @app.put("/api/events/{event_id}")
    async def update_event(event_id: str, payload: dict,
                           user_id: str = Depends(current_user),
                           events: EventStore = Depends(event_store)):
        return await events.update_event(user_id, event_id, payload)

    @app.delete("/api/events/{event_id}")
    async def delete_event(event_id: str,
                           user_id: str = Depends(current_user),
                           events: EventStore = Depends(event_store)):
        await events.delete_event(user_id, event_id)
        return {"ok": True}

    @app.get("/api/events/{event_id}/inventory")
    async def get_inventory(event_id: str,
                            events: EventStore = Depends(event_store)):
        return await events.get_inventory(event_id)

    @app.get("/api/events/{event_id}/related")
    async def related_events(event_id: str, page: int = 1, limit: int = 3,
                             events: EventStore = Depends(event_store)):
        return await events.related_events(event_id, page, limit)

    @app.get("/api/organizers/{organizer_id}/events")
    async def events_by_organizer(organizer_id: str, page: int = 1,
                                  limit: int = 6,
                                  events: EventStore = Depends(event_store)):
        return await events.events_by_organizer(organizer_id, page, limit)

    # ----------------------------
    # Cart & checkout
    # ----------------------------
    @app.post("/api/events/{event_id}/cart/validate")
    async def validate_cart(event_id: str, payload: dict,
                            box: BoxOffice = Depends(box_office)):
        priced = await box.validate_cart(event_id, payload.get("cart"),
                                         payload.get("total"))
        return priced.to_dict()

    @app.post("/api/checkout")
    async def create_checkout(payload: dict,
                              user_id: str = Depends(current_user),
                              box: BoxOffice = Depends(box_office)):
        intent = await box.create_payment_intent(
            payload.get("event_id"), user_id, payload.get("cart"),
            payload.get("total"), payload.get("attendee_info"),
        )
        return intent.to_dict()

    @app.post("/api/orders/free", status_code=201)
    async def claim_free_order(payload: dict,
                               user_id: str = Depends(current_user),
                               box: BoxOffice = Depends(box_office)):
        return await box.claim_free_order(
            payload.get("event_id"), user_id, payload.get("cart"),
            payload.get("attendee_info"),
        )

    @app.post("/api/orders/confirm")
    async def confirm_order(payload: dict,
                            user_id: str = Depends(current_user),
                            box: BoxOffice = Depends(box_office)):
        # settles what the gateway order says was paid, not the request
        confirmed = await box.confirm_payment(
            payload.get("gateway_order_id"), payload.get("payment_id"),
            payload.get("signature"), user_id,
            event_id=payload.get("event_id"), cart_lines=payload.get("cart"),
        )
        payment_id = confirmed.payment_id
        try:
            order = await box.settle_confirmed(confirmed)
        except BoxOfficeError as e:
            # money has moved at this point; never report a plain failure
            log.error("payment %s verified but order not created, needs "
                      "manual follow-up: %s %s", payment_id, e, e.details)
            return unfulfilled(payment_id, status_for(e), e.to_dict())
        except (SQLAlchemyError, OSError) as e:
            log.exception("payment %s verified but settlement failed on "
                          "infrastructure", payment_id)
            return unfulfilled(payment_id, 503, {
                "code": "INFRASTRUCTURE_ERROR",
                "message": "Temporary failure, try again",
                "details": {"type": type(e).__name__},
            })
        return {"payment_succeeded": True, "order": order}

    # ----------------------------
    # Orders & users
    # ----------------------------
    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: str,
                        orders: OrderStore = Depends(order_store)):
        return await orders.get_order(order_id)

    # support lookups: buyers quote the gateway's payment id
    @app.get("/api/payments/{payment_id}/order")
    async def get_order_by_payment(payment_id: str,
                                   orders: OrderStore = Depends(order_store)):
        return await orders.get_order_by_payment_id(payment_id)

    @app.get("/api/events/{event_id}/orders")
    async def orders_by_event(event_id: str, search: Optional[str] = None,
                              orders: OrderStore = Depends(order_store)):
        return {"data": await orders.orders_by_event(event_id, search)}

    @app.get("/api/users/{user_id}/orders")
    async def orders_by_user(user_id: str, page: int = 1, limit: int = 3,
                             orders: OrderStore = Depends(order_store)):
        return await orders.orders_by_user(user_id, page, limit)

    @app.put("/api/users/{user_id}")
    async def upsert_user(user_id: str, payload: dict,
                          orders: OrderStore = Depends(order_store)):
        return await orders.upsert_user(user_id, payload)

    # ----------------------------
    # Webhook endpoint
    # ----------------------------
    @app.post("/api/webhooks/payments")
    async def payments_webhook(request: Request,
                               box: BoxOffice = Depends(box_office)):
        payload = await request.body()
        async with timeit("webhook.handle"):
            result = await handle_payment_callback(
                box, payload, request.headers.get("x-razorpay-signature"),
            )
        if result.signature_rejected:
            status = 400
        elif not result.acknowledged:
            # non-2xx makes the gateway redeliver
            status = 503
        else:
            status = 200
        return ORJSONResponse(status_code=status, content=result.to_dict())

    # ----------------------------
    # MockPay: emit a signed payment.captured for a mock order
    # ----------------------------
    @app.post("/mockpay/{gateway_order_id}/capture")
    async def mockpay_capture(gateway_order_id: str):
        if not isinstance(gateway, MockGateway):
            raise HTTPException(404, detail="mock gateway not enabled")
        if gateway_order_id not in gateway.orders:
            raise HTTPException(404, detail="gateway order not found")

        event = gateway.captured_event(gateway_order_id)
        payload = json.dumps(event).encode()
        sig = gateway.sign(payload)
        payment_id = event["payload"]["payment"]["entity"]["id"]

        client_http: httpx.AsyncClient = app.state.http
        try:
            r = await client_http.post(
                settings.mock_webhook_url,
                content=payload,
                headers={
                    "x-razorpay-signature": sig,
                    "content-type": "application/json",
                },
            )
            delivered = r.status_code == 200
        except httpx.HTTPError as e:
            log.warning("mock webhook delivery for %s failed: %s",
                        payment_id, e)
            delivered = False

        return {"payment_id": payment_id, "delivered": delivered}

    # ----------------------------
    # Admin
    # ----------------------------
    @app.get("/api/admin/timings")
    async def api_admin_timings():
        return {"timings": summary()}

    return app
