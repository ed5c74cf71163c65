from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Dict, Optional, TypedDict
import hashlib
import hmac
import logging
import uuid

import httpx

from .errors import GatewayError, InvalidSignature

log = logging.getLogger(__name__)


def to_gateway_amount(total_minor: int) -> int:
    """Amount the gateway expects for a total kept in minor units.

    Totals are stored in the currency's smallest unit already, which is
    what the gateways take, so this is the identity for well-formed input.
    """
    if isinstance(total_minor, bool) or not isinstance(total_minor, int):
        raise GatewayError(f"malformed amount: {total_minor!r}")
    if total_minor <= 0:
        raise GatewayError(f"malformed amount: {total_minor}")
    return total_minor


def hmac_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def check_signature(secret: str, payload: bytes,
                    signature: Optional[str]) -> None:
    expected = hmac_hex(secret, payload)
    if not signature or not hmac.compare_digest(expected, signature):
        raise InvalidSignature(signature)


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class GatewayOrder(TypedDict):
    id: str
    amount: int
    currency: str


class GatewayOrderDetails(GatewayOrder):
    # metadata attached at creation; the cart of record for settlement
    notes: Dict[str, str]


class PaymentGateway(ABC):
    def __init__(self, webhook_secret: str) -> None:
        self.webhook_secret = webhook_secret

    @abstractmethod
    async def create_order(
        self, amount: int, currency: str, receipt: str,
        notes: Dict[str, str],
    ) -> GatewayOrder: ...

    @abstractmethod
    async def fetch_order(
        self, gateway_order_id: str,
    ) -> GatewayOrderDetails: ...

    # secret used for the client-side checkout handshake
    @abstractmethod
    def checkout_secret(self) -> str: ...

    def verify_webhook(self, payload: bytes,
                       signature: Optional[str]) -> None:
        check_signature(self.webhook_secret, payload, signature)

    def verify_checkout(self, gateway_order_id: str, payment_id: str,
                        signature: Optional[str]) -> None:
        body = f"{gateway_order_id}|{payment_id}".encode()
        check_signature(self.checkout_secret(), body, signature)

    def sign(self, payload: bytes) -> str:
        return hmac_hex(self.webhook_secret, payload)

    async def aclose(self) -> None:
        return None


# ----------------------------
# Razorpay implementation
# ----------------------------
class RazorpayGateway(PaymentGateway):
    def __init__(self, key_id: str, key_secret: str, webhook_secret: str,
                 api_base: str = "https://api.razorpay.com",
                 timeout: float = 5.0,
                 client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(webhook_secret)
        self.key_id = key_id
        self.key_secret = key_secret
        self.http = client or httpx.AsyncClient(
            base_url=api_base,
            timeout=timeout,
        )

    def checkout_secret(self) -> str:
        return self.key_secret

    async def _call(self, method: str, path: str, **kw) -> dict:
        try:
            r = await self.http.request(
                method, path, auth=(self.key_id, self.key_secret), **kw
            )
        except httpx.HTTPError as e:
            raise GatewayError(f"gateway unreachable: {e}")

        if r.status_code >= 400:
            try:
                desc = r.json()["error"]["description"]
            except (ValueError, KeyError, TypeError):
                desc = r.text
            raise GatewayError(f"gateway rejected request: {desc}",
                               status_code=r.status_code)
        try:
            body = r.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise GatewayError("malformed gateway response",
                               status_code=r.status_code)
        return body

    @staticmethod
    def _order(body: dict) -> GatewayOrder:
        try:
            return {
                "id": str(body["id"]),
                "amount": int(body["amount"]),
                "currency": str(body["currency"]),
            }
        except (ValueError, KeyError, TypeError):
            raise GatewayError("malformed gateway response")

    async def create_order(
        self, amount: int, currency: str, receipt: str,
        notes: Dict[str, str],
    ) -> GatewayOrder:
        # no retry: a duplicate gateway order is a billing risk
        body = await self._call("POST", "/v1/orders", json={
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
        })
        order = self._order(body)
        log.info("gateway order %s created for %s %s (receipt %s)",
                 order["id"], order["amount"], order["currency"], receipt)
        return order

    async def fetch_order(
        self, gateway_order_id: str,
    ) -> GatewayOrderDetails:
        body = await self._call("GET", f"/v1/orders/{gateway_order_id}")
        order = self._order(body)
        notes = body.get("notes")
        # razorpay sends [] for an order without notes
        return {**order, "notes": notes if isinstance(notes, dict) else {}}

    async def aclose(self) -> None:
        await self.http.aclose()


# ----------------------------
# Mock implementation
# ----------------------------
class MockGateway(PaymentGateway):
    """In-process gateway: mints order ids, signs callbacks locally."""

    def __init__(self, webhook_secret: str) -> None:
        super().__init__(webhook_secret)
        self.orders: Dict[str, dict] = {}

    def checkout_secret(self) -> str:
        return self.webhook_secret

    async def create_order(
        self, amount: int, currency: str, receipt: str,
        notes: Dict[str, str],
    ) -> GatewayOrder:
        oid = f"order_mock_{uuid.uuid4().hex[:14]}"
        self.orders[oid] = {
            "id": oid, "amount": amount, "currency": currency,
            "receipt": receipt, "notes": dict(notes),
        }
        return {"id": oid, "amount": amount, "currency": currency}

    async def fetch_order(
        self, gateway_order_id: str,
    ) -> GatewayOrderDetails:
        o = self.orders.get(gateway_order_id)
        if o is None:
            raise GatewayError("gateway rejected request: order not found",
                               status_code=404)
        return {"id": o["id"], "amount": o["amount"],
                "currency": o["currency"], "notes": dict(o["notes"])}

    def captured_event(self, gateway_order_id: str,
                       payment_id: Optional[str] = None) -> dict:
        o = self.orders[gateway_order_id]
        return {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {
                "id": payment_id or f"pay_mock_{uuid.uuid4().hex[:14]}",
                "order_id": gateway_order_id,
                "amount": o["amount"],
                "currency": o["currency"],
                "status": "captured",
                "notes": o["notes"],
            }}},
        }


def new_gateway(settings) -> PaymentGateway:
    if settings.gateway_backend == "razorpay":
        if not settings.razorpay_key_id or not settings.razorpay_key_secret:
            raise RuntimeError(
                "GATEWAY_BACKEND=razorpay requires RAZORPAY_KEY_ID and "
                "RAZORPAY_KEY_SECRET"
            )
        return RazorpayGateway(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.webhook_secret,
            api_base=settings.razorpay_api_base,
            timeout=settings.gateway_timeout,
        )
    return MockGateway(settings.webhook_secret)
