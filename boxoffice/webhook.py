"""
Inbound payment callbacks.

Order of checks: signature, JSON, event type, payload shape and ids, then
settlement. Only ``payment.captured`` settles; every other event type is
acknowledged so the gateway stops redelivering it.

Acknowledgement policy:
- bad signature: not acknowledged, nothing else runs
- validation-class failures: acknowledged (redelivery cannot fix them),
  logged with the payment id for manual follow-up
- infrastructure failures: not acknowledged, so the gateway redelivers
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from .errors import BoxOfficeError, InvalidSignature, ValidationError
from .helpers import is_valid_id
from .model.pricing import CartLine, parse_cart
from .service import BoxOffice, attendee_from_notes

log = logging.getLogger(__name__)

CAPTURED = "payment.captured"


@dataclass(frozen=True)
class WellFormedCart:
    lines: List[CartLine]


@dataclass(frozen=True)
class MissingCart:
    """No cart in the metadata: settle one admission at the paid amount."""


Cart = Union[WellFormedCart, MissingCart]


@dataclass(frozen=True)
class CapturedPayment:
    payment_id: str
    amount: int
    currency: Optional[str]
    gateway_order_id: Optional[str]
    event_id: str
    buyer_id: str
    cart: Cart
    attendee: Optional[Dict[str, str]]


@dataclass
class CallbackResult:
    acknowledged: bool
    order: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    payment_id: Optional[str] = None
    ignored: bool = False
    signature_rejected: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"acknowledged": self.acknowledged}
        if self.order is not None:
            out["order"] = self.order
        if self.error is not None:
            out["error"] = self.error
        if self.payment_id is not None:
            out["payment_id"] = self.payment_id
        if self.ignored:
            out["ignored"] = True
        return out


def _entity(event: Dict[str, Any]) -> Dict[str, Any]:
    try:
        entity = event["payload"]["payment"]["entity"]
    except (KeyError, TypeError):
        raise ValidationError("payload.payment.entity",
                              "Payment entity is missing")
    if not isinstance(entity, dict):
        raise ValidationError("payload.payment.entity",
                              "Payment entity must be an object")
    return entity


def _parse_cart(notes: Dict[str, Any]) -> Cart:
    raw = notes.get("cart")
    if raw is None or raw == "" or raw == []:
        return MissingCart()
    return WellFormedCart(lines=parse_cart(raw))


def _payment_id_of(event: Dict[str, Any]) -> Optional[str]:
    try:
        pid = event["payload"]["payment"]["entity"]["id"]
    except (KeyError, TypeError):
        return None
    return pid if isinstance(pid, str) else None


def parse_captured(event: Dict[str, Any]) -> CapturedPayment:
    entity = _entity(event)

    payment_id = entity.get("id")
    if not isinstance(payment_id, str) or not payment_id:
        raise ValidationError("payment.id", "Payment id is missing")

    amount = entity.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise ValidationError("payment.amount", "Payment amount is missing "
                              "or malformed", received=amount)

    notes = entity.get("notes") or {}
    if not isinstance(notes, dict):
        raise ValidationError("payment.notes", "Payment notes must be an "
                              "object")
    event_id = notes.get("event_id")
    if not is_valid_id(event_id):
        raise ValidationError("notes.event_id", "event_id is missing or "
                              "malformed")
    buyer_id = notes.get("buyer_id")
    if not is_valid_id(buyer_id):
        raise ValidationError("notes.buyer_id", "buyer_id is missing or "
                              "malformed")

    return CapturedPayment(
        payment_id=payment_id,
        amount=amount,
        currency=entity.get("currency"),
        gateway_order_id=entity.get("order_id"),
        event_id=event_id,
        buyer_id=buyer_id,
        cart=_parse_cart(notes),
        attendee=attendee_from_notes(notes),
    )


async def settle_captured(box: BoxOffice,
                          captured: CapturedPayment) -> Dict[str, Any]:
    if isinstance(captured.cart, WellFormedCart):
        return await box.settle_order(
            captured.payment_id, captured.event_id, captured.buyer_id,
            captured.cart.lines, captured.attendee,
            client_total=captured.amount,
            gateway_order_id=captured.gateway_order_id,
            currency=captured.currency,
        )
    log.warning("payment %s carries no cart, settling one %r",
                captured.payment_id, "General Admission")
    return await box.settle_default_admission(
        captured.payment_id, captured.event_id, captured.buyer_id,
        captured.amount, captured.attendee,
        gateway_order_id=captured.gateway_order_id,
        currency=captured.currency,
    )


async def handle_payment_callback(box: BoxOffice, raw_body: bytes,
                                  signature: Optional[str]) -> CallbackResult:
    try:
        box.gateway.verify_webhook(raw_body, signature)
    except InvalidSignature as e:
        log.warning("rejected payment callback: %s %s", e.message, e.details)
        return CallbackResult(acknowledged=False, error=e.to_dict(),
                              signature_rejected=True)

    try:
        event = json.loads(raw_body)
    except ValueError:
        err = ValidationError("body", "Callback body is not valid JSON")
        log.error("signed payment callback is not JSON")
        return CallbackResult(acknowledged=True, error=err.to_dict())

    kind = event.get("event") if isinstance(event, dict) else None
    if kind != CAPTURED:
        log.info("ignoring payment callback of type %r", kind)
        return CallbackResult(acknowledged=True, ignored=True)

    payment_id = _payment_id_of(event)
    try:
        captured = parse_captured(event)
        order = await settle_captured(box, captured)
    except BoxOfficeError as e:
        if e.terminal:
            log.error("payment %s captured but not fulfilled, needs manual "
                      "follow-up: %s %s", payment_id, e, e.details)
            return CallbackResult(acknowledged=True, error=e.to_dict(),
                                  payment_id=payment_id)
        log.warning("payment %s settlement will be retried: %s",
                    payment_id, e)
        return CallbackResult(acknowledged=False, error=e.to_dict(),
                              payment_id=payment_id)
    except (SQLAlchemyError, OSError) as e:
        log.exception("payment %s settlement failed on infrastructure",
                      payment_id)
        return CallbackResult(acknowledged=False, error={
            "code": "INFRASTRUCTURE_ERROR",
            "message": "Temporary failure, retry delivery",
            "details": {"type": type(e).__name__},
        }, payment_id=payment_id)

    return CallbackResult(acknowledged=True, order=order,
                          payment_id=payment_id)
