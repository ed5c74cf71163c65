"""
Checkout and settlement.

``BoxOffice`` ties the ledger, the cart validator and the payment gateway
together:

- ``validate_cart``: price a cart against current server state, no writes
- ``create_payment_intent``: open a gateway order carrying the cart as notes
- ``settle_order``: turn a confirmed payment into an order plus ``sold``
  increments, all or nothing, at most once per external payment id

Settlement serializes per event with an in-process lock, and the event row
is written with a conditional UPDATE on its version so concurrent workers in
other processes cannot push ``sold`` past ``quantity`` either.
"""

from __future__ import annotations
import asyncio
import logging
import uuid
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError

from .config import Settings
from .errors import ConcurrencyConflict, OrderNotFound, ValidationError
from .gateway import PaymentGateway, to_gateway_amount
from .helpers import is_valid_email, new_id, now_ts
from .infra.sql import Gated
from .infra.timings import timeit
from .model import inventory
from .model.db import Order
from .model.events import load_event, require_id, write_ticket_types
from .model.inventory import TicketType
from .model.orders import STATUS_COMPLETED, find_by_payment_id, order_view
from .model.pricing import (
    CartLine, PricedCart, PricedLine, cart_to_json, parse_cart, parse_total,
    price_cart,
)

log = logging.getLogger(__name__)

DEFAULT_LINE_NAME = "General Admission"

Pricer = Callable[[Sequence[TicketType]], PricedCart]


@dataclass(frozen=True)
class PaymentIntent:
    gateway_order_id: str
    amount: int
    currency: str
    calculated_total: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gateway_order_id": self.gateway_order_id,
            "amount": self.amount,
            "currency": self.currency,
            "calculated_total": self.calculated_total,
        }


@dataclass(frozen=True)
class ConfirmedPayment:
    """A checkout handshake checked against the gateway's record."""

    payment_id: str
    gateway_order_id: str
    amount: int
    currency: str
    event_id: str
    buyer_id: str
    lines: List[CartLine]
    attendee: Optional[Dict[str, str]]


class _StaleEvent(Exception):
    """The event row changed between read and conditional write."""


def parse_attendee(raw: Any) -> Optional[Dict[str, str]]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValidationError("attendee_info", "attendee_info must be an "
                              "object")
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("attendee_info.name", "Attendee name is "
                              "required")
    email = raw.get("email")
    if not is_valid_email(email):
        raise ValidationError("attendee_info.email",
                              "Attendee email must be a valid address")
    out = {"name": name.strip(), "email": email.strip()}
    phone = raw.get("phone")
    if phone:
        out["phone"] = str(phone).strip()
    return out


def attendee_from_notes(notes: Dict[str, Any]) -> Optional[Dict[str, str]]:
    if not notes.get("attendee_name") and not notes.get("attendee_email"):
        return None
    return parse_attendee({
        "name": notes.get("attendee_name"),
        "email": notes.get("attendee_email"),
        "phone": notes.get("attendee_phone"),
    })


def _quantities(lines: Sequence[CartLine]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for ln in lines:
        out[ln.ticket_type_id] = out.get(ln.ticket_type_id, 0) + ln.quantity
    return out


def require_payment_id(payment_id: Any) -> str:
    if not isinstance(payment_id, str) or not payment_id.strip():
        raise ValidationError("payment_id", "payment_id is required")
    return payment_id.strip()


def apply_sales(ticket_types: Sequence[TicketType],
                priced: PricedCart) -> List[TicketType]:
    """Commit every priced line against ``ticket_types``.

    Raises CapacityExceeded on the first line that does not fit; the input
    list is never modified, so a failure leaves nothing half-applied.
    """
    wanted: Dict[str, int] = {}
    for line in priced.lines:
        wanted[line.ticket_type_id] = (
            wanted.get(line.ticket_type_id, 0) + line.quantity
        )
    out = []
    for tt in ticket_types:
        qty = wanted.get(tt.id)
        out.append(inventory.commit_sale(tt, qty) if qty else tt)
    return out


def default_admission(amount: int) -> Pricer:
    """One "General Admission" ticket at the paid amount.

    Inventory is taken from the event's first ticket type.
    """
    def _price(ticket_types: Sequence[TicketType]) -> PricedCart:
        first = ticket_types[0]
        inventory.commit_sale(first, 1)
        line = PricedLine(
            ticket_type_id=first.id,
            ticket_type_name=DEFAULT_LINE_NAME,
            quantity=1,
            price=amount,
        )
        return PricedCart(lines=[line], calculated_total=amount)
    return _price


class BoxOffice:
    def __init__(self, SessionAsync, gated: Gated, gateway: PaymentGateway,
                 settings: Settings) -> None:
        self.SessionAsync = SessionAsync
        self.gated = gated
        self.gateway = gateway
        self.settings = settings
        # one lock per event id, dropped once nobody holds or waits on it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, event_id: str) -> asyncio.Lock:
        lock = self._locks.get(event_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[event_id] = lock
        return lock

    def _pricer(self, lines: Sequence[CartLine],
                client_total: Optional[int]) -> Pricer:
        def _price(ticket_types: Sequence[TicketType]) -> PricedCart:
            return price_cart(ticket_types, lines, client_total,
                              self.settings.price_tolerance)
        return _price

    # ----------------------------
    # Read-only checkout steps
    # ----------------------------
    async def validate_cart(self, event_id: str, cart_lines: Any,
                            client_total: Any = None) -> PricedCart:
        require_id("event_id", event_id)
        lines = parse_cart(cart_lines)
        total = parse_total(client_total)
        async with timeit("db.validate_cart"):
            async with self.gated():
                async with self.SessionAsync() as db:
                    row = await load_event(db, event_id)
        return price_cart(inventory.ticket_types_for(row), lines, total,
                          self.settings.price_tolerance)

    async def create_payment_intent(
        self, event_id: str, buyer_id: str, cart_lines: Any,
        client_total: Any = None, attendee_info: Any = None,
    ) -> PaymentIntent:
        """Open a gateway order for a validated cart.

        Nothing is reserved or written locally; an abandoned intent leaves
        inventory untouched.
        """
        require_id("event_id", event_id)
        require_id("buyer_id", buyer_id)
        attendee = parse_attendee(attendee_info)
        priced = await self.validate_cart(event_id, cart_lines, client_total)
        if priced.calculated_total == 0:
            raise ValidationError("cart", "Free tickets do not go through "
                                  "the payment gateway")

        currency = self.settings.currency
        notes = {
            "event_id": event_id,
            "buyer_id": buyer_id,
            "cart": cart_to_json([
                CartLine(ln.ticket_type_id, ln.quantity)
                for ln in priced.lines
            ]),
            "total": str(priced.calculated_total),
        }
        if attendee:
            notes.update({f"attendee_{k}": v for k, v in attendee.items()})

        receipt = f"receipt_{event_id[:8]}_{uuid.uuid4().hex[:8]}"
        async with timeit("gateway.create_order"):
            order = await self.gateway.create_order(
                to_gateway_amount(priced.calculated_total),
                currency, receipt, notes,
            )
        return PaymentIntent(
            gateway_order_id=order["id"],
            amount=order["amount"],
            currency=order["currency"],
            calculated_total=priced.calculated_total,
        )

    # ----------------------------
    # Settlement
    # ----------------------------
    async def settle_order(
        self, payment_id: str, event_id: str, buyer_id: str,
        cart_lines: Any, attendee_info: Any = None, *,
        client_total: Any = None, gateway_order_id: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record a paid order and commit its sales; idempotent on payment id.

        Either the order row and every ``sold`` increment land together, or
        nothing changes. A second call with the same payment id returns the
        first order untouched.
        """
        payment_id = require_payment_id(payment_id)
        require_id("event_id", event_id)
        require_id("buyer_id", buyer_id)
        lines = parse_cart(cart_lines)
        total = parse_total(client_total)
        attendee = parse_attendee(attendee_info)
        return await self._settle(
            payment_id, event_id, buyer_id, self._pricer(lines, total),
            attendee, gateway_order_id, currency,
        )

    async def settle_default_admission(
        self, payment_id: str, event_id: str, buyer_id: str, amount: int,
        attendee_info: Any = None, *, gateway_order_id: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Settle a payment that arrived without a cart as one admission."""
        payment_id = require_payment_id(payment_id)
        require_id("event_id", event_id)
        require_id("buyer_id", buyer_id)
        if parse_total(amount) is None:
            raise ValidationError("amount", "amount is required")
        attendee = parse_attendee(attendee_info)
        return await self._settle(
            payment_id, event_id, buyer_id, default_admission(amount),
            attendee, gateway_order_id, currency,
        )

    async def confirm_payment(
        self, gateway_order_id: Any, payment_id: Any, signature: Any,
        buyer_id: str, event_id: Any = None, cart_lines: Any = None,
    ) -> ConfirmedPayment:
        """Verify a checkout handshake and load what was actually paid for.

        The gateway order's amount and notes are authoritative. A client
        event or cart that differs from them is rejected; the client total
        is never consulted. Nothing is written here.
        """
        gateway_order_id = str(gateway_order_id or "")
        payment_id = require_payment_id(payment_id)
        self.gateway.verify_checkout(gateway_order_id, payment_id, signature)

        async with timeit("gateway.fetch_order"):
            order = await self.gateway.fetch_order(gateway_order_id)
        notes = order["notes"]

        paid_event = notes.get("event_id")
        require_id("notes.event_id", paid_event)
        if event_id is not None and event_id != paid_event:
            raise ValidationError("event_id", "Event does not match the "
                                  "paid order", received=event_id)
        if notes.get("buyer_id") != buyer_id:
            raise ValidationError("buyer_id", "Payment belongs to another "
                                  "buyer")

        paid_lines = parse_cart(notes.get("cart"))
        if cart_lines is not None and (
            _quantities(parse_cart(cart_lines)) != _quantities(paid_lines)
        ):
            raise ValidationError("cart", "Cart does not match the paid "
                                  "order")

        return ConfirmedPayment(
            payment_id=payment_id,
            gateway_order_id=gateway_order_id,
            amount=order["amount"],
            currency=order["currency"],
            event_id=paid_event,
            buyer_id=buyer_id,
            lines=paid_lines,
            attendee=attendee_from_notes(notes),
        )

    async def settle_confirmed(
        self, confirmed: ConfirmedPayment,
    ) -> Dict[str, Any]:
        return await self.settle_order(
            confirmed.payment_id, confirmed.event_id, confirmed.buyer_id,
            confirmed.lines, confirmed.attendee,
            client_total=confirmed.amount,
            gateway_order_id=confirmed.gateway_order_id,
            currency=confirmed.currency,
        )

    async def claim_free_order(
        self, event_id: str, buyer_id: str, cart_lines: Any,
        attendee_info: Any = None,
    ) -> Dict[str, Any]:
        """Settle a zero-total cart without a gateway round trip."""
        priced = await self.validate_cart(event_id, cart_lines)
        if priced.calculated_total != 0:
            raise ValidationError("cart", "Only free tickets can be claimed "
                                  "without payment")
        return await self.settle_order(
            f"free_{new_id()}", event_id, buyer_id, cart_lines,
            attendee_info, client_total=0,
        )

    async def _existing(self, payment_id: str) -> Dict[str, Any]:
        async with self.gated():
            async with self.SessionAsync() as db:
                o = await find_by_payment_id(db, payment_id)
        if o is None:
            # the conflicting insert rolled back after all
            raise OrderNotFound(payment_id)
        return order_view(o)

    async def _settle(
        self, payment_id: str, event_id: str, buyer_id: str, price: Pricer,
        attendee: Optional[Dict[str, str]],
        gateway_order_id: Optional[str], currency: Optional[str],
    ) -> Dict[str, Any]:
        attempts = self.settings.settle_max_retries
        async with self._lock_for(event_id):
            for attempt in range(1, attempts + 1):
                try:
                    async with timeit("db.settle"):
                        async with self.gated():
                            async with self.SessionAsync() as db:
                                async with db.begin():
                                    existing = await find_by_payment_id(
                                        db, payment_id
                                    )
                                    if existing is not None:
                                        log.info("payment %s already settled "
                                                 "as order %s", payment_id,
                                                 existing.id)
                                        return order_view(existing)

                                    row = await load_event(db, event_id)
                                    ticket_types = (
                                        inventory.ticket_types_for(row)
                                    )
                                    priced = price(ticket_types)
                                    updated = apply_sales(ticket_types,
                                                          priced)
                                    if not await write_ticket_types(
                                        db, row, updated
                                    ):
                                        raise _StaleEvent()

                                    order = Order(
                                        id=new_id(),
                                        payment_id=payment_id,
                                        gateway_order_id=gateway_order_id,
                                        event_id=event_id,
                                        buyer_id=buyer_id,
                                        items=[ln.to_dict()
                                               for ln in priced.lines],
                                        total_amount=priced.calculated_total,
                                        currency=(currency
                                                  or self.settings.currency),
                                        status=STATUS_COMPLETED,
                                        attendee_info=attendee,
                                        created_at=now_ts(),
                                    )
                                    db.add(order)
                                    await db.flush()
                except _StaleEvent:
                    log.info("event %s changed under settlement of %s "
                             "(attempt %d/%d)", event_id, payment_id,
                             attempt, attempts)
                    continue
                except IntegrityError:
                    # a concurrent attempt for this payment id won the insert
                    log.info("payment %s settled concurrently, returning "
                             "existing order", payment_id)
                    return await self._existing(payment_id)

                log.info("payment %s settled as order %s (%d in minor units)",
                         payment_id, order.id, order.total_amount)
                return order_view(order)

        raise ConcurrencyConflict(event_id, attempts)
