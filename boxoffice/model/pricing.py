# model/pricing.py
"""
Cart validation and pricing against server-held ticket-type state.

The total computed here is authoritative; a client-supplied total is only
checked against it.
"""

from __future__ import annotations
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ..errors import (
    InvalidQuantity, PriceMismatch, UnknownTicketType, ValidationError,
)
from . import inventory
from .inventory import TicketType


@dataclass(frozen=True)
class CartLine:
    ticket_type_id: str
    quantity: int


@dataclass(frozen=True)
class PricedLine:
    ticket_type_id: str
    ticket_type_name: str
    quantity: int
    price: int  # unit price, minor units

    @property
    def subtotal(self) -> int:
        return self.quantity * self.price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticket_type_id": self.ticket_type_id,
            "ticket_type_name": self.ticket_type_name,
            "quantity": self.quantity,
            "price": self.price,
        }


@dataclass(frozen=True)
class PricedCart:
    lines: List[PricedLine]
    calculated_total: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "priced_lines": [ln.to_dict() for ln in self.lines],
            "calculated_total": self.calculated_total,
        }


def parse_cart(raw: Any) -> List[CartLine]:
    """Turn a loosely shaped cart (list of dicts or its JSON) into lines."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise ValidationError("cart", "Cart is not valid JSON")
    if not isinstance(raw, list) or not raw:
        raise ValidationError("cart", "Cart must be a non-empty list")

    lines = []
    for i, item in enumerate(raw):
        if isinstance(item, CartLine):
            lines.append(item)
            continue
        if not isinstance(item, dict):
            raise ValidationError(f"cart[{i}]", "Cart line must be an object")
        tt_id = item.get("ticket_type_id")
        if not isinstance(tt_id, str) or not tt_id:
            raise ValidationError(f"cart[{i}].ticket_type_id",
                                  "ticket_type_id is required")
        qty = item.get("quantity")
        if isinstance(qty, bool) or not isinstance(qty, int):
            # type errors are shape problems, not quantity policy
            raise ValidationError(f"cart[{i}].quantity",
                                  "quantity must be an integer",
                                  received=qty)
        lines.append(CartLine(ticket_type_id=tt_id, quantity=qty))
    return lines


def parse_total(raw: Any) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise ValidationError("total_amount",
                              "total_amount must be a non-negative integer "
                              "in minor units", received=raw)
    return raw


def cart_to_json(lines: Sequence[CartLine]) -> str:
    return json.dumps(
        [{"ticket_type_id": ln.ticket_type_id, "quantity": ln.quantity}
         for ln in lines],
        separators=(",", ":"),
    )


def price_cart(
    ticket_types: Sequence[TicketType],
    lines: Sequence[CartLine],
    client_total: Optional[int] = None,
    tolerance: int = 1,
) -> PricedCart:
    """Validate ``lines`` against ``ticket_types`` and price them.

    Raises UnknownTicketType, InvalidQuantity, CapacityExceeded or
    PriceMismatch. Lines for the same ticket type are checked against
    capacity together.
    """
    if not lines:
        raise ValidationError("cart", "Cart must be a non-empty list")

    requested: Dict[str, int] = {}
    priced = []
    for line in lines:
        tt = inventory.find(ticket_types, line.ticket_type_id)
        if tt is None:
            raise UnknownTicketType(line.ticket_type_id)
        if line.quantity <= 0:
            raise InvalidQuantity(tt.id, line.quantity)
        requested[tt.id] = requested.get(tt.id, 0) + line.quantity
        priced.append(PricedLine(
            ticket_type_id=tt.id,
            ticket_type_name=tt.name,
            quantity=line.quantity,
            price=tt.price,
        ))

    for tt_id, qty in requested.items():
        tt = inventory.find(ticket_types, tt_id)
        # raises CapacityExceeded
        inventory.commit_sale(tt, qty)

    calculated_total = sum(p.subtotal for p in priced)
    if client_total is not None:
        if abs(client_total - calculated_total) > tolerance:
            raise PriceMismatch(calculated_total, client_total, tolerance)
    return PricedCart(lines=priced, calculated_total=calculated_total)
