# model/inventory.py
"""
Inventory ledger for ticket types embedded in an event:
- availability arithmetic (quantity - sold - held)
- committing a sale against a ticket type
- read-time adapter for legacy events without ticket types
- carrying sold/reserved counters across organizer edits

Everything here is pure; persistence and atomicity live in the settlement
transaction (see service.py).
"""

from __future__ import annotations
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..errors import CapacityExceeded, ValidationError
from ..helpers import new_id

LEGACY_TICKET_TYPE_NAME = "General"
LEGACY_DEFAULT_QUANTITY = 100

_LEGACY_NS = uuid.UUID("6f1c1e0a-6a53-4b7e-9d0c-5b1f3f0d2a11")


@dataclass(frozen=True)
class Hold:
    email: str
    quantity: int
    code: str


@dataclass(frozen=True)
class TicketType:
    id: str
    name: str
    price: int  # minor units
    quantity: int
    sold: int = 0
    reserved: Tuple[Hold, ...] = field(default_factory=tuple)


def held(tt: TicketType) -> int:
    return sum(h.quantity for h in tt.reserved)


def available(tt: TicketType) -> int:
    return tt.quantity - tt.sold - held(tt)


def commit_sale(tt: TicketType, quantity: int) -> TicketType:
    """Return ``tt`` with ``quantity`` more sold, or raise CapacityExceeded."""
    avail = available(tt)
    if quantity > avail:
        raise CapacityExceeded(tt.id, quantity, avail)
    return replace(tt, sold=tt.sold + quantity)


def find(ticket_types: Iterable[TicketType],
         ticket_type_id: str) -> Optional[TicketType]:
    for tt in ticket_types:
        if tt.id == ticket_type_id:
            return tt
    return None


# ------------------------------------------------------------------------------
# Document form (what sits in events.ticket_types)
# ------------------------------------------------------------------------------

def from_doc(doc: Dict[str, Any]) -> TicketType:
    return TicketType(
        id=str(doc["id"]),
        name=str(doc["name"]),
        price=int(doc.get("price") or 0),
        quantity=int(doc.get("quantity") or 0),
        sold=int(doc.get("sold") or 0),
        reserved=tuple(
            Hold(
                email=str(h.get("email", "")),
                quantity=int(h.get("quantity") or 0),
                code=str(h.get("code", "")),
            )
            for h in (doc.get("reserved") or [])
        ),
    )


def to_doc(tt: TicketType) -> Dict[str, Any]:
    return {
        "id": tt.id,
        "name": tt.name,
        "price": tt.price,
        "quantity": tt.quantity,
        "sold": tt.sold,
        "reserved": [
            {"email": h.email, "quantity": h.quantity, "code": h.code}
            for h in tt.reserved
        ],
    }


def to_view(tt: TicketType) -> Dict[str, Any]:
    doc = to_doc(tt)
    avail = available(tt)
    doc["held"] = held(tt)
    doc["available"] = avail
    doc["sold_out"] = avail <= 0
    return doc


# ------------------------------------------------------------------------------
# Legacy events
# ------------------------------------------------------------------------------

def legacy_ticket_type_id(event_id: str) -> str:
    # stable per event so carts can refer to the synthesized type
    return uuid.uuid5(_LEGACY_NS, event_id).hex


def is_legacy(row: Any) -> bool:
    return not row.ticket_types


def legacy_ticket_type(row: Any) -> TicketType:
    return TicketType(
        id=legacy_ticket_type_id(row.id),
        name=LEGACY_TICKET_TYPE_NAME,
        price=int(row.price or 0),
        quantity=int(row.max_tickets or LEGACY_DEFAULT_QUANTITY),
        sold=int(row.sold_tickets or 0),
    )


def ticket_types_for(row: Any) -> List[TicketType]:
    """Canonical ticket types of an event row; never mutates the row."""
    if is_legacy(row):
        return [legacy_ticket_type(row)]
    return [from_doc(d) for d in row.ticket_types]


# ------------------------------------------------------------------------------
# Organizer input
# ------------------------------------------------------------------------------

def _parse_input(index: int, doc: Any) -> Tuple[str, int, int]:
    if not isinstance(doc, dict):
        raise ValidationError(f"ticket_types[{index}]",
                              "Ticket type must be an object")
    name = doc.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(f"ticket_types[{index}].name",
                              f"Ticket type #{index + 1} must have a name")
    price = doc.get("price")
    if isinstance(price, bool) or not isinstance(price, int) or price < 0:
        raise ValidationError(f"ticket_types[{index}].price",
                              f"Invalid price for {name.strip()}",
                              received=price)
    quantity = doc.get("quantity")
    if (isinstance(quantity, bool) or not isinstance(quantity, int)
            or quantity < 1):
        raise ValidationError(f"ticket_types[{index}].quantity",
                              f"Invalid quantity for {name.strip()}",
                              received=quantity)
    return name.strip(), price, quantity


def _require_some(incoming: Any) -> List[Any]:
    if not isinstance(incoming, list) or not incoming:
        raise ValidationError("ticket_types",
                              "At least one ticket type is required")
    return incoming


def new_ticket_types(incoming: Any) -> List[TicketType]:
    out = []
    for i, doc in enumerate(_require_some(incoming)):
        name, price, quantity = _parse_input(i, doc)
        out.append(TicketType(id=new_id(), name=name, price=price,
                              quantity=quantity))
    return out


def carry_forward(existing: Iterable[TicketType],
                  incoming: Any) -> List[TicketType]:
    """Apply an organizer edit; sold and reserved follow the ticket-type id.

    Entries whose id is unknown become new ticket types with fresh counters.
    A quantity below what is already sold or held is rejected.
    """
    known = {tt.id: tt for tt in existing}
    out = []
    for i, doc in enumerate(_require_some(incoming)):
        name, price, quantity = _parse_input(i, doc)
        prev = known.get(str(doc.get("id") or ""))
        if prev is None:
            out.append(TicketType(id=new_id(), name=name, price=price,
                                  quantity=quantity))
            continue
        committed = prev.sold + held(prev)
        if quantity < committed:
            raise ValidationError(
                f"ticket_types[{i}].quantity",
                f"Quantity for {name} cannot go below {committed} "
                "already sold or held",
                received=quantity,
            )
        out.append(replace(prev, name=name, price=price, quantity=quantity))
    return out


def is_free(ticket_types: Iterable[TicketType]) -> bool:
    return all(tt.price == 0 for tt in ticket_types)
