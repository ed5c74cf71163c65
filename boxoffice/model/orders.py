# model/orders.py
"""Order reads plus the local mirror of buyer/organizer identities."""

from __future__ import annotations
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import OrderNotFound, ValidationError
from ..helpers import is_valid_email, to_iso, total_pages
from ..infra.sql import Gated
from ..infra.timings import timeit
from .db import EventRow, Order, User
from .events import require_id

# settlement only ever writes completed orders
STATUS_COMPLETED = "completed"


def order_view(o: Order) -> Dict[str, Any]:
    return {
        "id": o.id,
        "payment_id": o.payment_id,
        "gateway_order_id": o.gateway_order_id,
        "event_id": o.event_id,
        "buyer_id": o.buyer_id,
        "items": list(o.items or []),
        "total_amount": o.total_amount,
        "currency": o.currency,
        "status": o.status,
        "attendee_info": o.attendee_info,
        "created_at": to_iso(o.created_at),
    }


# UN-GATED internal function
async def find_by_payment_id(db: AsyncSession,
                             payment_id: str) -> Optional[Order]:
    return (await db.execute(
        select(Order).where(Order.payment_id == payment_id)
    )).scalar_one_or_none()


class OrderStore:
    def __init__(self, SessionAsync, gated: Gated) -> None:
        self.SessionAsync = SessionAsync
        self.gated = gated

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        require_id("order_id", order_id)
        async with timeit("db.get_order"):
            async with self.gated():
                async with self.SessionAsync() as db:
                    o = await db.get(Order, order_id)
        if o is None:
            raise OrderNotFound(order_id)
        return order_view(o)

    async def get_order_by_payment_id(self,
                                      payment_id: str) -> Dict[str, Any]:
        async with self.gated():
            async with self.SessionAsync() as db:
                o = await find_by_payment_id(db, payment_id)
        if o is None:
            raise OrderNotFound(payment_id)
        return order_view(o)

    async def orders_by_event(self, event_id: str,
                              search: Optional[str] = None) -> list:
        """Orders of one event, optionally filtered by buyer name."""
        require_id("event_id", event_id)
        buyer_name = (User.first_name + " " + User.last_name)
        stmt = (
            select(Order, EventRow.title, buyer_name)
            .join(EventRow, EventRow.id == Order.event_id)
            .outerjoin(User, User.id == Order.buyer_id)
            .where(Order.event_id == event_id)
            .order_by(Order.created_at.desc())
        )
        if search:
            stmt = stmt.where(
                func.lower(buyer_name).contains(search.strip().lower(),
                                              autoescape=True)
            )
        async with timeit("db.orders_by_event"):
            async with self.gated():
                async with self.SessionAsync() as db:
                    rows = (await db.execute(stmt)).all()
        out = []
        for o, title, name in rows:
            out.append({
                "id": o.id,
                "total_amount": o.total_amount,
                "created_at": to_iso(o.created_at),
                "event_title": title,
                "event_id": o.event_id,
                "buyer": (name or "").strip(),
                "status": o.status,
                "items": [
                    {k: it[k] for k in
                     ("ticket_type_name", "quantity", "price")}
                    for it in (o.items or [])
                ],
            })
        return out

    async def orders_by_user(self, user_id: str, page: Any = 1,
                             limit: Any = 3) -> Dict[str, Any]:
        require_id("user_id", user_id)
        try:
            page = max(1, int(page or 1))
            limit = max(1, min(int(limit or 3), 100))
        except (TypeError, ValueError):
            raise ValidationError("page", "page and limit must be integers")
        async with self.gated():
            async with self.SessionAsync() as db:
                count = (await db.execute(
                    select(func.count()).select_from(Order)
                    .where(Order.buyer_id == user_id)
                )).scalar_one()
                rows = (await db.execute(
                    select(Order)
                    .where(Order.buyer_id == user_id)
                    .order_by(Order.created_at.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                )).scalars().all()
        return {
            "data": [order_view(o) for o in rows],
            "total_pages": total_pages(int(count), limit),
        }

    async def upsert_user(self, user_id: str,
                          data: Dict[str, Any]) -> Dict[str, Any]:
        require_id("user_id", user_id)
        email = data.get("email")
        if email is not None and not is_valid_email(email):
            raise ValidationError("email", "email is not a valid address")
        async with self.gated():
            async with self.SessionAsync() as db:
                async with db.begin():
                    user = await db.get(User, user_id)
                    if user is None:
                        user = User(id=user_id)
                        db.add(user)
                    user.first_name = str(data.get("first_name") or "")
                    user.last_name = str(data.get("last_name") or "")
                    user.email = email.strip() if email else None
        return {
            "id": user.id,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email": user.email,
        }
