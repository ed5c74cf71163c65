# model/events.py
"""
Event catalogue: create/update/delete for organizers, reads for buyers.

Ticket types are embedded in the event row (events.ticket_types). Every
write goes through ``write_ticket_types``, a conditional UPDATE on the row's
``version`` so a stale writer can never clobber counters a concurrent
settlement just committed.
"""

from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    ConcurrencyConflict, EventNotFound, NotEventOwner, ValidationError,
)
from ..helpers import is_valid_id, new_id, now_ts, to_iso, total_pages
from ..infra.sql import Gated
from ..infra.timings import timeit
from . import inventory
from .db import EventRow
from .inventory import TicketType

log = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 6
MAX_PAGE_SIZE = 100
UPDATE_MAX_RETRIES = 3


# ------------------------------------------------------------------------------
# Input parsing
# ------------------------------------------------------------------------------

def require_id(field: str, value: Any) -> str:
    if not is_valid_id(value):
        raise ValidationError(field, f"{field} is not a valid identifier")
    return value


def _parse_time(field: str, value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(field, f"{field} is not an ISO timestamp",
                                  received=value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    raise ValidationError(field, f"{field} is required")


def _opt_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(key, f"{key} must be a string")
    return value.strip()


def parse_event_fields(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError("event", "Event data is required")
    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("title", "Event title is required")
    start_at = _parse_time("start_at", data.get("start_at"))
    end_at = _parse_time("end_at", data.get("end_at"))
    if end_at <= start_at:
        raise ValidationError("end_at", "End date must be after start date")
    return {
        "title": title.strip(),
        "description": _opt_str(data, "description"),
        "location": _opt_str(data, "location"),
        "category": _opt_str(data, "category"),
        "image_url": _opt_str(data, "image_url"),
        "url": _opt_str(data, "url"),
        "start_at": start_at,
        "end_at": end_at,
    }


def _page_args(page: Any, limit: Any) -> tuple[int, int]:
    try:
        page = max(1, int(page or 1))
        limit = int(limit or DEFAULT_PAGE_SIZE)
    except (TypeError, ValueError):
        raise ValidationError("page", "page and limit must be integers")
    return page, max(1, min(limit, MAX_PAGE_SIZE))


def _like(term: str) -> str:
    escaped = (term.replace("\\", "\\\\")
                   .replace("%", "\\%")
                   .replace("_", "\\_"))
    return f"%{escaped}%"


# ------------------------------------------------------------------------------
# Views
# ------------------------------------------------------------------------------

def event_view(row: EventRow) -> Dict[str, Any]:
    ticket_types = inventory.ticket_types_for(row)
    return {
        "id": row.id,
        "organizer_id": row.organizer_id,
        "title": row.title,
        "description": row.description,
        "location": row.location,
        "category": row.category,
        "image_url": row.image_url,
        "url": row.url,
        "start_at": to_iso(row.start_at),
        "end_at": to_iso(row.end_at),
        "created_at": to_iso(row.created_at),
        "is_free": inventory.is_free(ticket_types),
        "has_multiple_ticket_types": len(ticket_types) > 1,
        "ticket_types": [inventory.to_view(tt) for tt in ticket_types],
    }


# counters only; hold emails stay private
INVENTORY_HIDDEN = ("price", "reserved")


def inventory_view(row: EventRow) -> Dict[str, Any]:
    ticket_types = []
    for tt in inventory.ticket_types_for(row):
        view = inventory.to_view(tt)
        for key in INVENTORY_HIDDEN:
            view.pop(key)
        ticket_types.append(view)
    return {
        "event_id": row.id,
        "timestamp": to_iso(now_ts()),
        "ticket_types": ticket_types,
    }


# ------------------------------------------------------------------------------
# Low-level row access (un-gated; callers own the transaction)
# ------------------------------------------------------------------------------

async def load_event(db: AsyncSession, event_id: str) -> EventRow:
    row = (await db.execute(
        select(EventRow).where(EventRow.id == event_id)
    )).scalar_one_or_none()
    if row is None:
        raise EventNotFound(event_id)
    return row


async def write_ticket_types(
    db: AsyncSession,
    row: EventRow,
    ticket_types: Sequence[TicketType],
    *,
    fields: Optional[Dict[str, Any]] = None,
    embed: Optional[bool] = None,
) -> bool:
    """Conditionally persist ``ticket_types`` for ``row``.

    Returns False if the row's version moved since it was read. ``embed``
    defaults to the row's current shape: legacy rows keep their flat
    ``sold_tickets`` column in sync, pass ``embed=True`` to migrate them.
    """
    if embed is None:
        embed = not inventory.is_legacy(row)
    values: Dict[str, Any] = dict(fields or {})
    if embed:
        values["ticket_types"] = [inventory.to_doc(tt) for tt in ticket_types]
        if inventory.is_legacy(row):
            values.update(price=None, max_tickets=None, sold_tickets=None)
    else:
        (tt,) = ticket_types
        values["sold_tickets"] = tt.sold
    values["is_free"] = inventory.is_free(ticket_types)
    values["version"] = row.version + 1

    result = await db.execute(
        update(EventRow)
        .where(EventRow.id == row.id, EventRow.version == row.version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ------------------------------------------------------------------------------
# Store
# ------------------------------------------------------------------------------

class EventStore:
    def __init__(self, SessionAsync, gated: Gated) -> None:
        self.SessionAsync = SessionAsync
        self.gated = gated

    async def create_event(self, organizer_id: str,
                           data: Dict[str, Any]) -> Dict[str, Any]:
        require_id("organizer_id", organizer_id)
        fields = parse_event_fields(data)
        ticket_types = inventory.new_ticket_types(data.get("ticket_types"))

        row = EventRow(
            id=new_id(),
            organizer_id=organizer_id,
            created_at=now_ts(),
            ticket_types=[inventory.to_doc(tt) for tt in ticket_types],
            is_free=inventory.is_free(ticket_types),
            version=1,
            **fields,
        )
        async with timeit("db.create_event"):
            async with self.gated():
                async with self.SessionAsync() as db:
                    async with db.begin():
                        db.add(row)
        log.info("event %s created by %s with %d ticket types",
                 row.id, organizer_id, len(ticket_types))
        return event_view(row)

    async def create_legacy_event(self, organizer_id: str,
                                  data: Dict[str, Any], *, price: int,
                                  max_tickets: int,
                                  sold_tickets: int = 0) -> Dict[str, Any]:
        """Store an event in the pre-ticket-type shape (imports, fixtures)."""
        require_id("organizer_id", organizer_id)
        fields = parse_event_fields(data)
        row = EventRow(
            id=new_id(),
            organizer_id=organizer_id,
            created_at=now_ts(),
            ticket_types=[],
            is_free=price == 0,
            price=price,
            max_tickets=max_tickets,
            sold_tickets=sold_tickets,
            version=1,
            **fields,
        )
        async with self.gated():
            async with self.SessionAsync() as db:
                async with db.begin():
                    db.add(row)
        return event_view(row)

    async def update_event(self, organizer_id: str, event_id: str,
                           data: Dict[str, Any]) -> Dict[str, Any]:
        require_id("organizer_id", organizer_id)
        require_id("event_id", event_id)
        fields = parse_event_fields(data)

        for _ in range(UPDATE_MAX_RETRIES):
            async with timeit("db.update_event"):
                async with self.gated():
                    async with self.SessionAsync() as db:
                        async with db.begin():
                            row = await load_event(db, event_id)
                            if row.organizer_id != organizer_id:
                                raise NotEventOwner(event_id)
                            ticket_types = inventory.carry_forward(
                                inventory.ticket_types_for(row),
                                data.get("ticket_types"),
                            )
                            ok = await write_ticket_types(
                                db, row, ticket_types,
                                fields=fields, embed=True,
                            )
            if ok:
                return await self.get_event(event_id)
        raise ConcurrencyConflict(event_id, UPDATE_MAX_RETRIES)

    async def delete_event(self, organizer_id: str, event_id: str) -> None:
        require_id("organizer_id", organizer_id)
        require_id("event_id", event_id)
        async with self.gated():
            async with self.SessionAsync() as db:
                async with db.begin():
                    result = await db.execute(
                        delete(EventRow).where(
                            EventRow.id == event_id,
                            EventRow.organizer_id == organizer_id,
                        )
                    )
                    if result.rowcount != 1:
                        raise NotEventOwner(event_id)
        log.info("event %s deleted by %s", event_id, organizer_id)

    async def get_event(self, event_id: str) -> Dict[str, Any]:
        require_id("event_id", event_id)
        async with timeit("db.get_event"):
            async with self.gated():
                async with self.SessionAsync() as db:
                    row = await load_event(db, event_id)
        return event_view(row)

    async def get_inventory(self, event_id: str) -> Dict[str, Any]:
        require_id("event_id", event_id)
        async with self.gated():
            async with self.SessionAsync() as db:
                row = await load_event(db, event_id)
        return inventory_view(row)

    async def _page(self, conditions: List[Any], page: Any,
                    limit: Any) -> Dict[str, Any]:
        page, limit = _page_args(page, limit)
        async with timeit("db.list_events"):
            async with self.gated():
                async with self.SessionAsync() as db:
                    count = (await db.execute(
                        select(func.count()).select_from(EventRow)
                        .where(*conditions)
                    )).scalar_one()
                    rows = (await db.execute(
                        select(EventRow)
                        .where(*conditions)
                        .order_by(EventRow.created_at.desc())
                        .offset((page - 1) * limit)
                        .limit(limit)
                    )).scalars().all()
        return {
            "data": [event_view(r) for r in rows],
            "total_pages": total_pages(int(count), limit),
        }

    async def list_events(self, query: Optional[str] = None,
                          category: Optional[str] = None,
                          location: Optional[str] = None,
                          is_free: Optional[bool] = None,
                          page: Any = 1,
                          limit: Any = DEFAULT_PAGE_SIZE) -> Dict[str, Any]:
        conditions = []
        if query:
            pattern = _like(query)
            conditions.append(or_(
                EventRow.title.ilike(pattern, escape="\\"),
                EventRow.description.ilike(pattern, escape="\\"),
            ))
        if category:
            conditions.append(func.lower(EventRow.category)
                              == category.strip().lower())
        if location:
            conditions.append(
                EventRow.location.ilike(_like(location), escape="\\")
            )
        if is_free:
            conditions.append(EventRow.is_free.is_(True))
        return await self._page(conditions, page, limit)

    async def events_by_organizer(self, organizer_id: str, page: Any = 1,
                                  limit: Any = DEFAULT_PAGE_SIZE
                                  ) -> Dict[str, Any]:
        require_id("organizer_id", organizer_id)
        return await self._page([EventRow.organizer_id == organizer_id],
                                page, limit)

    async def related_events(self, event_id: str, page: Any = 1,
                             limit: Any = 3) -> Dict[str, Any]:
        require_id("event_id", event_id)
        async with self.gated():
            async with self.SessionAsync() as db:
                row = await load_event(db, event_id)
        if not row.category:
            return {"data": [], "total_pages": 0}
        return await self._page(
            [EventRow.category == row.category, EventRow.id != event_id],
            page, limit,
        )
