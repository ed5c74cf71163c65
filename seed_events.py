import asyncio
import time

from boxoffice.config import Settings
from boxoffice.infra.sql import make_async_engine
from boxoffice.model.db import Base
from boxoffice.model.events import EventStore
from boxoffice.model.orders import OrderStore

# Demo data
ORGANIZER_ID = "0" * 31 + "1"
DAY = 24 * 3600

DEMO_EVENTS = [
    {
        "title": "Fast & Correct Systems Conf",
        "description": "Two days of talks on databases that do not lose "
                       "your money.",
        "location": "Bengaluru",
        "category": "Conference",
        "ticket_types": [
            {"name": "Early Bird", "price": 250_000, "quantity": 100},
            {"name": "Regular", "price": 450_000, "quantity": 400},
        ],
    },
    {
        "title": "Community Meetup",
        "description": "Lightning talks and chai.",
        "location": "Pune",
        "category": "Meetup",
        "ticket_types": [
            {"name": "Entry", "price": 0, "quantity": 80},
        ],
    },
]


async def seed(settings: Settings) -> None:
    engine, SessionAsync, gated = make_async_engine(settings)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        orders = OrderStore(SessionAsync, gated)
        await orders.upsert_user(ORGANIZER_ID, {
            "first_name": "Demo",
            "last_name": "Organizer",
            "email": "organizer@example.com",
        })
        print('✅ organizer created')

        events = EventStore(SessionAsync, gated)
        start = time.time() + 30 * DAY
        for data in DEMO_EVENTS:
            ev = await events.create_event(ORGANIZER_ID, {
                **data,
                "start_at": start,
                "end_at": start + DAY,
            })
            print(f"✅ event {ev['id']}: {ev['title']}")
    finally:
        await engine.dispose()


if __name__ == '__main__':
    asyncio.run(seed(Settings.from_env()))
