# =============================================================================
# BoxOffice - Pytest Fixtures Configuration
# =============================================================================

import asyncio
import time
from types import SimpleNamespace

import pytest

from boxoffice.config import Settings
from boxoffice.gateway import MockGateway
from boxoffice.infra.sql import make_async_engine
from boxoffice.model.db import Base
from boxoffice.model.events import EventStore
from boxoffice.model.orders import OrderStore
from boxoffice.service import BoxOffice

ORGANIZER = "a" * 32
OTHER_ORGANIZER = "b" * 32
BUYER = "c" * 32

DAY = 24 * 3600


def event_data(ticket_types, **extra):
    start = time.time() + 7 * DAY
    data = {
        "title": "Test Event",
        "description": "An event for tests",
        "location": "Mumbai",
        "category": "Music",
        "start_at": start,
        "end_at": start + DAY,
        "ticket_types": ticket_types,
    }
    data.update(extra)
    return data


# =============================================================================
# Settings & Database
# =============================================================================

@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a throwaway SQLite file."""
    return Settings(
        database_url=f"sqlite:///{tmp_path}/boxoffice.db",
        webhook_secret="test-webhook-secret",
    )


@pytest.fixture
def run(settings):
    """Run ``scenario(env)`` on a fresh event loop against the test database.

    The engine is built inside the loop so connections never cross loops.
    ``env`` carries the stores, the box office and its mock gateway.
    """
    def _run(scenario):
        async def main():
            engine, SessionAsync, gated = make_async_engine(settings)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            gateway = MockGateway(settings.webhook_secret)
            events = EventStore(SessionAsync, gated)
            env = SimpleNamespace(
                settings=settings,
                SessionAsync=SessionAsync,
                gateway=gateway,
                events=events,
                orders=OrderStore(SessionAsync, gated),
                box=BoxOffice(SessionAsync, gated, gateway, settings),
            )

            async def new_event(ticket_types, organizer_id=ORGANIZER,
                                **extra):
                return await events.create_event(
                    organizer_id, event_data(ticket_types, **extra)
                )
            env.new_event = new_event

            try:
                return await scenario(env)
            finally:
                await gateway.aclose()
                await engine.dispose()
        return asyncio.run(main())
    return _run
