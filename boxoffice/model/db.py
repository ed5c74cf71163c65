from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    JSON,
    Index,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=True)


class EventRow(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    organizer_id = Column(String, nullable=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String, nullable=True)
    category = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    url = Column(String, nullable=True)
    start_at = Column(Float, nullable=False)
    end_at = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)

    # embedded ticket types: one JSON document per event so a sale is a
    # single-row read-modify-write
    ticket_types = Column(JSON, nullable=False, default=list)
    is_free = Column(Boolean, nullable=False, default=False)

    # legacy flat pricing, only set on events without ticket_types
    price = Column(Integer, nullable=True)
    max_tickets = Column(Integer, nullable=True)
    sold_tickets = Column(Integer, nullable=True)

    # bumped on every write; conditional updates match on it
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("events_created_at_idx", "created_at"),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    # external payment id; at most one order per real-world payment
    payment_id = Column(String, nullable=False, unique=True)
    gateway_order_id = Column(String, nullable=True)
    event_id = Column(String, nullable=False, index=True)
    buyer_id = Column(String, nullable=False, index=True)
    items = Column(JSON, nullable=False)
    total_amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="INR")

    # pending | completed | cancelled
    status = Column(String, nullable=False, default="pending")
    attendee_info = Column(JSON, nullable=True)
    created_at = Column(Float, nullable=False)
