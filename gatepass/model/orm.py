from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Index,
    PrimaryKeyConstraint,
    UniqueConstraint,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class TicketRow(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)
    order_id = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    seq = Column(Integer, nullable=False, default=1)
    email = Column(String, nullable=False)
    name = Column(String, nullable=True)
    ticket_type = Column(String, nullable=False, default="Standard")

    # unused | used
    status = Column(String, nullable=False, default="unused")
    signature = Column(String, nullable=False)
    issued_at = Column(Float, nullable=False)
    used_at = Column(Float, nullable=True)

    # pending | sent | failed
    delivery = Column(String, nullable=False, default="pending")
    delivery_error = Column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "order_id", "event_id", "seq", name="uniq_ticket_order_seq"
        ),
        Index("idx_tickets_order_event", "order_id", "event_id"),
    )


class OrderClaim(Base):
    """One row per (order_id, event_id) whose tickets have been issued."""
    __tablename__ = "order_claims"
    order_id = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)

    __table_args__ = (PrimaryKeyConstraint("order_id", "event_id"),)
