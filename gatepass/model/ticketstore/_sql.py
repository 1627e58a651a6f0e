from __future__ import annotations
from typing import List, Optional
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection

from ...errors import DuplicateTicket
from ...helpers import now_ts
from ...infra.sql import Gated
from ..orm import Base, TicketRow
from ..tickets import (
    Ticket, ClaimResult, CLAIMED, NOT_FOUND, ALREADY_USED,
)

TICKET_COLUMNS = """
    id, order_id, event_id, seq, email, name, ticket_type, status,
    signature, issued_at, used_at, delivery, delivery_error
"""


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)


class TicketStore:
    """SQL tickets (PostgreSQL via asyncpg, SQLite via aiosqlite).

    Every method runs in its own short transaction behind the DB gate.
    """

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def count_for_order(self, order_id: str, event_id: str) -> int:
        async with self.gated():
            async with self.db.begin():
                cnt = (await self.db.execute(text("""
                  SELECT COUNT(*) FROM tickets
                  WHERE order_id=:order_id AND event_id=:event_id
                """), {"order_id": order_id, "event_id": event_id})
                ).scalar_one()
        return int(cnt)

    async def claim_order(self, order_id: str, event_id: str, *,
                          stale_after: Optional[float] = None) -> bool:
        """Insert-if-absent on the order claim; True if we created it."""
        now = now_ts()
        async with self.gated():
            async with self.db.begin():
                if stale_after is not None:
                    await self.db.execute(text("""
                      DELETE FROM order_claims
                      WHERE order_id=:order_id AND event_id=:event_id
                        AND created_at < :cutoff
                        AND NOT EXISTS (
                          SELECT 1 FROM tickets
                          WHERE order_id=:order_id AND event_id=:event_id
                        )
                    """), {
                        "order_id": order_id,
                        "event_id": event_id,
                        "cutoff": now - stale_after,
                    })
                row = (await self.db.execute(text("""
                  INSERT INTO order_claims(order_id, event_id, created_at)
                  VALUES (:order_id, :event_id, :created_at)
                  ON CONFLICT (order_id, event_id) DO NOTHING
                  RETURNING order_id
                """), {
                    "order_id": order_id,
                    "event_id": event_id,
                    "created_at": now,
                })).first()
        return row is not None

    async def release_order(self, order_id: str, event_id: str) -> None:
        # only a claim that never produced a ticket may be released
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  DELETE FROM order_claims
                  WHERE order_id=:order_id AND event_id=:event_id
                    AND NOT EXISTS (
                      SELECT 1 FROM tickets
                      WHERE order_id=:order_id AND event_id=:event_id
                    )
                """), {"order_id": order_id, "event_id": event_id})

    async def insert(self, ticket: Ticket) -> None:
        try:
            async with self.gated():
                async with self.db.begin():
                    self.db.add(TicketRow(
                        id=ticket.id,
                        order_id=ticket.order_id,
                        event_id=ticket.event_id,
                        seq=ticket.seq,
                        email=ticket.email,
                        name=ticket.name,
                        ticket_type=ticket.ticket_type,
                        status=ticket.status,
                        signature=ticket.signature,
                        issued_at=ticket.issued_at,
                        used_at=ticket.used_at,
                        delivery=ticket.delivery,
                        delivery_error=ticket.delivery_error,
                    ))
        except IntegrityError:
            if await self.lookup(ticket.id) is not None:
                raise DuplicateTicket(ticket.id)
            raise
        finally:
            self.db.expunge_all()

    async def claim_if_unused(self, ticket_id: str) -> ClaimResult:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(f"""
                  UPDATE tickets
                     SET status='used', used_at=:used_at
                   WHERE id=:id AND status='unused'
                  RETURNING {TICKET_COLUMNS}
                """), {"id": ticket_id, "used_at": now_ts()})
                ).mappings().first()
        if row is not None:
            return ClaimResult(CLAIMED, Ticket.from_row(row))

        # the claim is decided; this only tells the two losers apart
        existing = await self.lookup(ticket_id)
        if existing is None:
            return ClaimResult(NOT_FOUND)
        return ClaimResult(ALREADY_USED, existing)

    async def lookup(self, ticket_id: str) -> Optional[Ticket]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(f"""
                  SELECT {TICKET_COLUMNS} FROM tickets WHERE id=:id
                """), {"id": ticket_id})).mappings().first()
        return Ticket.from_row(row) if row else None

    async def tickets_for_order(
            self, order_id: str, event_id: str) -> List[Ticket]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text(f"""
                  SELECT {TICKET_COLUMNS} FROM tickets
                  WHERE order_id=:order_id AND event_id=:event_id
                  ORDER BY seq
                """), {"order_id": order_id, "event_id": event_id})
                ).mappings().all()
        return [Ticket.from_row(r) for r in rows]

    async def mark_delivery(self, ticket_id: str, state: str,
                            error: Optional[str] = None) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  UPDATE tickets SET delivery=:state, delivery_error=:error
                  WHERE id=:id
                """), {"id": ticket_id, "state": state, "error": error})
