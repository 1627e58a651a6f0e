from typing import Optional, Protocol, List
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...infra.sql import Gated
from ..tickets import Ticket, ClaimResult
from ._sql import TicketStore as SqlTicketStore, create_schema
from ._redis import TicketStore as RedisTicketStore


class TicketStore(Protocol):
    async def count_for_order(self, order_id: str, event_id: str) -> int: ...

    async def claim_order(self, order_id: str, event_id: str, *,
                          stale_after: Optional[float] = None) -> bool:
        """Insert-if-absent on the order claim.

        With `stale_after`, a claim older than that many seconds whose
        order still has no tickets is replaced, and this call wins it.
        """

    async def release_order(self, order_id: str, event_id: str) -> None: ...

    async def insert(self, ticket: Ticket) -> None: ...

    async def claim_if_unused(self, ticket_id: str) -> ClaimResult:
        """Atomically move an unused ticket to used.

        CLAIMED carries the row as written by the claim, so `used_at` is
        the admission time (the only field that changes besides status).
        ALREADY_USED carries the stored row with the first `used_at`;
        NOT_FOUND carries no ticket.
        """

    async def lookup(self, ticket_id: str) -> Optional[Ticket]: ...

    async def tickets_for_order(
            self, order_id: str, event_id: str) -> List[Ticket]: ...

    async def mark_delivery(self, ticket_id: str, state: str,
                            error: Optional[str] = None) -> None: ...


# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: str, *,
              db: Optional[AsyncSession] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None) -> TicketStore:
    if backend == "sql":
        if db is None:
            raise RuntimeError("TicketStore(sql) requires db=AsyncSession")
        if gated is None:
            raise RuntimeError("TicketStore(sql) requires gated=Gated")
        return SqlTicketStore(db=db, gated=gated)
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "TicketStore(redis) requires r=redis.Redis "
                "(decode_responses=True)"
            )
        return RedisTicketStore(r)
    raise RuntimeError(f"unknown ticket store backend {backend!r}")


__all__ = [
    "TicketStore", "SqlTicketStore", "RedisTicketStore", "new_store",
    "create_schema",
]
