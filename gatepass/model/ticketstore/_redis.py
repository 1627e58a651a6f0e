from __future__ import annotations
from typing import List, Optional
import redis.asyncio as redis

from ...errors import DuplicateTicket
from ...helpers import now_ts
from ..tickets import (
    Ticket, ClaimResult, CLAIMED, NOT_FOUND, ALREADY_USED,
)


# ---- keys
def k_ticket(tid: str) -> str: return f"ticket:{tid}"
def k_order(oid: str, eid: str) -> str: return f"order:{eid}:{oid}:tickets"
def k_claim(oid: str, eid: str) -> str: return f"orderclaim:{eid}:{oid}"


# KEYS[1]=ticket hash, KEYS[2]=order set; ARGV[1]=id, ARGV[2..]=field/value
_INSERT_LUA = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
for i = 2, #ARGV, 2 do
  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
end
redis.call('SADD', KEYS[2], ARGV[1])
return 1
"""

# KEYS[1]=order claim, KEYS[2]=order set; ARGV[1]=now, ARGV[2]=cutoff or ''
# a held claim is only taken over when stale and still without tickets
_ORDER_CLAIM_LUA = """
local held = redis.call('GET', KEYS[1])
if held then
  if ARGV[2] == '' or redis.call('SCARD', KEYS[2]) > 0 then
    return 0
  end
  if tonumber(held) >= tonumber(ARGV[2]) then
    return 0
  end
end
redis.call('SET', KEYS[1], ARGV[1])
return 1
"""

# KEYS[1]=ticket hash; ARGV[1]=used_at
# 1 claimed, 0 not found, 2 already used
_CLAIM_LUA = """
local status = redis.call('HGET', KEYS[1], 'status')
if not status then
  return 0
end
if status ~= 'unused' then
  return 2
end
redis.call('HSET', KEYS[1], 'status', 'used', 'used_at', ARGV[1])
return 1
"""

# KEYS[1]=order claim, KEYS[2]=order set
_RELEASE_LUA = """
if redis.call('SCARD', KEYS[2]) == 0 then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


class TicketStore:
    """Redis tickets: one hash per ticket plus a set of ids per order.

    Writes that must be atomic run as Lua scripts, so Redis executes them
    without interleaving other commands.
    """

    def __init__(self, r: redis.Redis) -> None:
        self.r = r
        self._insert = r.register_script(_INSERT_LUA)
        self._claim = r.register_script(_CLAIM_LUA)
        self._order_claim = r.register_script(_ORDER_CLAIM_LUA)
        self._release = r.register_script(_RELEASE_LUA)

    async def count_for_order(self, order_id: str, event_id: str) -> int:
        return int(await self.r.scard(k_order(order_id, event_id)))

    async def claim_order(self, order_id: str, event_id: str, *,
                          stale_after: Optional[float] = None) -> bool:
        now = now_ts()
        cutoff = "" if stale_after is None else repr(now - stale_after)
        ok = await self._order_claim(
            keys=[k_claim(order_id, event_id), k_order(order_id, event_id)],
            args=[repr(now), cutoff],
        )
        return bool(int(ok))

    async def release_order(self, order_id: str, event_id: str) -> None:
        await self._release(
            keys=[k_claim(order_id, event_id), k_order(order_id, event_id)]
        )

    async def insert(self, ticket: Ticket) -> None:
        fields: List[str] = []
        for key, value in ticket.to_dict().items():
            # absent optionals are simply not stored
            if value is None:
                continue
            fields.extend((key, str(value)))
        created = await self._insert(
            keys=[k_ticket(ticket.id), k_order(ticket.order_id,
                                               ticket.event_id)],
            args=[ticket.id, *fields],
        )
        if not int(created):
            raise DuplicateTicket(ticket.id)

    async def claim_if_unused(self, ticket_id: str) -> ClaimResult:
        code = int(await self._claim(
            keys=[k_ticket(ticket_id)], args=[str(now_ts())]
        ))
        if code == 0:
            return ClaimResult(NOT_FOUND)
        ticket = await self.lookup(ticket_id)
        if code == 1:
            return ClaimResult(CLAIMED, ticket)
        return ClaimResult(ALREADY_USED, ticket)

    async def lookup(self, ticket_id: str) -> Optional[Ticket]:
        h = await self.r.hgetall(k_ticket(ticket_id))
        return Ticket.from_row(h) if h else None

    async def tickets_for_order(
            self, order_id: str, event_id: str) -> List[Ticket]:
        ids = await self.r.smembers(k_order(order_id, event_id))
        pipe = self.r.pipeline()
        for tid in ids:
            pipe.hgetall(k_ticket(tid))
        rows = await pipe.execute()
        tickets = [Ticket.from_row(h) for h in rows if h]
        return sorted(tickets, key=lambda t: t.seq)

    async def mark_delivery(self, ticket_id: str, state: str,
                            error: Optional[str] = None) -> None:
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_ticket(ticket_id), "delivery", state)
        if error:
            pipe.hset(k_ticket(ticket_id), "delivery_error", error)
        else:
            pipe.hdel(k_ticket(ticket_id), "delivery_error")
        await pipe.execute()
