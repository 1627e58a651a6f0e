from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger

from .errors import MalformedToken, SignatureMismatch
from .helpers import short, to_iso
from .model.ticketstore import TicketStore
from .model.tickets import Ticket, CLAIMED, ALREADY_USED, NOT_FOUND
from .tokens import TokenCodec

BAD_TOKEN = "BAD_TOKEN"
SIGN_INVALID = "SIGN_INVALID"


@dataclass
class Redemption:
    valid: bool
    reason: Optional[str] = None  # None when valid
    ticket: Optional[Ticket] = None

    def as_response(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.valid, "valid": self.valid}
        if self.reason:
            out["error"] = self.reason
        t = self.ticket
        if t is not None:
            out.update({
                "tid": t.id,
                "order_id": t.order_id,
                "name": t.name,
                "type": t.ticket_type,
                "used": not self.valid,
                "used_at": to_iso(t.used_at),
            })
        return out


class RedemptionEngine:
    """Single-use gate check: verify the token, then claim the ticket."""

    def __init__(self, *, store: TicketStore, codec: TokenCodec) -> None:
        self.store = store
        self.codec = codec

    async def redeem(self, token: str) -> Redemption:
        try:
            claims = self.codec.verify(token)
        except MalformedToken:
            logger.warning("malformed token {}", short(token))
            return Redemption(False, BAD_TOKEN)
        except SignatureMismatch:
            logger.warning("bad signature on token {}", short(token))
            return Redemption(False, SIGN_INVALID)

        result = await self.store.claim_if_unused(claims.ticket_id)
        log = logger.bind(ticket_id=claims.ticket_id,
                          order_id=claims.order_id)
        if result.outcome == CLAIMED:
            log.info("ticket admitted")
            return Redemption(True, ticket=result.ticket)

        if result.outcome == ALREADY_USED:
            ticket = result.ticket
            if ticket is None:
                ticket = await self.store.lookup(claims.ticket_id)
            log.info("ticket already used at {}",
                     to_iso(ticket.used_at) if ticket else "?")
            return Redemption(False, ALREADY_USED, ticket)

        log.warning("signed token for unknown ticket")
        return Redemption(False, NOT_FOUND)
