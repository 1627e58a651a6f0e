"""
Ticket issuance: one paid order in, `quantity` signed tickets out, once.

Per order the flow is

  1) validate input (no side effects before this passes)
  2) idempotency guard: existing tickets -> report them and stop;
     otherwise take the order claim (insert-if-absent). Losing the claim
     to a delivery that already stored tickets is "already issued"; losing
     it before any ticket exists is IN_PROGRESS, and the sender retries.
     A claim that produced no ticket within `order_claim_ttl` is stale
     and can be taken over.
  3) per unit: mint -> insert -> render QR -> deliver email

Any failing step aborts the call with IssuanceFailed. Tickets inserted
before the failure stay; a retry sees them and stops, and
`redeliver()` picks up tickets whose email never went out.
"""
from __future__ import annotations
import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from loguru import logger

from .config import DEFAULT_QR_SIZE, DEFAULT_TICKET_TYPE
from .delivery import Mailer, compose_ticket_email
from .errors import (
    InvalidInput, IssuanceFailed,
    DB_CHECK_FAILED, DB_INSERT_FAILED, RENDER_FAILED, DELIVERY_FAILED,
    IN_PROGRESS,
)
from .helpers import now_ts, ct_equal
from .model.ticketstore import TicketStore
from .model.tickets import Ticket, UNUSED, SENT, FAILED
from .render import Renderer
from .tokens import TokenCodec, check_field, DELIMITER

T = TypeVar("T")


@dataclass
class PaidOrder:
    order_id: str
    email: str
    event_id: str
    name: Optional[str] = None
    ticket_type: str = DEFAULT_TICKET_TYPE
    quantity: int = 1


@dataclass
class IssueResult:
    order_id: str
    issued: int
    existing: int = 0
    ticket_ids: List[str] = field(default_factory=list)

    def as_response(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "ok": True, "issued": self.issued, "order_id": self.order_id
        }
        if self.existing:
            out["existing"] = self.existing
        return out


@dataclass
class RedeliverResult:
    order_id: str
    total: int
    delivered: List[str] = field(default_factory=list)


def validate(order: PaidOrder) -> None:
    if not order.order_id or not order.order_id.strip():
        raise InvalidInput("order_id is required")
    if not order.email or not order.email.strip():
        raise InvalidInput("email is required")
    if (isinstance(order.quantity, bool)
            or not isinstance(order.quantity, int) or order.quantity < 1):
        raise InvalidInput("quantity must be a positive integer")
    check_field("order_id", order.order_id)
    check_field("event_id", order.event_id)


class IssuanceEngine:
    def __init__(self, *, store: TicketStore, codec: TokenCodec,
                 renderer: Renderer, mailer: Mailer, event_name: str,
                 qr_size: int = DEFAULT_QR_SIZE,
                 step_timeout: float = 30.0,
                 order_claim_ttl: float = 300.0) -> None:
        self.store = store
        self.codec = codec
        self.renderer = renderer
        self.mailer = mailer
        self.event_name = event_name
        self.qr_size = qr_size
        self.step_timeout = step_timeout
        self.order_claim_ttl = order_claim_ttl

    async def _step(self, kind: str, step: str, aw: Awaitable[T], *,
                    order_id: str, issued: List[str]) -> T:
        try:
            return await asyncio.wait_for(aw, timeout=self.step_timeout)
        except asyncio.TimeoutError:
            raise IssuanceFailed(
                kind, step=step, order_id=order_id, issued=issued,
                message=f"{step} timed out after {self.step_timeout}s",
            )
        except Exception as e:
            raise IssuanceFailed(
                kind, step=step, order_id=order_id, issued=issued,
                message=str(e) or e.__class__.__name__,
            ) from e

    async def issue(self, order: PaidOrder) -> IssueResult:
        validate(order)
        oid, eid = order.order_id, order.event_id
        log = logger.bind(order_id=oid, event_id=eid)
        issued: List[str] = []

        # -- idempotency guard
        existing = await self._step(
            DB_CHECK_FAILED, "count", self.store.count_for_order(oid, eid),
            order_id=oid, issued=issued,
        )
        if existing > 0:
            log.info("order already issued ({} tickets)", existing)
            return IssueResult(order_id=oid, issued=0, existing=existing)

        claimed = await self._step(
            DB_CHECK_FAILED, "claim_order",
            self.store.claim_order(oid, eid,
                                   stale_after=self.order_claim_ttl),
            order_id=oid, issued=issued,
        )
        if not claimed:
            existing = await self._step(
                DB_CHECK_FAILED, "count",
                self.store.count_for_order(oid, eid),
                order_id=oid, issued=issued,
            )
            if existing == 0:
                # claimed but nothing stored yet: the sender must retry
                log.warning("order claimed elsewhere, no tickets yet")
                raise IssuanceFailed(
                    IN_PROGRESS, step="claim_order", order_id=oid,
                    issued=issued,
                    message="order is being issued by another delivery",
                )
            log.info("order claimed by a concurrent delivery")
            return IssueResult(order_id=oid, issued=0, existing=existing)

        # -- issue
        for seq in range(1, order.quantity + 1):
            tid = str(uuid.uuid4())
            token = self.codec.mint(tid, oid, eid)
            ticket = Ticket(
                id=tid,
                order_id=oid,
                event_id=eid,
                seq=seq,
                email=order.email,
                name=order.name or None,
                ticket_type=order.ticket_type or DEFAULT_TICKET_TYPE,
                signature=token.rsplit(DELIMITER, 1)[1],
                issued_at=now_ts(),
            )
            try:
                await self._step(
                    DB_INSERT_FAILED, "insert", self.store.insert(ticket),
                    order_id=oid, issued=issued,
                )
            except IssuanceFailed as e:
                log.error("insert failed for ticket {}/{}: {}",
                          seq, order.quantity, e.message)
                if not issued:
                    await self._release(oid, eid)
                raise
            issued.append(tid)
            await self._send(ticket, token, issued)
            log.info("issued ticket {} ({}/{})", tid, seq, order.quantity)

        return IssueResult(order_id=oid, issued=len(issued),
                           ticket_ids=issued)

    async def redeliver(self, order_id: str, event_id: str) -> RedeliverResult:
        """Re-send every unused ticket of the order not yet delivered."""
        delivered: List[str] = []
        tickets = await self._step(
            DB_CHECK_FAILED, "tickets_for_order",
            self.store.tickets_for_order(order_id, event_id),
            order_id=order_id, issued=delivered,
        )
        for ticket in tickets:
            if ticket.status != UNUSED or ticket.delivery == SENT:
                continue
            token = self.codec.mint(ticket.id, ticket.order_id,
                                    ticket.event_id)
            if not ct_equal(token.rsplit(DELIMITER, 1)[1], ticket.signature):
                logger.warning(
                    "ticket {} was signed with another secret; "
                    "sending a token for the current one", ticket.id
                )
            await self._send(ticket, token, delivered)
            delivered.append(ticket.id)
        return RedeliverResult(order_id=order_id, total=len(tickets),
                               delivered=delivered)

    async def _send(self, ticket: Ticket, token: str,
                    issued: List[str]) -> None:
        oid = ticket.order_id
        try:
            png = await self._step(
                RENDER_FAILED, "render",
                self.renderer.render(token, self.qr_size),
                order_id=oid, issued=issued,
            )
            email = compose_ticket_email(
                to=ticket.email,
                name=ticket.name,
                event_name=self.event_name,
                order_id=oid,
                ticket_id=ticket.id,
                ticket_type=ticket.ticket_type,
                token=token,
                png=png,
            )
            await self._step(
                DELIVERY_FAILED, "deliver", self.mailer.deliver(email),
                order_id=oid, issued=issued,
            )
        except IssuanceFailed as e:
            logger.bind(order_id=oid, ticket_id=ticket.id, step=e.step).error(
                "{}: {}", e.kind, e.message
            )
            await self._mark(ticket.id, FAILED, f"{e.kind}: {e.message}")
            raise
        await self._mark(ticket.id, SENT)

    async def _mark(self, ticket_id: str, state: str,
                    error: Optional[str] = None) -> None:
        # bookkeeping only; the outcome of the call is already decided
        try:
            await asyncio.wait_for(
                self.store.mark_delivery(ticket_id, state, error),
                timeout=self.step_timeout,
            )
        except Exception:
            logger.opt(exception=True).error(
                "could not record delivery={} for ticket {}", state, ticket_id
            )

    async def _release(self, order_id: str, event_id: str) -> None:
        try:
            await asyncio.wait_for(
                self.store.release_order(order_id, event_id),
                timeout=self.step_timeout,
            )
        except Exception:
            logger.opt(exception=True).error(
                "could not release order claim {}/{}; retries will report "
                "it as issued", order_id, event_id
            )
