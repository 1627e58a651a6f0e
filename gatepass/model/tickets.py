from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional

from ..helpers import to_iso

# status
UNUSED = "unused"
USED = "used"

# delivery
PENDING = "pending"
SENT = "sent"
FAILED = "failed"

# claim outcomes
CLAIMED = "CLAIMED"
NOT_FOUND = "NOT_FOUND"
ALREADY_USED = "ALREADY_USED"


@dataclass
class Ticket:
    id: str
    order_id: str
    event_id: str
    email: str
    signature: str
    seq: int = 1
    name: Optional[str] = None
    ticket_type: str = "Standard"
    status: str = UNUSED
    issued_at: float = 0.0
    used_at: Optional[float] = None
    delivery: str = PENDING
    delivery_error: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Ticket":
        return cls(
            id=row["id"],
            order_id=row["order_id"],
            event_id=row["event_id"],
            email=row["email"],
            signature=row["signature"],
            seq=int(row.get("seq") or 1),
            name=row.get("name") or None,
            ticket_type=row.get("ticket_type") or "Standard",
            status=row.get("status") or UNUSED,
            issued_at=float(row.get("issued_at") or 0.0),
            used_at=(
                None if row.get("used_at") in (None, "")
                else float(row["used_at"])
            ),
            delivery=row.get("delivery") or PENDING,
            delivery_error=row.get("delivery_error") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def public(self) -> Dict[str, Any]:
        # what admin endpoints show; the signature stays server-side
        return {
            "ticket_id": self.id,
            "order_id": self.order_id,
            "event_id": self.event_id,
            "seq": self.seq,
            "email": self.email,
            "name": self.name,
            "ticket_type": self.ticket_type,
            "status": self.status,
            "issued_at": to_iso(self.issued_at),
            "used_at": to_iso(self.used_at),
            "delivery": self.delivery,
            "delivery_error": self.delivery_error,
        }


@dataclass
class ClaimResult:
    outcome: str  # CLAIMED | NOT_FOUND | ALREADY_USED
    ticket: Optional[Ticket] = None

    @property
    def claimed(self) -> bool:
        return self.outcome == CLAIMED
