from __future__ import annotations
from typing import Iterable, List, Optional


class GatepassError(Exception):
    """Base class; `kind` is the stable error code reported to callers."""
    kind = "SERVER_ERROR"

    def __init__(self, message: str = "", *, kind: Optional[str] = None):
        super().__init__(message or self.kind)
        if kind is not None:
            self.kind = kind

    @property
    def message(self) -> str:
        return str(self)


# ----------------------------
# Input errors
# ----------------------------
class InvalidInput(GatepassError):
    kind = "INVALID_INPUT"


class TokenError(GatepassError):
    pass


class MalformedToken(TokenError):
    kind = "MALFORMED"


class SignatureMismatch(TokenError):
    kind = "SIGNATURE_MISMATCH"


class WebhookPayloadError(GatepassError):
    """BAD_JSON | NO_ORDER_ID | NO_EMAIL"""

    def __init__(self, kind: str, hint: str = ""):
        super().__init__(hint or kind, kind=kind)
        self.hint = hint


# ----------------------------
# Store errors
# ----------------------------
class DuplicateTicket(GatepassError):
    kind = "DUPLICATE_ID"

    def __init__(self, ticket_id: str):
        super().__init__(f"ticket {ticket_id} already exists")
        self.ticket_id = ticket_id


# ----------------------------
# Dependency failures
# ----------------------------
DB_CHECK_FAILED = "DB_CHECK_FAILED"
DB_INSERT_FAILED = "DB_INSERT_FAILED"
RENDER_FAILED = "RENDER_FAILED"
DELIVERY_FAILED = "DELIVERY_FAILED"
# another delivery holds the order claim and has not stored a ticket yet
IN_PROGRESS = "IN_PROGRESS"


class IssuanceFailed(GatepassError):
    """A step of ticket issuance failed; tickets issued before it stay."""

    def __init__(self, kind: str, *, step: str, message: str,
                 order_id: str, issued: Optional[List[str]] = None):
        super().__init__(message, kind=kind)
        self.step = step
        self.order_id = order_id
        self.issued = list(issued or [])


# ----------------------------
# Configuration
# ----------------------------
class ConfigError(GatepassError):
    kind = "ENV_MISSING"

    def __init__(self, missing: Iterable[str], message: str = ""):
        self.missing = sorted(set(missing))
        super().__init__(
            message or "missing configuration: " + ", ".join(self.missing)
        )
