"""
Ticket tokens.

A token is four dot-separated segments::

    <ticket_id>.<order_id>.<event_id>.<signature>

where the signature is HMAC-SHA256 over the first three segments (joined by
".") keyed with the server secret, base64url encoded without padding. The
token is self-contained: verifying it needs the secret only, no store.

Rotating the secret invalidates every token minted before the rotation.
"""
from __future__ import annotations
import base64
import hashlib
import hmac
from typing import NamedTuple

from .errors import InvalidInput, MalformedToken, SignatureMismatch
from .helpers import ct_equal

DELIMITER = "."


class TokenClaims(NamedTuple):
    ticket_id: str
    order_id: str
    event_id: str


def check_field(name: str, value: str) -> None:
    if not value:
        raise InvalidInput(f"{name} must not be empty")
    if DELIMITER in value:
        raise InvalidInput(f"{name} must not contain {DELIMITER!r}")


class TokenCodec:
    def __init__(self, secret: str | bytes) -> None:
        if not secret:
            raise ValueError("TokenCodec needs a non-empty secret")
        self._key = secret.encode() if isinstance(secret, str) else secret

    def sign(self, ticket_id: str, order_id: str, event_id: str) -> str:
        payload = DELIMITER.join((ticket_id, order_id, event_id))
        mac = hmac.new(self._key, payload.encode(), hashlib.sha256).digest()
        return base64.urlsafe_b64encode(mac).rstrip(b"=").decode()

    def mint(self, ticket_id: str, order_id: str, event_id: str) -> str:
        check_field("ticket_id", ticket_id)
        check_field("order_id", order_id)
        check_field("event_id", event_id)
        sig = self.sign(ticket_id, order_id, event_id)
        return DELIMITER.join((ticket_id, order_id, event_id, sig))

    def verify(self, token: str) -> TokenClaims:
        parts = (token or "").split(DELIMITER)
        if len(parts) != 4 or not all(parts):
            raise MalformedToken("token must have four non-empty segments")
        tid, oid, eid, sig = parts
        if not ct_equal(self.sign(tid, oid, eid), sig):
            raise SignatureMismatch("signature does not match")
        return TokenClaims(tid, oid, eid)
