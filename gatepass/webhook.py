"""
Paid-order webhook payloads (Tilda style).

Tilda posts either JSON or form-urlencoded bodies, and the `payment` and
`products` fields may arrive as objects or as JSON encoded strings. This
module turns whatever arrived into a `PaidOrder`.
"""
from __future__ import annotations
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl

import orjson

from .config import DEFAULT_TICKET_TYPE
from .errors import WebhookPayloadError
from .helpers import first_non_empty
from .issuance import PaidOrder


def safe_json(raw: Any) -> Optional[Any]:
    try:
        return orjson.loads(raw)
    except (orjson.JSONDecodeError, TypeError):
        return None


def parse_body(raw: bytes, content_type: str) -> Optional[Dict[str, Any]]:
    """Decode a webhook body by content type; None if it is not an object."""
    ct = (content_type or "").lower()
    parsed: Any = None
    if "application/json" in ct:
        parsed = safe_json(raw)
    elif "application/x-www-form-urlencoded" in ct:
        parsed = dict(parse_qsl(raw.decode("utf-8", "replace"),
                                keep_blank_values=True))
    else:
        parsed = safe_json(raw)
        if parsed is None and raw:
            parsed = dict(parse_qsl(raw.decode("utf-8", "replace"),
                                    keep_blank_values=True)) or None
    if isinstance(parsed, dict) and isinstance(parsed.get("payment"), str):
        payment = safe_json(parsed["payment"])
        if isinstance(payment, dict):
            parsed["payment"] = payment
    return parsed if isinstance(parsed, dict) else None


def _quantity(body: Mapping[str, Any], payment: Mapping[str, Any]) -> int:
    products = payment.get("products") or body.get("products") or []
    if isinstance(products, str):
        products = safe_json(products) or []
    try:
        if isinstance(products, list) and products:
            total = 0
            for p in products:
                if isinstance(p, dict):
                    total += int(float(p.get("quantity") or 0))
            return max(total, 1)
        n = int(float(body.get("tickets_qty") or body.get("quantity")
                      or 1))
        return max(n, 1)
    except (TypeError, ValueError, OverflowError):
        return 1


def normalize(body: Optional[Mapping[str, Any]], *,
              event_id: str) -> PaidOrder:
    if not isinstance(body, Mapping):
        raise WebhookPayloadError("BAD_JSON", "body must be a JSON object")

    payment = body.get("payment") or {}
    if isinstance(payment, str):
        payment = safe_json(payment) or {}
    if not isinstance(payment, Mapping):
        payment = {}

    order_id = first_non_empty(
        payment.get("orderid"),
        payment.get("order_id"),
        body.get("payment.orderid"),
        body.get("payment.order_id"),
        body.get("orderid"),
        body.get("order_id"),
        body.get("OrderId"),
        body.get("paymentid"),
        payment.get("systranid"),
    )
    email = first_non_empty(body.get("Email"), body.get("email")).lower()
    name = first_non_empty(body.get("Name"), body.get("name"))
    ticket_type = first_non_empty(body.get("ticket_type")) or \
        DEFAULT_TICKET_TYPE

    if not order_id:
        raise WebhookPayloadError(
            "NO_ORDER_ID", "payment.orderid is required for paid webhooks"
        )
    if not email:
        raise WebhookPayloadError(
            "NO_EMAIL", "Email is required to send the ticket"
        )

    return PaidOrder(
        order_id=order_id,
        email=email,
        event_id=event_id,
        name=name or None,
        ticket_type=ticket_type,
        quantity=_quantity(body, payment),
    )


def describe(body: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Key overview for the debug echo endpoint."""
    payment = (body or {}).get("payment")
    return {
        "keys": sorted(body.keys()) if body else [],
        "paymentKeys": (
            sorted(payment.keys()) if isinstance(payment, Mapping) else []
        ),
    }
