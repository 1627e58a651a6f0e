"""
gatepass-token: mint or check ticket tokens by hand.

  TICKET_SECRET=... gatepass-token mint --ticket-id t1 --order-id o1
  TICKET_SECRET=... gatepass-token verify t1.o1.default-event.<sig>

Minting here does not create a ticket row; a minted token only validates
at the gate if a matching ticket exists.
"""
import argparse
import os
import sys
import uuid

from .config import DEFAULT_EVENT_ID
from .errors import GatepassError
from .tokens import TokenCodec


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(prog="gatepass-token",
                                 description="Mint or verify ticket tokens")
    sub = ap.add_subparsers(dest="cmd", required=True)

    m = sub.add_parser("mint", help="print a signed token")
    m.add_argument("--ticket-id", default=None,
                   help="ticket id (default: random uuid4)")
    m.add_argument("--order-id", required=True)
    m.add_argument("--event-id",
                   default=os.environ.get("EVENT_ID") or DEFAULT_EVENT_ID)

    v = sub.add_parser("verify", help="check a token's signature")
    v.add_argument("token")

    args = ap.parse_args(argv)

    secret = os.environ.get("TICKET_SECRET", "")
    if not secret:
        print("TICKET_SECRET is not set", file=sys.stderr)
        return 2
    codec = TokenCodec(secret)

    try:
        if args.cmd == "mint":
            tid = args.ticket_id or str(uuid.uuid4())
            print(codec.mint(tid, args.order_id, args.event_id))
        else:
            claims = codec.verify(args.token.strip())
            print(f"ticket_id={claims.ticket_id} order_id={claims.order_id} "
                  f"event_id={claims.event_id}")
    except GatepassError as e:
        print(f"{e.kind}: {e.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
