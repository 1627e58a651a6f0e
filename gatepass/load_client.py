#!/usr/bin/env python3
"""
gatepass scan load client (async)

Simulates several entry gates scanning the same ticket at once:
  POST /api/validate {"token": ...}  x N, concurrently

Exactly one scan must be admitted; every other one must come back
ALREADY_USED. The client prints the tally and exits non-zero otherwise.

Usage:
  python -m gatepass.load_client --base http://localhost:8000 \
                                 --token <token> --scans 50

Notes:
- Each run consumes the ticket; mint a fresh ticket (webhook) per run.
"""

import asyncio
import sys
import time
import argparse
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx


@dataclass
class Scan:
    outcome: str  # ADMITTED/ALREADY_USED/<error code>/ERROR
    t: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    scans: List[Scan] = field(default_factory=list)

    def add(self, s: Scan):
        self.scans.append(s)

    def summary(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for s in self.scans:
            out[s.outcome] = out.get(s.outcome, 0) + 1
        return out

    def exactly_one_admitted(self) -> bool:
        s = self.summary()
        return (
            s.get("ADMITTED", 0) == 1
            and s.get("ALREADY_USED", 0) == len(self.scans) - 1
        )

    def print(self, elapsed_s: float):
        lat = sorted(s.t for s in self.scans if s.t > 0)
        print("\n=== Scan Summary ===")
        for k, v in sorted(self.summary().items()):
            print(f"{k:>14}: {v}")
        if lat:
            print(
                f"Latency: min {lat[0]:.3f}s   "
                f"median {lat[len(lat)//2]:.3f}s   max {lat[-1]:.3f}s"
            )
        print(f"Wall time: {elapsed_s:.3f}s")


async def one_scan(client: httpx.AsyncClient, base: str, token: str) -> Scan:
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/validate", json={"token": token}, timeout=30.0
        )
        j = resp.json()
    except Exception as e:
        return Scan(outcome="ERROR", err=str(e))
    dt = time.perf_counter() - t0
    if j.get("valid"):
        return Scan(outcome="ADMITTED", t=dt)
    return Scan(outcome=j.get("error", "ERROR"), t=dt)


async def run_scans(base: str, token: str, scans: int) -> Stats:
    stats = Stats()
    limits = httpx.Limits(
        max_keepalive_connections=scans, max_connections=scans
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "GatepassScan/1.0"}
    ) as client:
        results = await asyncio.gather(
            *[one_scan(client, base, token) for _ in range(scans)]
        )
    for r in results:
        stats.add(r)
    return stats


def main():
    ap = argparse.ArgumentParser(description="gatepass scan load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--token", required=True,
                    help="Ticket token to scan")
    ap.add_argument("--scans", type=int, default=20,
                    help="Concurrent scans of the same token")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats = asyncio.run(run_scans(args.base, args.token, args.scans))
    stats.print(time.perf_counter() - t_start)
    sys.exit(0 if stats.exactly_one_admitted() else 1)


if __name__ == "__main__":
    main()
