#!/usr/bin/env python3
"""
CoursePay confirmation race client (async)

Plays several browser tabs (and gateway redirects) landing on the
confirmation pages for the same orders at the same time:
  1) GET /payment/success?orderId=...  or  /payment/failure?orderId=...
     from N independent clients at once (no shared cookies)
  2) GET /api/orders/{order_id} once all of them returned

It then checks that every response that reached a terminal view agrees with
the final stored status, and that at most one of them did the write.

Usage:
  python -m coursepay.race_client --base http://localhost:8000 \
                                  --order ord-001 --order ord-002 --tabs 8

  python -m coursepay.race_client --order ord-003 --tabs 10 --fail-rate 0.3

Notes:
- Start the server with ORDERSTORE_BACKEND=memory SEED_DEMO_ORDERS=1 to get
  the ord-001..ord-003 fixtures.
"""

import argparse
import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx


@dataclass
class TabResult:
    order_id: str
    desired: str
    state: str = "error"  # success | error | http_error
    status: Optional[str] = None  # order status seen by this tab
    replayed: bool = False
    elapsed_s: float = 0.0
    err: Optional[str] = None


@dataclass
class OrderReport:
    order_id: str
    final_status: Optional[str]
    tabs: List[TabResult] = field(default_factory=list)

    @property
    def fresh_writes(self) -> int:
        return sum(
            1 for t in self.tabs if t.state == "success" and not t.replayed
        )

    @property
    def disagreements(self) -> int:
        return sum(
            1 for t in self.tabs
            if t.state == "success" and t.status != self.final_status
        )

    @property
    def converged(self) -> bool:
        return (
            self.final_status in ("completed", "failed")
            and self.fresh_writes <= 1
            and self.disagreements == 0
        )


async def one_tab(base: str, order_id: str, desired: str,
                  timeout_s: float) -> TabResult:
    r = TabResult(order_id=order_id, desired=desired)
    path = "/payment/success" if desired == "completed" else "/payment/failure"
    t0 = time.perf_counter()
    try:
        # own client per tab: no shared session cookie
        async with httpx.AsyncClient(
            headers={"User-Agent": "CoursePayRace/1.0"}, timeout=timeout_s
        ) as client:
            resp = await client.get(
                f"{base}{path}",
                params={"orderId": order_id, "format": "json"},
            )
    except Exception as e:
        r.err = f"{path}: {e}"
        r.state = "http_error"
        return r
    r.elapsed_s = time.perf_counter() - t0
    if resp.status_code >= 400:
        r.err = f"{path} HTTP {resp.status_code}"
        r.state = "http_error"
        return r
    j = resp.json()
    r.state = j.get("state", "error")
    r.replayed = bool(j.get("replayed"))
    order = j.get("order") or {}
    r.status = order.get("status")
    if r.state == "error":
        r.err = j.get("message")
    return r


async def race_order(base: str, order_id: str, tabs: int, fail_rate: float,
                     timeout_s: float) -> OrderReport:
    desired = [
        "failed" if random.random() < fail_rate else "completed"
        for _ in range(tabs)
    ]
    results = await asyncio.gather(*[
        one_tab(base, order_id, d, timeout_s) for d in desired
    ])
    final_status = None
    async with httpx.AsyncClient(timeout=timeout_s) as client:
        g = await client.get(f"{base}/api/orders/{order_id}")
        if g.status_code == 200:
            final_status = g.json().get("status")
    return OrderReport(order_id=order_id, final_status=final_status,
                       tabs=list(results))


def print_reports(reports: List[OrderReport], elapsed_s: float) -> bool:
    print("\n=== Race Summary ===")
    all_ok = True
    for rep in reports:
        states: Dict[str, int] = {}
        for t in rep.tabs:
            states[t.state] = states.get(t.state, 0) + 1
        verdict = "OK" if rep.converged else "DIVERGED"
        all_ok = all_ok and rep.converged
        print(
            f"{rep.order_id}: final={rep.final_status}  "
            f"tabs={len(rep.tabs)}  fresh_writes={rep.fresh_writes}  "
            f"disagreements={rep.disagreements}  states={states}  "
            f"[{verdict}]"
        )
        for t in rep.tabs:
            if t.err:
                print(f"    {t.desired:9s} {t.state:10s} {t.err}")
    print(f"Wall time: {elapsed_s:.3f}s")
    return all_ok


async def run_race(base: str, order_ids: List[str], tabs: int,
                   fail_rate: float, timeout_s: float) -> List[OrderReport]:
    return list(await asyncio.gather(*[
        race_order(base, oid, tabs, fail_rate, timeout_s)
        for oid in order_ids
    ]))


def main():
    ap = argparse.ArgumentParser(description="CoursePay confirmation race")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--order", action="append", required=True,
                    help="Order id to race (repeatable)")
    ap.add_argument("--tabs", type=int, default=5,
                    help="Concurrent confirmations per order")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of tabs landing on the failure page")
    ap.add_argument("--timeout", type=float, default=30.0,
                    help="Per-request timeout in seconds")
    args = ap.parse_args()

    t_start = time.perf_counter()
    reports = asyncio.run(run_race(
        base=args.base.rstrip("/"),
        order_ids=args.order,
        tabs=max(1, args.tabs),
        fail_rate=args.fail_rate,
        timeout_s=args.timeout,
    ))
    ok = print_reports(reports, time.perf_counter() - t_start)
    raise SystemExit(0 if ok else 1)


if __name__ == "__main__":
    main()
