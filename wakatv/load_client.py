#!/usr/bin/env python3
"""
WakaTV load client (async)

Fires concurrent redemptions at the server and then checks the admin views
for double-spent codes:
  1) POST /admin/upload-codes  (optional, --seed N fresh codes)
  2) POST /send-code            (email, quantity, reference) x total
  3) GET  /admin/codes + /admin/logs-data
     - every used code must belong to exactly one ledger entry
     - unused + delivered must add up to the inventory size

Usage:
  python -m wakatv.load_client --base http://localhost:10000 \
                               --total 200 --concurrency 50 --seed 200

Notes:
- Needs admin credentials (ADMIN_USERNAME / ADMIN_PASSWORD) for steps 1 and 3.
- Run the server with SMTP unset so codes are only logged, not mailed.
"""

import asyncio
import os
import random
import string
import time
import argparse
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


@dataclass
class Result:
    ok: bool
    outcome: str  # Complete/RejectedInsufficientInventory/.../ERROR
    delivered: int = 0
    t_redeem: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def summary(self) -> Dict[str, float]:
        lat = [r.t_redeem for r in self.results if r.t_redeem > 0]
        outcomes = Counter(r.outcome for r in self.results)

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "delivered": sum(r.delivered for r in self.results),
            "outcomes": dict(outcomes),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"Codes delivered: {int(s['delivered'])}"
        )
        for outcome, n in sorted(s["outcomes"].items()):
            print(f"   {outcome:<32} {n}")
        print(
            f"Latency (send-code): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )


async def one_redemption(
    client: httpx.AsyncClient,
    base: str,
    quantity: int,
    referral_code: Optional[str],
) -> Result:
    r = Result(ok=False, outcome="ERROR")
    payload = {
        "email": _rand_email(),
        "quantity": quantity,
        "reference": f"load_{uuid.uuid4().hex}",
    }
    if referral_code:
        payload["referralCode"] = referral_code

    t0 = time.perf_counter()
    try:
        resp = await client.post(f"{base}/send-code", json=payload,
                                 timeout=30.0)
        j = resp.json()
    except Exception as e:
        r.err = f"send-code: {e}"
        return r
    r.t_redeem = time.perf_counter() - t0
    r.outcome = j.get("outcome", "ERROR")
    r.delivered = int(j.get("delivered") or 0)
    r.ok = bool(j.get("success"))
    return r


async def admin_login(client: httpx.AsyncClient, base: str,
                      username: str, password: str) -> None:
    resp = await client.post(
        f"{base}/admin/login",
        json={"username": username, "password": password},
    )
    resp.raise_for_status()


async def seed_codes(client: httpx.AsyncClient, base: str, n: int) -> int:
    codes = [f"LOAD-{uuid.uuid4().hex[:12].upper()}" for _ in range(n)]
    resp = await client.post(f"{base}/admin/upload-codes",
                             json={"codes": codes})
    resp.raise_for_status()
    return int(resp.json().get("inserted", 0))


async def check_no_double_spend(client: httpx.AsyncClient, base: str) -> bool:
    logs = (await client.get(
        f"{base}/admin/logs-data", params={"limit": 1000}
    )).json()["logs"]
    codes = (await client.get(f"{base}/admin/codes")).json()["codes"]

    delivered = Counter(c for entry in logs for c in entry["codes"])
    dupes = [c for c, n in delivered.items() if n > 1]
    used = {c["code"] for c in codes if c["used"]}
    not_marked = [c for c in delivered if c not in used]

    print("\n=== Inventory Check ===")
    print(f"Ledger entries: {len(logs)}   Codes delivered: "
          f"{sum(delivered.values())}   Used in inventory: {len(used)}")
    if dupes:
        print(f"DOUBLE-SPENT codes: {dupes[:10]}")
    if not_marked:
        print(f"Delivered but not marked used: {not_marked[:10]}")
    ok = not dupes and not not_marked
    print("OK: no code was delivered twice" if ok else "FAILED")
    return ok


async def run_load(
    base: str,
    total: int,
    concurrency: int,
    quantity: int,
    referral_code: Optional[str],
    seed: int,
    username: str,
    password: str,
    check: bool,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "WakaTVLoad/1.0"}
    ) as client:
        if seed or check:
            await admin_login(client, base, username, password)
        if seed:
            print(f"Seeded {await seed_codes(client, base, seed)} codes")

        async def worker(n: int):
            async with sem:
                res = await one_redemption(
                    client, base, quantity, referral_code
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

        if check:
            await check_no_double_spend(client, base)

    return stats


def main():
    ap = argparse.ArgumentParser(description="WakaTV load client")
    ap.add_argument("--base", default="http://localhost:10000",
                    help="Base URL of the app")
    ap.add_argument("--total", type=int, default=100,
                    help="Total redemptions to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--quantity", type=int, default=1,
                    help="Codes per redemption")
    ap.add_argument("--referral-code", default=None,
                    help="Referral code sent with every redemption")
    ap.add_argument("--seed", type=int, default=0,
                    help="Upload this many fresh codes first")
    ap.add_argument("--no-check", action="store_true",
                    help="Skip the double-spend check")
    ap.add_argument("--username",
                    default=os.getenv("ADMIN_USERNAME", "admin"))
    ap.add_argument("--password",
                    default=os.getenv("ADMIN_PASSWORD", "supasecret"))
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base,
        total=args.total,
        concurrency=args.concurrency,
        quantity=args.quantity,
        referral_code=args.referral_code,
        seed=args.seed,
        username=args.username,
        password=args.password,
        check=not args.no_check,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)


if __name__ == "__main__":
    main()
