"""Fire concurrent transfers draining one account and check nothing overdraws.

Run against a wallet service where `--from-account` holds a known balance;
every accepted transfer must fit in it and the final balance must stay >= 0.
"""

import argparse
import asyncio
import statistics
import time
from collections import Counter

import httpx


async def send_one(client: httpx.AsyncClient, base_url: str, from_account: str, to_account: str, amount: int):
    """Send one transfer and return (status_code, latency_ms)."""

    started = time.perf_counter()
    try:
        resp = await client.post(
            f"{base_url}/wallet/transfer",
            json={"to_account_id": to_account, "amount": amount, "description": "race check"},
            headers={"x-account-id": from_account},
        )
        return resp.status_code, (time.perf_counter() - started) * 1000
    except httpx.HTTPError:
        return 599, (time.perf_counter() - started) * 1000


async def run(total: int, concurrency: int, base_url: str, from_account: str, to_account: str, amount: int):
    sem = asyncio.Semaphore(concurrency)

    async with httpx.AsyncClient(timeout=10.0) as client:
        start_balance = (
            await client.get(f"{base_url}/wallet/balance", headers={"x-account-id": from_account})
        ).json()["balance"]

        async def worker():
            async with sem:
                return await send_one(client, base_url, from_account, to_account, amount)

        results = await asyncio.gather(*(worker() for _ in range(total)))
        end_balance = (
            await client.get(f"{base_url}/wallet/balance", headers={"x-account-id": from_account})
        ).json()["balance"]

    codes = Counter(code for code, _ in results)
    accepted = codes.get(200, 0)
    lats = [latency for _, latency in results]
    print(f"start_balance={start_balance}")
    print(f"end_balance={end_balance}")
    print(f"accepted={accepted} rejected_insufficient={codes.get(409, 0)} other={total - accepted - codes.get(409, 0)}")
    print(f"avg_ms={statistics.mean(lats):.2f}")
    expected = start_balance - accepted * amount
    if end_balance != expected or end_balance < 0:
        raise SystemExit(f"balance mismatch: expected={expected} actual={end_balance}")
    print("ok: no overdraw, balance matches accepted transfers")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--total", type=int, default=50)
    parser.add_argument("--concurrency", type=int, default=25)
    parser.add_argument("--base-url", default="http://localhost:8001")
    parser.add_argument("--from-account", required=True)
    parser.add_argument("--to-account", required=True)
    parser.add_argument("--amount", type=int, default=100)
    args = parser.parse_args()
    asyncio.run(run(args.total, args.concurrency, args.base_url, args.from_account, args.to_account, args.amount))
