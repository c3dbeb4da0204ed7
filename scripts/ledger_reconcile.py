"""Fetch the wallet reconciliation report; exit non-zero when anything is off."""

import argparse
import json
import sys

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation checks."""

    parser = argparse.ArgumentParser(description="Fetch wallet reconciliation report endpoint.")
    parser.add_argument("--wallet-url", default="http://localhost:8001")
    parser.add_argument("--api-key", default="change-me")
    parser.add_argument("--limit", type=int, default=1000)
    parser.add_argument("--correlation-id", default=None, help="Inspect one transfer instead of the summary")
    args = parser.parse_args()

    headers = {"x-api-key": args.api_key}
    if args.correlation_id:
        resp = httpx.get(f"{args.wallet_url}/reconciliation/{args.correlation_id}", headers=headers, timeout=10.0)
        resp.raise_for_status()
        report = resp.json()
        print(json.dumps(report, indent=2))
        sys.exit(0 if report["balanced"] else 1)

    resp = httpx.get(f"{args.wallet_url}/reconciliation", params={"limit": args.limit}, headers=headers, timeout=10.0)
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    if report["imbalanced_count"] or report["snapshot_mismatches"] or report["balance_mismatches"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
