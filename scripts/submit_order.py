#!/usr/bin/env python3
"""
Submit a swap order and follow it to a terminal state.

Run this after starting the engine with: python -m swap_engine.main

Usage:
    python scripts/submit_order.py --token-in SOL --token-out USDC --amount 10
    python scripts/submit_order.py --amount 2.5 --slippage 0.01 --timeout 60
"""

import argparse
import asyncio
import sys
import time

import httpx

TERMINAL_STATUSES = {"confirmed", "failed"}


async def submit(client: httpx.AsyncClient, args: argparse.Namespace) -> str | None:
    """Submit the order, returning its ID."""
    body: dict = {"tokenIn": args.token_in, "tokenOut": args.token_out, "amount": args.amount}
    if args.slippage is not None:
        body["slippage"] = args.slippage

    resp = await client.post("/api/orders/execute", json=body)
    data = resp.json()
    if resp.status_code != 202:
        print(f"✗ Rejected ({resp.status_code}): {data.get('code')} {data.get('message')}")
        return None

    print(f"✓ Accepted: {data['orderId']} (stream at {data['websocketUrl']})")
    return data["orderId"]


async def follow(client: httpx.AsyncClient, order_id: str, timeout: float, interval: float) -> dict | None:
    """Poll the order until it is confirmed or failed."""
    deadline = time.monotonic() + timeout
    last_status = None

    while time.monotonic() < deadline:
        resp = await client.get(f"/api/orders/{order_id}")
        if resp.status_code == 200:
            order = resp.json()
            if order["status"] != last_status:
                last_status = order["status"]
                print(f"  → {last_status}")
            if last_status in TERMINAL_STATUSES:
                return order
        await asyncio.sleep(interval)

    print(f"✗ Order {order_id} still {last_status} after {timeout:.0f}s")
    return None


async def run(args: argparse.Namespace) -> int:
    async with httpx.AsyncClient(base_url=args.url, timeout=10.0) as client:
        try:
            order_id = await submit(client, args)
        except httpx.HTTPError as e:
            print(f"✗ Engine not reachable at {args.url}: {e}")
            return 2
        if order_id is None:
            return 1

        order = await follow(client, order_id, args.timeout, args.interval)
        if order is None:
            return 1

    if order["status"] == "confirmed":
        print(
            f"✓ Confirmed on {order['selectedDex']} at {order['executedPrice']:.4f} "
            f"(tx {order['txHash'][:16]}...)"
        )
        return 0

    print(f"✗ Failed: {order.get('error')}")
    return 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Submit a swap order and wait for the outcome")
    parser.add_argument("--url", default="http://127.0.0.1:3000", help="Engine base URL")
    parser.add_argument("--token-in", default="SOL", help="Input asset symbol")
    parser.add_argument("--token-out", default="USDC", help="Output asset symbol")
    parser.add_argument("--amount", type=float, default=10.0, help="Input amount")
    parser.add_argument("--slippage", type=float, default=None, help="Slippage tolerance (0-1)")
    parser.add_argument("--timeout", type=float, default=30.0, help="Seconds to wait for a terminal state")
    parser.add_argument("--interval", type=float, default=0.5, help="Polling interval in seconds")
    args = parser.parse_args()

    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
