"""
Accept Race Simulation Script

Creates orders as a restaurant and lets many couriers try to accept each
one at the same moment. Every order must end up with exactly one winner;
everyone else must get ``already_taken``.

Run from project root (after ``python scripts/seed.py``):
    python scripts/simulate.py --orders 10 --couriers 8

Version: 1.0.0
"""

import asyncio
import sys
import time
import argparse
from datetime import datetime
from typing import Any, Optional

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8000"
DEFAULT_PASSWORD = "password123"

NEIGHBORHOODS = ["Kadıköy", "Moda", "Fenerbahçe", "Göztepe", "Caddebostan", "Acıbadem"]
PAYMENT_METHODS = ["nakit", "kredi kartı", "online", "hediye çeki"]


async def login(client: httpx.AsyncClient, email: str, password: str, role: str) -> Optional[str]:
    response = await client.post(
        f"{API_BASE_URL}/api/auth/login",
        json={"email": email, "password": password, "role": role},
        timeout=30.0,
    )
    if response.status_code != 200:
        print(f"   ❌ Login failed for {role} {email}: {response.text[:100]}")
        return None
    return response.json()["token"]


async def create_order(client: httpx.AsyncClient, token: str, order_num: int) -> Optional[int]:
    payload = {
        "neighborhood": NEIGHBORHOODS[order_num % len(NEIGHBORHOODS)],
        "customer_address": f"Sokak {order_num}, No {order_num * 3}",
        "payment_method": PAYMENT_METHODS[order_num % len(PAYMENT_METHODS)],
        "courier_fee": 45.0,
        "restaurant_price": 320.0,
    }
    response = await client.post(
        f"{API_BASE_URL}/api/orders",
        json=payload,
        headers={"Authorization": f"Bearer {token}"},
        timeout=30.0,
    )
    if response.status_code != 201:
        print(f"   ❌ Order #{order_num} not created: {response.text[:100]}")
        return None
    return response.json()["order"]["id"]


async def try_accept(
    client: httpx.AsyncClient, token: str, courier_num: int, order_id: int
) -> dict[str, Any]:
    start_time = time.time()
    try:
        response = await client.post(
            f"{API_BASE_URL}/api/orders/accept",
            json={"order_ids": [order_id]},
            headers={"Authorization": f"Bearer {token}"},
            timeout=30.0,
        )
        elapsed = round(time.time() - start_time, 3)
        data = response.json()
        return {
            "courier": courier_num,
            "order_id": order_id,
            "won": order_id in data.get("accepted", []),
            "reason": next((f["reason"] for f in data.get("failed", [])), None),
            "time": elapsed,
        }
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        return {
            "courier": courier_num,
            "order_id": order_id,
            "won": False,
            "reason": f"error: {str(e)[:80]}",
            "time": elapsed,
        }


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_orders: int, num_couriers: int, password: str) -> bool:
    print("=" * 70)
    print("🔥 ACCEPT RACE SIMULATION")
    print("=" * 70)
    print(f"📋 Orders: {num_orders}")
    print(f"🛵 Couriers racing per order: {num_couriers}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    async with httpx.AsyncClient() as client:
        restaurant_token = await login(client, "restaurant1@example.com", password, "restaurant")
        if restaurant_token is None:
            return False

        courier_tokens = await asyncio.gather(*[
            login(client, f"courier{i}@example.com", password, "courier")
            for i in range(1, num_couriers + 1)
        ])
        if any(t is None for t in courier_tokens):
            return False

        print("\n🚀 Creating orders...\n")
        order_ids = [
            oid for oid in await asyncio.gather(*[
                create_order(client, restaurant_token, i + 1) for i in range(num_orders)
            ])
            if oid is not None
        ]

        print("🚀 Racing accepts...\n")
        start_time = time.time()
        results = await asyncio.gather(*[
            try_accept(client, token, n + 1, order_id)
            for order_id in order_ids
            for n, token in enumerate(courier_tokens)
        ])
        total_time = round(time.time() - start_time, 2)

    # Analyze results
    violations = []
    for order_id in order_ids:
        attempts = [r for r in results if r["order_id"] == order_id]
        winners = [r for r in attempts if r["won"]]
        unexpected = [r for r in attempts if not r["won"] and r["reason"] != "already_taken"]
        if len(winners) != 1 or unexpected:
            violations.append((order_id, len(winners), unexpected))

    print("=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Orders with exactly one winner: {len(order_ids) - len(violations)}/{len(order_ids)}")
    print(f"⏱️  Total Time: {total_time}s")
    if results:
        avg_time = round(sum(r["time"] for r in results) / len(results), 3)
        print(f"   Average accept response: {avg_time}s")

    if violations:
        print(f"\n⚠️  Violations (showing first 5):")
        for order_id, winners, unexpected in violations[:5]:
            print(f"   Order #{order_id}: {winners} winner(s), {len(unexpected)} unexpected failure(s)")

    print("\n" + "=" * 70)
    print("🔍 NEXT: python scripts/verify.py")
    print("=" * 70)
    return not violations


def main():
    global API_BASE_URL

    parser = argparse.ArgumentParser(description="Accept race simulation")
    parser.add_argument("--orders", type=int, default=10, help="Number of orders to create")
    parser.add_argument("--couriers", type=int, default=5, help="Couriers racing per order")
    parser.add_argument("--password", default=DEFAULT_PASSWORD)
    parser.add_argument("--url", default=API_BASE_URL)
    args = parser.parse_args()

    API_BASE_URL = args.url.rstrip("/")
    ok = asyncio.run(run_simulation(args.orders, args.couriers, args.password))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
