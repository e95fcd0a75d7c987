"""
Checkout Race Simulation Script

Hammers a running development server with the traffic patterns that break
naive checkout flows:
    - the same order checked out many times concurrently (double taps,
      client retries after timeouts)
    - duplicate signed webhook deliveries racing a client verification

Run from project root: python scripts/simulate.py
The server must run with ENV_MODE=development and the same WEBHOOK_SECRET.
"""

import asyncio
import json
import os
import random
import sys
import time
import argparse
from datetime import datetime
from typing import Any

import httpx
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from app.client import CheckoutClient
from app.services.webhook import sign_payload

# Configuration
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8001")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "dev-webhook-secret")
SIGNATURE_HEADER = os.getenv("WEBHOOK_SIGNATURE_HEADER", "x-payload-signature")
TOTAL_ORDERS = 20
CHECKOUT_BURST = 8

MENU_ITEMS = [
    {"menuItemId": 1, "name": "Pizza Margherita", "unitPrice": "14.99"},
    {"menuItemId": 2, "name": "Pepperoni Pizza", "unitPrice": "16.99"},
    {"menuItemId": 3, "name": "Caesar Salad", "unitPrice": "8.99"},
    {"menuItemId": 4, "name": "Garlic Bread", "unitPrice": "5.99"},
    {"menuItemId": 5, "name": "Tiramisu", "unitPrice": "7.99"},
    {"menuItemId": 6, "name": "Sparkling Water", "unitPrice": "3.49"},
]


def generate_random_items() -> list[dict]:
    """Generate random order items."""
    items = []
    for item in random.sample(MENU_ITEMS, random.randint(1, 4)):
        items.append({**item, "quantity": random.randint(1, 3)})
    return items


# =============================================================================
# SINGLE ORDER SCENARIO
# =============================================================================

async def create_order(client: httpx.AsyncClient) -> dict[str, Any]:
    response = await client.post("/orders", json={"items": generate_random_items()})
    response.raise_for_status()
    return response.json()


async def checkout_burst(client: httpx.AsyncClient, order_id: int, burst: int) -> set[str]:
    """Fire `burst` concurrent checkouts; return the distinct session ids seen."""
    responses = await asyncio.gather(
        *(client.post("/checkout", json={"orderId": order_id}) for _ in range(burst)),
        return_exceptions=True,
    )
    sessions = set()
    for response in responses:
        if isinstance(response, httpx.Response) and response.status_code == 200:
            sessions.add(response.json()["sessionId"])
    return sessions


async def signed_webhook(client: httpx.AsyncClient, order: dict, session_id: str) -> int:
    body = json.dumps({
        "eventType": "checkout.paid",
        "reference": order["reference"],
        "sessionId": session_id,
    }).encode()
    response = await client.post(
        "/webhook",
        content=body,
        headers={SIGNATURE_HEADER: sign_payload(WEBHOOK_SECRET, body), "content-type": "application/json"},
    )
    return response.status_code


async def run_order(client: httpx.AsyncClient, order_num: int, burst: int) -> dict[str, Any]:
    """
    Create one order, race its checkout, settle it and race the
    confirmation channels against each other.
    """
    start_time = time.time()
    try:
        order = await create_order(client)
        order_id = order["id"]

        sessions = await checkout_burst(client, order_id, burst)
        if len(sessions) != 1:
            return {
                "order_num": order_num,
                "success": False,
                "error": f"expected one session, saw {len(sessions)}",
                "time": round(time.time() - start_time, 3),
            }
        session_id = sessions.pop()

        # Settle the mock session, then deliver duplicates while the client verifies
        settle = await client.post("/webhook/simulation", json={"orderId": order_id})
        settle.raise_for_status()
        await asyncio.gather(
            signed_webhook(client, order, session_id),
            signed_webhook(client, order, session_id),
            client.post(f"/orders/{order_id}/verify-payment"),
        )

        async with CheckoutClient(API_BASE_URL, poll_interval=0.5, max_wait=5) as poller:
            outcome = await poller.wait_for_payment(order_id)

        return {
            "order_num": order_num,
            "success": outcome.confirmed,
            "order_id": order_id,
            "session_id": session_id,
            "status": outcome.status.value if outcome.status else None,
            "total": float(order["totalAmount"]),
            "time": round(time.time() - start_time, 3),
        }
    except httpx.HTTPError as e:
        return {
            "order_num": order_num,
            "success": False,
            "error": str(e)[:100],
            "time": round(time.time() - start_time, 3),
        }


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_orders: int = TOTAL_ORDERS, burst: int = CHECKOUT_BURST) -> dict[str, Any]:
    """
    Run the race simulation.

    Args:
        num_orders: Number of orders to simulate
        burst: Concurrent checkout requests per order
    """
    print("=" * 70)
    print("🔥 CHECKOUT RACE SIMULATION")
    print("=" * 70)
    print(f"📋 Orders: {num_orders} x {burst} concurrent checkouts")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient(base_url=API_BASE_URL, timeout=30.0) as client:
        results = await asyncio.gather(*(run_order(client, i + 1, burst) for i in range(num_orders)))
    total_time = round(time.time() - start_time, 2)

    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Confirmed Orders: {len(successful)}/{num_orders}")
    print(f"❌ Failed Orders: {len(failed)}/{num_orders}")
    print(f"⏱️  Total Time: {total_time}s")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        total_revenue = sum(r["total"] for r in successful)
        print(f"\n📈 Average order round trip: {avg_time}s")
        print(f"   💰 Total Revenue: {total_revenue:.2f}")

    if failed:
        print(f"\n⚠️  Failed Order Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Order #{f['order_num']}: {f.get('error') or f.get('status')}")

    print("=" * 70)
    return {
        "total": num_orders,
        "successful": len(successful),
        "failed": len(failed),
        "total_time": total_time,
        "results": results,
    }


async def preflight() -> bool:
    """Check the server is up and in development mode."""
    async with httpx.AsyncClient(base_url=API_BASE_URL) as client:
        try:
            response = await client.get("/health")
        except httpx.HTTPError as e:
            print(f"❌ Server unreachable: {e}")
            return False
        data = response.json()
        print(f"Health: {data.get('status')} (db={data.get('database')}, gateway={data.get('gateway')})")

        root = (await client.get("/")).json()
        if root.get("environment") != "development":
            print("❌ Simulation requires ENV_MODE=development")
            return False
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Checkout Race Simulation")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--burst", type=int, default=CHECKOUT_BURST, help="Concurrent checkouts per order")
    args = parser.parse_args()

    if not asyncio.run(preflight()):
        sys.exit(1)

    summary = asyncio.run(run_simulation(num_orders=args.orders, burst=args.burst))
    sys.exit(0 if summary["failed"] == 0 else 1)
