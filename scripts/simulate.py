"""
Webhook Burst Simulation

Fires signed Swiggy/Zomato order webhooks at a running gateway, including
redeliveries of the same platform order, and checks that every platform
order ends up as exactly one restaurant order.

Run from project root: python scripts/simulate.py --secret whsec_...

The platform configs must be enabled (and use the same webhook secret)
before running, e.g. via PUT /api/aggregator/config/{platform}.

Author: Khalil_Bannouri
Version: 4.0.0
"""

import asyncio
import sys
import os
import json
import random
import time
import argparse
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

import httpx
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from app.services.aggregator.signature import compute_signature  # noqa: E402

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 50
REDELIVERY_RATE = 0.3

# Sample data for random orders
CUSTOMER_NAMES = ["Asha Rao", "Vikram Singh", "Meera Iyer", "Rohan Das", "Priya Nair", "Arjun Mehta"]
LOCALITIES = ["Indiranagar", "Koramangala", "HSR Layout", "Whitefield", "Jayanagar"]
MENU_ITEMS = [
    {"name": "Paneer Butter Masala", "unit_price": 240},
    {"name": "Chicken Biryani", "unit_price": 320},
    {"name": "Garlic Naan", "unit_price": 60},
    {"name": "Masala Dosa", "unit_price": 110},
    {"name": "Gulab Jamun", "unit_price": 90},
    {"name": "Sweet Lassi", "unit_price": 80},
]


def generate_swiggy_payload(order_id: str) -> dict[str, Any]:
    """Swiggy-style payload: nested customer, structured address, unit prices."""
    items = []
    for menu_item in random.sample(MENU_ITEMS, random.randint(1, 3)):
        items.append({
            "name": menu_item["name"],
            "quantity": random.randint(1, 3),
            "unit_price": menu_item["unit_price"],
            "notes": random.choice(["", "Less spicy", "No onions"]),
        })
    return {
        "order_id": order_id,
        "customer": {
            "name": random.choice(CUSTOMER_NAMES),
            "phone": f"+91-98{random.randint(10000000, 99999999)}",
        },
        "delivery_address": {
            "line1": f"{random.randint(1, 300)}, {random.randint(1, 20)}th Main",
            "area": random.choice(LOCALITIES),
            "city": "Bengaluru",
            "pincode": "5600" + str(random.randint(10, 99)),
        },
        "items": items,
    }


def generate_zomato_payload(order_id: str) -> dict[str, Any]:
    """Zomato-style payload: flat customer fields, line totals."""
    items = []
    for menu_item in random.sample(MENU_ITEMS, random.randint(1, 3)):
        qty = random.randint(1, 3)
        items.append({
            "item_name": menu_item["name"],
            "qty": qty,
            "total_price": menu_item["unit_price"] * qty,
        })
    return {
        "id": order_id,
        "customer_name": random.choice(CUSTOMER_NAMES),
        "customer_phone": f"98{random.randint(10000000, 99999999)}",
        "address": f"Flat {random.randint(1, 12)}0{random.randint(1, 4)}, {random.choice(LOCALITIES)}, Bengaluru",
        "order_items": items,
    }


async def send_webhook(
    client: httpx.AsyncClient,
    platform: str,
    payload: dict[str, Any],
    secret: Optional[str],
    delivery_num: int,
) -> dict[str, Any]:
    """POST one signed webhook delivery."""
    body = json.dumps(payload).encode()
    headers = {"Content-Type": "application/json"}
    if secret:
        headers[f"x-{platform}-signature"] = compute_signature(secret, body)

    platform_order_id = str(payload.get("order_id") or payload.get("id"))
    start_time = time.time()

    try:
        response = await client.post(
            f"{API_BASE_URL}/api/aggregator/webhook/{platform}",
            content=body,
            headers=headers,
            timeout=30.0,
        )
        elapsed = round(time.time() - start_time, 3)
        data = response.json()
        return {
            "delivery_num": delivery_num,
            "platform": platform,
            "platform_order_id": platform_order_id,
            "success": response.status_code == 200,
            "status_code": response.status_code,
            "message": data.get("message"),
            "order_id": data.get("order_id"),
            "time": elapsed,
        }
    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        return {
            "delivery_num": delivery_num,
            "platform": platform,
            "platform_order_id": platform_order_id,
            "success": False,
            "error": str(e)[:100],
            "time": elapsed,
        }


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

def build_deliveries(platforms: list[str], num_orders: int) -> list[tuple[str, dict]]:
    """Unique platform orders plus redeliveries, shuffled together."""
    deliveries = []
    for _ in range(num_orders):
        platform = random.choice(platforms)
        order_id = f"{platform[:2].upper()}-{uuid.uuid4().hex[:10]}"
        payload = (
            generate_swiggy_payload(order_id) if platform == "swiggy"
            else generate_zomato_payload(order_id)
        )
        deliveries.append((platform, payload))
        if random.random() < REDELIVERY_RATE:
            deliveries.append((platform, payload))
    random.shuffle(deliveries)
    return deliveries


async def run_simulation(
    platforms: list[str],
    num_orders: int = TOTAL_ORDERS,
    secret: Optional[str] = None,
) -> dict[str, Any]:
    """
    Fire all deliveries concurrently and check idempotency.

    Args:
        platforms: Platforms to simulate ("swiggy", "zomato")
        num_orders: Number of distinct platform orders
        secret: Webhook secret used for signing (None sends unsigned)
    """
    deliveries = build_deliveries(platforms, num_orders)

    print("=" * 70)
    print("🔥 WEBHOOK BURST SIMULATION")
    print("=" * 70)
    print(f"📋 Platform Orders: {num_orders}")
    print(f"📨 Deliveries (incl. redeliveries): {len(deliveries)}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"🔧 Platforms: {', '.join(platforms)}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient() as client:
        tasks = [
            send_webhook(client, platform, payload, secret, i + 1)
            for i, (platform, payload) in enumerate(deliveries)
        ]
        results = await asyncio.gather(*tasks)
    total_time = round(time.time() - start_time, 2)

    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    # Every delivery of one platform order must resolve to the same order id
    order_ids = defaultdict(set)
    for r in successful:
        order_ids[(r["platform"], r["platform_order_id"])].add(r["order_id"])
    split = {key: ids for key, ids in order_ids.items() if len(ids) > 1}

    created = [r for r in successful if r["message"] == "Order received"]
    duplicates = [r for r in successful if r["message"] == "Order already exists"]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Accepted Deliveries: {len(successful)}/{len(deliveries)}")
    print(f"   Created: {len(created)}")
    print(f"   Recognized as redelivery: {len(duplicates)}")
    print(f"❌ Failed Deliveries: {len(failed)}/{len(deliveries)}")
    print(f"⏱️  Total Time: {total_time}s")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        print(f"\n📈 Average Response: {avg_time}s")
        print(f"   Fastest: {min(r['time'] for r in successful)}s")
        print(f"   Slowest: {max(r['time'] for r in successful)}s")

    if split:
        print(f"\n🚨 {len(split)} platform orders were stored more than once:")
        for (platform, platform_order_id), ids in list(split.items())[:5]:
            print(f"   {platform} {platform_order_id}: orders {sorted(ids)}")
    else:
        print("\n🔒 Idempotency: every platform order maps to exactly one order")

    if failed:
        print("\n⚠️  Failed Delivery Details (showing first 5):")
        for f in failed[:5]:
            print(
                f"   Delivery #{f['delivery_num']} [{f['platform']}]: "
                f"{f.get('status_code', '')} {f.get('message') or f.get('error', 'Unknown error')}"
            )

    print("=" * 70)

    return {
        "deliveries": len(deliveries),
        "created": len(created),
        "duplicates": len(duplicates),
        "failed": len(failed),
        "split_orders": len(split),
        "total_time": total_time,
    }


async def check_health() -> bool:
    """Pre-flight health check."""
    async with httpx.AsyncClient() as client:
        response = await client.get(f"{API_BASE_URL}/health")
    if response.status_code != 200:
        print(f"   ❌ Failed: {response.text}")
        return False
    data = response.json()
    print(f"   ✅ Status: {data.get('status')}")
    print(f"   Database: {data.get('database')}")
    print(f"   Redis: {data.get('redis')}")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Webhook Burst Simulation")
    parser.add_argument("--swiggy", action="store_true", help="Swiggy webhooks only")
    parser.add_argument("--zomato", action="store_true", help="Zomato webhooks only")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of platform orders")
    parser.add_argument("--secret", default=os.getenv("WEBHOOK_SECRET"), help="Webhook signing secret")
    parser.add_argument("--skip-health", action="store_true", help="Skip the health check")
    args = parser.parse_args()

    if args.swiggy:
        platforms = ["swiggy"]
    elif args.zomato:
        platforms = ["zomato"]
    else:
        platforms = ["swiggy", "zomato"]

    if not args.skip_health:
        print("\n1️⃣ Health Check...")
        if not asyncio.run(check_health()):
            print("\n❌ Pre-flight check failed. Fix issues before running simulation.")
            sys.exit(1)

    summary = asyncio.run(run_simulation(platforms, args.orders, args.secret))
    sys.exit(1 if summary["split_orders"] else 0)
