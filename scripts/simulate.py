"""
Order Traffic Simulation Script

Simulates concurrent guests at one outlet to exercise the order API and
the live-update stream. Each guest places an order, adds a second batch
of items, and (with --admin-token) walks the order through the kitchen
to served/paid so stream clients see the full event sequence.

Run from project root: python scripts/simulate.py --orders 20

Version: 1.0.0
"""

import asyncio
import sys
import os
import random
import time
import argparse
from datetime import datetime
from typing import Any, Optional

import httpx
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from app.live import ActiveOrderStore, OrderApiClient, OrderApiError, generate_session_id
from app.schemas import OrderStatusEnum, OrderUpdate, PaymentStatusEnum

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 20
OUTLET_ID = "O1"

# Sample data for random orders
CUSTOMER_NAMES = ["Asha", "Ravi", "Meera", "Tom", "Emma", "Karan", "Lisa", "Chris", "Amy", "Noor"]
MENU_ITEMS = [
    {"id": "masala-dosa", "name": "Masala Dosa", "price": 120.0, "quantityId": "full", "quantityDescription": "Full"},
    {"id": "idli", "name": "Idli", "price": 60.0, "quantityId": "plate", "quantityDescription": "2 pcs"},
    {"id": "paneer-tikka", "name": "Paneer Tikka", "price": 220.0, "quantityId": "half", "quantityDescription": "Half"},
    {"id": "veg-biryani", "name": "Veg Biryani", "price": 180.0, "quantityId": "full", "quantityDescription": "Full"},
    {"id": "filter-coffee", "name": "Filter Coffee", "price": 40.0, "quantityId": "cup", "quantityDescription": "Cup"},
    {"id": "gulab-jamun", "name": "Gulab Jamun", "price": 70.0, "quantityId": "bowl", "quantityDescription": "2 pcs"},
]
KITCHEN_FLOW = [OrderStatusEnum.PREPARING, OrderStatusEnum.PREPARED, OrderStatusEnum.SERVED]


def generate_random_items(max_lines: int = 3) -> list[dict[str, Any]]:
    """Generate random order lines."""
    items = []
    for menu_item in random.sample(MENU_ITEMS, random.randint(1, max_lines)):
        item = dict(menu_item)
        item["quantity"] = random.randint(1, 3)
        items.append(item)
    return items


async def simulate_guest(
    api: OrderApiClient,
    guest_num: int,
    outlet_id: str,
    admin: bool,
) -> dict[str, Any]:
    """Place, extend and (optionally) complete one order."""
    session_id = generate_session_id()
    start_time = time.time()
    result: dict[str, Any] = {"guest": guest_num, "success": False}

    try:
        order = await api.create_order(
            outlet_id,
            session_id,
            generate_random_items(),
            customer_name=random.choice(CUSTOMER_NAMES),
            table_number=str(random.randint(1, 20)),
        )
        result["order_id"] = order.order_id

        await asyncio.sleep(random.uniform(0.05, 0.3))
        order = await api.add_items(order.order_id, session_id, generate_random_items(max_lines=2))

        if admin:
            for status in KITCHEN_FLOW:
                await asyncio.sleep(random.uniform(0.05, 0.3))
                order = await api.update_order(order.order_id, OrderUpdate(order_status=status))
            order = await api.update_order(order.order_id, OrderUpdate(payment_status=PaymentStatusEnum.PAID))

        result.update(success=True, total=order.total_amount, lines=len(order.items))
    except (OrderApiError, httpx.HTTPError) as e:
        result["error"] = str(e)[:100]

    result["time"] = round(time.time() - start_time, 3)
    return result


async def run_simulation(
    num_orders: int = TOTAL_ORDERS,
    outlet_id: str = OUTLET_ID,
    admin_token: Optional[str] = None,
) -> dict[str, Any]:
    """Fire ``num_orders`` guests concurrently and print a summary."""
    print("=" * 70)
    print("🔥 ORDER TRAFFIC SIMULATION")
    print("=" * 70)
    print(f"📋 Guests: {num_orders}")
    print(f"🎯 Target: {API_BASE_URL} (outlet {outlet_id})")
    print(f"🔧 Kitchen flow: {'on' if admin_token else 'off (no admin token)'}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    # Each simulated guest is independent; don't touch the process-wide active order
    async with OrderApiClient(API_BASE_URL, active_order_store=ActiveOrderStore(), admin_token=admin_token) as api:
        tasks = [simulate_guest(api, i + 1, outlet_id, admin_token is not None) for i in range(num_orders)]
        results = await asyncio.gather(*tasks)
    total_time = round(time.time() - start_time, 2)

    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Successful Guests: {len(successful)}/{num_orders}")
    print(f"❌ Failed Guests: {len(failed)}/{num_orders}")
    print(f"⏱️  Total Time: {total_time}s")

    if successful:
        avg_time = round(sum(r["time"] for r in successful) / len(successful), 3)
        total_revenue = sum(r.get("total", 0) for r in successful)
        print(f"\n📈 Performance Metrics:")
        print(f"   Average Flow Time: {avg_time}s")
        print(f"   💰 Total Order Value: {total_revenue:.2f}")

    if failed:
        print(f"\n⚠️  Failed Guest Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Guest #{f['guest']}: {f.get('error', 'Unknown error')}")

    print("=" * 70)
    return {
        "total": num_orders,
        "successful": len(successful),
        "failed": len(failed),
        "total_time": total_time,
        "results": results,
    }


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Order Traffic Simulation")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of guests")
    parser.add_argument("--outlet", default=OUTLET_ID, help="Outlet id")
    parser.add_argument("--base-url", default=API_BASE_URL, help="API base URL")
    parser.add_argument("--admin-token", default=os.getenv("ADMIN_API_TOKEN"), help="Admin token for kitchen updates")
    args = parser.parse_args()

    API_BASE_URL = args.base_url
    summary = asyncio.run(run_simulation(args.orders, args.outlet, args.admin_token))
    sys.exit(0 if summary["failed"] == 0 else 1)
