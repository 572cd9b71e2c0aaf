"""
Live Order Watcher

Runs a ConnectionManager against a running API and prints every order
event and connection change. Handy for checking push vs polling
behaviour of a deployment.

Run from project root:
    python scripts/watch_orders.py --outlet O1
    python scripts/watch_orders.py --outlet O1 --order ORD-... --session session_...

Version: 1.0.0
"""

import asyncio
import sys
import os
import argparse
from datetime import datetime
from typing import Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from app.core.config import get_logger, setup_logging
from app.live import ConnectionManager, OrderApiClient, UpdateHandler
from app.schemas import OrderResponse

logger = get_logger("watch_orders")


class PrintingHandler(UpdateHandler):
    """Prints each event with a timestamp."""

    def _print(self, icon: str, text: str) -> None:
        print(f"{datetime.now().strftime('%H:%M:%S')} {icon} {text}")

    def _describe(self, order: OrderResponse) -> str:
        return (
            f"{order.order_id} {order.order_status.value}/{order.payment_status.value} "
            f"total={order.total_amount:.2f} lines={len(order.items)}"
        )

    def on_new_order(self, order: OrderResponse) -> None:
        self._print("🆕", self._describe(order))

    def on_order_update(self, order: OrderResponse) -> None:
        self._print("🔄", self._describe(order))

    def on_order_complete(self, order: OrderResponse) -> None:
        self._print("✅", self._describe(order))

    def on_error(self, message: str) -> None:
        self._print("⚠️", message)

    def on_connect(self) -> None:
        self._print("🔌", "connected")

    def on_disconnect(self) -> None:
        self._print("❌", "disconnected")


async def watch(
    base_url: str,
    outlet_id: str,
    order_id: Optional[str],
    session_id: Optional[str],
    minutes: Optional[float],
) -> None:
    async with OrderApiClient(base_url) as api:
        if order_id and session_id:
            api.active_orders.set(order_id, session_id)

        manager = ConnectionManager.for_api(api)
        manager.start(outlet_id, PrintingHandler())
        try:
            if minutes is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(minutes * 60.0)
        finally:
            logger.info(f"Final status: {manager.snapshot().to_dict()}")
            manager.stop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Watch live order events for an outlet")
    parser.add_argument("--outlet", required=True, help="Outlet id")
    parser.add_argument("--base-url", default="http://localhost:8001", help="API base URL")
    parser.add_argument("--order", help="Order id to poll when push is unavailable")
    parser.add_argument("--session", help="Session id owning --order")
    parser.add_argument("--minutes", type=float, help="Stop after this many minutes")
    args = parser.parse_args()

    setup_logging()
    try:
        asyncio.run(watch(args.base_url, args.outlet, args.order, args.session, args.minutes))
    except KeyboardInterrupt:
        pass
