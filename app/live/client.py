"""
Order API Client

Async httpx client for the Order Service, used by guest-facing code
and by the ConnectionManager polling path. Placing or viewing an order
records it as the active order so polling knows what to watch.

Usage:
    async with OrderApiClient("http://localhost:8001") as api:
        order = await api.create_order("O1", session_id, items, total_amount=240.0)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional, Union

import httpx

from app.core.config import get_settings
from app.live.session import ActiveOrderStore, active_orders
from app.schemas import (
    OrderCreate,
    OrderItem,
    OrderItemsAdd,
    OrderResponse,
    OrderUpdate,
)

logger = logging.getLogger(__name__)

ItemInput = Union[OrderItem, dict[str, Any]]


class OrderApiError(Exception):
    """Non-success answer from the Order Service."""

    def __init__(self, status_code: int, message: str, detail: Optional[str] = None):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.detail = detail


class OrderSource(ABC):
    """Where the polling path fetches order snapshots from."""

    @abstractmethod
    async def fetch_order(self, order_id: str, session_id: Optional[str]) -> Optional[OrderResponse]:
        """Return the order, or None when it is missing or not visible to the session."""
        pass


def _to_items(items: Iterable[ItemInput]) -> list[OrderItem]:
    return [item if isinstance(item, OrderItem) else OrderItem.model_validate(item) for item in items]


class OrderApiClient(OrderSource):
    """Thin wrapper over the /api/orders endpoints."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        active_order_store: Optional[ActiveOrderStore] = None,
        admin_token: Optional[str] = None,
        timeout: float = 10.0,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.app_base_url).rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self.active_orders = active_order_store or active_orders
        self.admin_token = admin_token

    @property
    def http(self) -> httpx.AsyncClient:
        return self._client

    async def __aenter__(self) -> "OrderApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def stream_url(self, outlet_id: str) -> str:
        return str(httpx.URL(f"{self.base_url}/api/orders/stream", params={"outletId": outlet_id}))

    # -------------------------------------------------------------------------
    # Guest operations
    # -------------------------------------------------------------------------

    async def create_order(
        self,
        outlet_id: str,
        session_id: str,
        items: Iterable[ItemInput],
        total_amount: Optional[float] = None,
        comments: Optional[str] = None,
        customer_name: Optional[str] = None,
        table_number: Optional[str] = None,
    ) -> OrderResponse:
        lines = _to_items(items)
        if total_amount is None:
            total_amount = sum(item.line_total for item in lines)
        payload = OrderCreate(
            outlet_id=outlet_id,
            session_id=session_id,
            items=lines,
            total_amount=total_amount,
            comments=comments,
            customer_name=customer_name,
            table_number=table_number,
        )
        data = await self._request("POST", "/api/orders", json=payload.model_dump(mode="json", by_alias=True, exclude_none=True))
        order = OrderResponse.model_validate(data["order"])
        self.active_orders.set(order.order_id, session_id)
        logger.info(f"Placed order {order.order_id} at outlet {outlet_id}")
        return order

    async def get_order(self, order_id: str, session_id: str) -> OrderResponse:
        data = await self._request("GET", f"/api/orders/{order_id}", params={"sessionId": session_id})
        order = OrderResponse.model_validate(data["order"])
        self.active_orders.set(order.order_id, session_id)
        return order

    async def list_orders(self, outlet_id: str, session_id: str) -> list[OrderResponse]:
        data = await self._request("GET", "/api/orders", params={"outletId": outlet_id, "sessionId": session_id})
        return [OrderResponse.model_validate(order) for order in data["orders"]]

    async def add_items(self, order_id: str, session_id: str, items: Iterable[ItemInput]) -> OrderResponse:
        payload = OrderItemsAdd(session_id=session_id, items=_to_items(items))
        data = await self._request(
            "POST",
            f"/api/orders/{order_id}/add-items",
            json=payload.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        return OrderResponse.model_validate(data["order"])

    # -------------------------------------------------------------------------
    # Admin operations
    # -------------------------------------------------------------------------

    async def update_order(self, order_id: str, changes: OrderUpdate) -> OrderResponse:
        data = await self._request(
            "PUT",
            f"/api/orders/{order_id}",
            json=changes.model_dump(mode="json", by_alias=True, exclude_none=True),
            headers=self._admin_headers(),
        )
        return OrderResponse.model_validate(data["order"])

    # -------------------------------------------------------------------------
    # OrderSource
    # -------------------------------------------------------------------------

    async def fetch_order(self, order_id: str, session_id: Optional[str]) -> Optional[OrderResponse]:
        params = {"sessionId": session_id} if session_id else None
        headers = None if session_id else self._admin_headers()
        try:
            data = await self._request("GET", f"/api/orders/{order_id}", params=params, headers=headers)
        except OrderApiError as e:
            if e.status_code == 404:
                return None
            raise
        return OrderResponse.model_validate(data["order"])

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _admin_headers(self) -> dict[str, str]:
        token = self.admin_token or get_settings().admin_api_token
        return {"X-Admin-Token": token} if token else {}

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        response = await self._client.request(method, f"{self.base_url}{path}", **kwargs)
        if response.is_success:
            return response.json()

        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("error") or response.reason_phrase or "Request failed"
        raise OrderApiError(response.status_code, message, body.get("detail"))
