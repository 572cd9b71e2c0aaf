"""
                        Services Module

Business logic behind the API, following the hybrid pattern:
each external dependency has a development and a production backend.

Services:
    - orders: session-scoped order operations
    - events: order event broker (in-memory / Redis)
    - stream: SSE framing of broker messages
"""

from app.services.orders import OrderService

__all__ = ["OrderService"]
