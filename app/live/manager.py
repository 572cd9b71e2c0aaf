"""
Live Update Connection Manager

Keeps one logical "live updates" connection for a (consumer, outlet)
pair and delivers normalized order events to an UpdateHandler,
whichever transport is carrying them.

Connection strategy:
    1. Open the SSE push channel (the capability probe).
    2. Opened within ``open_timeout``   -> CONNECTED, push capability known.
       HTTP 501 / unsupported            -> POLLING for this instance's lifetime.
       Timeout, transport error, or an
       open channel that later fails     -> retry with exponential backoff;
                                            once the retry budget is spent,
                                            fall back to POLLING for good.
       With ``fallback_on_open_timeout`` a first attempt that times out
       goes straight to POLLING instead of retrying.
    3. POLLING re-fetches the active order every ``poll_interval`` and
       dispatches only when ``(orderId, updatedAt)`` changed.

Only ``force_reconnect()`` brings a polling instance back to push.

Threading model:
    Everything runs on one asyncio event loop. Timers come from the
    injected Clock, transport outcomes arrive through callbacks, and the
    only awaited work is the poll fetch. A ``closed`` flag plus a
    generation counter is checked before every dispatch and before
    arming any timer, so nothing fires after ``stop()`` returns.

Failures never propagate to the caller: they end up as a state
transition or an ``on_error`` call. Handler exceptions are logged.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from app.core.config import Settings, get_settings
from app.live.client import OrderApiClient, OrderSource
from app.live.clock import AsyncioClock, Clock, TimerHandle
from app.live.events import (
    STATUS_BY_STATE,
    Capability,
    ConnectionState,
    ConnectionStatus,
    RetryBudget,
    TransportMode,
    UpdateEvent,
    UpdateParseError,
    parse_update_event,
)
from app.live.handlers import UpdateHandler
from app.live.session import ActiveOrderStore, active_orders
from app.live.transport import HttpxSSETransport, PushUnsupportedError, Transport
from app.schemas import StreamEventType

logger = logging.getLogger(__name__)

MIN_RECONNECT_GRACE = 0.5


@dataclass(frozen=True)
class LiveUpdateConfig:
    """Timing and retry policy for one ConnectionManager (seconds)."""
    open_timeout: float = 8.0
    max_reconnect_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    poll_interval: float = 10.0
    liveness_interval: float = 60.0
    reconnect_grace: float = 1.0
    start_delay: float = 0.1
    fallback_on_open_timeout: bool = False

    def __post_init__(self):
        if self.reconnect_grace < MIN_RECONNECT_GRACE:
            raise ValueError(f"reconnect_grace must be >= {MIN_RECONNECT_GRACE}s")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "LiveUpdateConfig":
        settings = settings or get_settings()
        return cls(
            open_timeout=settings.stream_open_timeout,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            base_delay=settings.reconnect_base_delay,
            max_delay=settings.reconnect_max_delay,
            poll_interval=settings.poll_interval,
            liveness_interval=settings.liveness_interval,
            reconnect_grace=settings.reconnect_grace,
            start_delay=settings.start_delay,
            fallback_on_open_timeout=settings.stream_fallback_on_open_timeout,
        )


@dataclass(frozen=True)
class ConnectionSnapshot:
    """Point-in-time view for UI code."""
    is_connected: bool
    connection_status: ConnectionStatus
    state: ConnectionState
    capability: Capability
    mode: TransportMode
    last_message: Optional[UpdateEvent]
    reconnect_attempts: int
    max_reconnect_attempts: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "isConnected": self.is_connected,
            "connectionStatus": self.connection_status.value,
            "state": self.state.value,
            "capability": self.capability.value,
            "mode": self.mode.value,
            "lastMessage": self.last_message.type.value if self.last_message else None,
            "reconnectAttempts": self.reconnect_attempts,
            "maxReconnectAttempts": self.max_reconnect_attempts,
        }


class ConnectionManager:
    """
    Push-with-polling-fallback connection for one outlet.

    Args:
        stream_url: Maps an outlet id to its stream URL
        transport_factory: Builds a fresh Transport per push attempt
        order_source: Fetches order snapshots while polling
        clock: Scheduling capability (asyncio loop by default)
        config: Timing and retry policy (from settings by default)
        active_order_store: Where the polled order id is read from

    Example:
        >>> manager = ConnectionManager.for_api(api)
        >>> manager.start("O1", UpdateCallbacks(order_update=print))
        >>> ...
        >>> manager.stop()
    """

    def __init__(
        self,
        stream_url: Callable[[str], str],
        transport_factory: Callable[[], Transport],
        order_source: OrderSource,
        clock: Optional[Clock] = None,
        config: Optional[LiveUpdateConfig] = None,
        active_order_store: Optional[ActiveOrderStore] = None,
    ):
        self.config = config or LiveUpdateConfig.from_settings()
        self._stream_url = stream_url
        self._transport_factory = transport_factory
        self._order_source = order_source
        self._clock = clock or AsyncioClock()
        self._active_orders = active_order_store or active_orders

        self._outlet_id: Optional[str] = None
        self._handler: Optional[UpdateHandler] = None
        self._initialized = False
        self._closed = True
        self._generation = 0

        self._state = ConnectionState.DISCONNECTED
        self._capability = Capability.UNKNOWN
        self._mode = TransportMode.NONE
        self._fell_back = False
        self._budget = RetryBudget(
            max=self.config.max_reconnect_attempts,
            base_delay=self.config.base_delay,
            max_delay=self.config.max_delay,
        )

        self._transport: Optional[Transport] = None
        self._connect_timer: Optional[TimerHandle] = None
        self._open_timer: Optional[TimerHandle] = None
        self._liveness_timer: Optional[TimerHandle] = None
        self._poll_timer: Optional[TimerHandle] = None
        self._poll_task: Optional[asyncio.Task] = None

        self._last_message: Optional[UpdateEvent] = None
        self._last_seen: Optional[tuple] = None

    @classmethod
    def for_api(
        cls,
        api: OrderApiClient,
        clock: Optional[Clock] = None,
        config: Optional[LiveUpdateConfig] = None,
    ) -> "ConnectionManager":
        """Wire a manager to an OrderApiClient: SSE over its httpx client, polling through it."""
        return cls(
            stream_url=api.stream_url,
            transport_factory=lambda: HttpxSSETransport(api.http),
            order_source=api,
            clock=clock,
            config=config,
            active_order_store=api.active_orders,
        )

    # =========================================================================
    # OBSERVABLE STATE
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connection_status(self) -> ConnectionStatus:
        return STATUS_BY_STATE[self._state]

    @property
    def is_connected(self) -> bool:
        return self._state in (ConnectionState.CONNECTED, ConnectionState.POLLING)

    @property
    def capability(self) -> Capability:
        return self._capability

    @property
    def mode(self) -> TransportMode:
        return self._mode

    @property
    def last_message(self) -> Optional[UpdateEvent]:
        return self._last_message

    @property
    def reconnect_attempts(self) -> int:
        return self._budget.attempts

    @property
    def max_reconnect_attempts(self) -> int:
        return self._budget.max

    @property
    def outlet_id(self) -> Optional[str]:
        return self._outlet_id

    def snapshot(self) -> ConnectionSnapshot:
        return ConnectionSnapshot(
            is_connected=self.is_connected,
            connection_status=self.connection_status,
            state=self._state,
            capability=self._capability,
            mode=self._mode,
            last_message=self._last_message,
            reconnect_attempts=self.reconnect_attempts,
            max_reconnect_attempts=self.max_reconnect_attempts,
        )

    # =========================================================================
    # PUBLIC CONTROL
    # =========================================================================

    def start(self, outlet_id: str, handler: UpdateHandler) -> None:
        """Begin connecting in the background. A repeated call is a no-op."""
        if self._initialized:
            logger.debug(f"Live updates already started for outlet {self._outlet_id}")
            return
        if not outlet_id:
            logger.warning("Live updates not started: outlet id is required")
            return

        self._outlet_id = outlet_id
        self._handler = handler
        self._initialized = True
        self._closed = False
        logger.info(f"Starting live updates for outlet {outlet_id}")
        self._connect_timer = self._arm(self.config.start_delay, self._connect)

    def stop(self) -> None:
        """Tear everything down. Safe to call repeatedly and before start resolves."""
        was_running = not self._closed
        self._closed = True
        self._initialized = False
        self._teardown()
        self._mode = TransportMode.NONE
        self._set_state(ConnectionState.DISCONNECTED)
        if was_running:
            logger.info(f"Live updates stopped for outlet {self._outlet_id}")

    def force_reconnect(self) -> None:
        """Forget capability and retries, then try push again after the grace delay."""
        if self._outlet_id is None or self._handler is None:
            logger.warning("Reconnect requested before live updates were started")
            return

        logger.info(f"Manual reconnect requested for outlet {self._outlet_id}")
        self._closed = False
        self._initialized = True
        self._teardown()
        self._budget.reset()
        self._capability = Capability.UNKNOWN
        self._fell_back = False
        self._mode = TransportMode.NONE
        self._set_state(ConnectionState.RECONNECTING)
        self._connect_timer = self._arm(self.config.reconnect_grace, self._connect)

    # =========================================================================
    # PUSH PATH
    # =========================================================================

    def _connect(self) -> None:
        self._connect_timer = None
        if self._capability == Capability.UNSUPPORTED or self._fell_back:
            self._enter_polling()
            return

        probing = self._capability == Capability.UNKNOWN and self._budget.attempts == 0
        self._set_state(ConnectionState.PROBING if probing else ConnectionState.CONNECTING)

        self._generation += 1
        generation = self._generation
        url = self._stream_url(self._outlet_id)
        logger.debug(f"Opening push channel {url} (attempt {self._budget.attempts + 1})")

        self._transport = self._transport_factory()
        self._open_timer = self._arm(self.config.open_timeout, self._on_open_timeout)
        try:
            self._transport.open(
                url,
                on_open=lambda: self._on_transport_open(generation),
                on_message=lambda raw: self._on_transport_message(generation, raw),
                on_error=lambda error: self._on_transport_error(generation, error),
            )
        except Exception as e:
            logger.warning(f"Push channel could not be created: {e}")
            self._on_transport_error(generation, e)

    def _on_transport_open(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        self._cancel(self._open_timer)
        self._open_timer = None

        self._capability = Capability.SUPPORTED
        self._budget.reset()
        self._mode = TransportMode.PUSH
        self._set_state(ConnectionState.CONNECTED)
        self._liveness_timer = self._arm(self.config.liveness_interval, self._check_liveness)
        logger.info(f"Push channel open for outlet {self._outlet_id}")
        self._dispatch("on_connect")

    def _on_transport_message(self, generation: int, raw: str) -> None:
        if not self._is_current(generation):
            return
        try:
            event = parse_update_event(raw)
        except UpdateParseError as e:
            logger.warning(f"Dropping stream message: {e}")
            return

        self._last_message = event
        if event.type == StreamEventType.CONNECTION:
            logger.debug(f"Stream confirmed connection for outlet {event.outlet_id}")
        elif event.type == StreamEventType.NEW_ORDER:
            self._dispatch("on_new_order", event.order)
        elif event.type == StreamEventType.ORDER_UPDATED:
            self._dispatch("on_order_update", event.order)
        elif event.type == StreamEventType.ORDER_COMPLETED:
            self._dispatch("on_order_complete", event.order)
        elif event.type == StreamEventType.ERROR:
            logger.warning(f"Stream reported error: {event.error_text}")
            self._dispatch("on_error", event.error_text)

    def _on_transport_error(self, generation: int, error: Exception) -> None:
        if not self._is_current(generation):
            return
        if isinstance(error, PushUnsupportedError):
            logger.info(
                f"Push not supported for outlet {self._outlet_id} "
                f"(fallback hint: {error.fallback}); switching to polling"
            )
            self._capability = Capability.UNSUPPORTED
            self._enter_polling()
            return
        self._handle_transient_failure(str(error) or type(error).__name__)

    def _on_open_timeout(self) -> None:
        self._open_timer = None
        if self._state == ConnectionState.CONNECTED:
            return
        if self.config.fallback_on_open_timeout and self._capability == Capability.UNKNOWN:
            logger.warning(
                f"Push channel for outlet {self._outlet_id} did not open within "
                f"{self.config.open_timeout:g}s; falling back to polling"
            )
            self._fell_back = True
            self._dispatch("on_error", "Live updates degraded to polling: push channel did not open")
            self._enter_polling()
            return
        self._handle_transient_failure(
            f"Push channel did not open within {self.config.open_timeout:g}s"
        )

    def _check_liveness(self) -> None:
        self._liveness_timer = None
        if self._state != ConnectionState.CONNECTED:
            return
        if self._transport is None or self._transport.is_closed:
            self._handle_transient_failure("Push channel closed without an error")
            return
        self._liveness_timer = self._arm(self.config.liveness_interval, self._check_liveness)

    def _handle_transient_failure(self, reason: str) -> None:
        was_connected = self._state == ConnectionState.CONNECTED
        self._teardown()
        self._mode = TransportMode.NONE

        if self._budget.exhausted:
            logger.warning(
                f"Push failed for outlet {self._outlet_id} after "
                f"{self._budget.attempts} retries ({reason}); falling back to polling"
            )
            self._fell_back = True
            if was_connected:
                self._dispatch("on_disconnect")
            self._dispatch("on_error", f"Live updates degraded to polling: {reason}")
            self._enter_polling()
            return

        delay = self._budget.consume()
        self._set_state(ConnectionState.RECONNECTING)
        self._connect_timer = self._arm(delay, self._connect)
        logger.warning(
            f"Push failed for outlet {self._outlet_id} ({reason}); retry "
            f"{self._budget.attempts}/{self._budget.max} in {delay:g}s"
        )
        if was_connected:
            self._dispatch("on_disconnect")
        self._dispatch("on_error", reason)

    # =========================================================================
    # POLLING PATH
    # =========================================================================

    def _enter_polling(self) -> None:
        if self._closed:
            return
        already_polling = self._mode == TransportMode.POLLING
        if not already_polling:
            self._teardown()
            self._mode = TransportMode.POLLING
            self._poll_timer = self._arm(0, self._poll_tick)
            logger.info(
                f"Polling active order every {self.config.poll_interval:g}s "
                f"for outlet {self._outlet_id}"
            )
        self._set_state(ConnectionState.POLLING)
        if not already_polling:
            self._dispatch("on_connect")

    def _poll_tick(self) -> None:
        self._poll_timer = None
        if self._mode != TransportMode.POLLING:
            return
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_timer = self._arm(self.config.poll_interval, self._poll_tick)
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_once(self._generation))

    async def _poll_once(self, generation: int) -> None:
        try:
            active = self._active_orders.get()
            if active is None:
                logger.debug("No active order to poll")
                return

            try:
                order = await self._order_source.fetch_order(active.order_id, active.session_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._is_current(generation):
                    logger.warning(f"Polling {active.order_id} failed: {e}")
                    self._dispatch("on_error", f"Polling failed: {e}")
                return

            if not self._is_current(generation):
                return
            if order is None:
                logger.debug(f"Active order {active.order_id} not visible to this session")
                return

            seen = (order.order_id, order.updated_at)
            if seen == self._last_seen:
                return
            self._last_seen = seen

            if order.is_complete:
                self._last_message = UpdateEvent.from_order(StreamEventType.ORDER_COMPLETED, order)
                self._dispatch("on_order_complete", order)
            else:
                self._last_message = UpdateEvent.from_order(StreamEventType.ORDER_UPDATED, order)
                self._dispatch("on_order_update", order)
        finally:
            if self._poll_task is asyncio.current_task():
                self._poll_task = None
            if self._is_current(generation) and self._mode == TransportMode.POLLING:
                self._poll_timer = self._arm(self.config.poll_interval, self._poll_tick)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _is_current(self, generation: int) -> bool:
        return not self._closed and generation == self._generation

    def _arm(self, delay: float, callback: Callable[[], None]) -> Optional[TimerHandle]:
        """Schedule ``callback`` unless closed; it is skipped if the generation moved on."""
        if self._closed:
            return None
        generation = self._generation

        def fire() -> None:
            if self._is_current(generation):
                callback()

        return self._clock.call_later(delay, fire)

    def _teardown(self) -> None:
        """Invalidate in-flight work, cancel timers and poll fetch, close the transport."""
        self._generation += 1
        for timer in (self._connect_timer, self._open_timer, self._liveness_timer, self._poll_timer):
            self._cancel(timer)
        self._connect_timer = self._open_timer = self._liveness_timer = self._poll_timer = None

        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None

        if self._transport is not None:
            transport, self._transport = self._transport, None
            try:
                transport.close()
            except Exception as e:
                logger.warning(f"Error closing push transport: {e}")

    @staticmethod
    def _cancel(timer: Optional[TimerHandle]) -> None:
        if timer is not None:
            timer.cancel()

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug(f"Live updates {self._outlet_id}: {self._state.value} -> {state.value}")
            self._state = state

    def _dispatch(self, method: str, *args) -> None:
        if self._closed or self._handler is None:
            return
        try:
            getattr(self._handler, method)(*args)
        except Exception:
            logger.exception(f"Update handler {method} raised")
