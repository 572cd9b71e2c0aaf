"""ConnectionManager behaviour driven by a manual clock and fake transports."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.live import (
    ActiveOrderStore,
    Capability,
    ConnectionManager,
    ConnectionState,
    ConnectionStatus,
    LiveUpdateConfig,
    OrderApiError,
    TransportMode,
)
from app.schemas import StreamEventType, StreamMessage
from tests.fakes.live import (
    FakeClock,
    FakeTransportFactory,
    RecordingHandler,
    StubOrderSource,
    make_order,
    settle,
)

CONFIG = LiveUpdateConfig(
    open_timeout=5.0,
    max_reconnect_attempts=3,
    base_delay=1.0,
    max_delay=30.0,
    poll_interval=10.0,
    liveness_interval=60.0,
    reconnect_grace=1.0,
    start_delay=0.1,
)


def build(behaviour="silent", source=None, store=None, config=CONFIG):
    clock = FakeClock()
    factory = FakeTransportFactory(behaviour, clock)
    manager = ConnectionManager(
        stream_url=lambda outlet: f"http://test/api/orders/stream?outletId={outlet}",
        transport_factory=factory,
        order_source=source or StubOrderSource(),
        clock=clock,
        config=config,
        active_order_store=store or ActiveOrderStore(),
    )
    return manager, clock, factory


def stream_json(event_type, order=None, **extra):
    return StreamMessage(
        type=event_type,
        order=order,
        timestamp=datetime.now(timezone.utc),
        outlet_id="O1",
        **extra,
    ).to_json()


# -----------------------------------------------------------------------------
# start / stop
# -----------------------------------------------------------------------------

def test_start_connects_after_delay_and_is_idempotent():
    manager, clock, factory = build("open")
    handler = RecordingHandler()

    manager.start("O1", handler)
    manager.start("O1", handler)
    assert factory.created == []

    clock.advance(0.1)
    assert len(factory.created) == 1
    assert factory.last.url == "http://test/api/orders/stream?outletId=O1"
    assert manager.state == ConnectionState.CONNECTED
    assert manager.capability == Capability.SUPPORTED
    assert manager.mode == TransportMode.PUSH
    assert manager.is_connected
    assert handler.names() == ["connect"]


def test_start_without_outlet_does_nothing():
    manager, clock, factory = build("open")
    handler = RecordingHandler()

    manager.start("", handler)
    clock.advance(10)

    assert factory.created == []
    assert manager.state == ConnectionState.DISCONNECTED
    assert handler.events == []


def test_stop_before_first_attempt_cancels_it():
    manager, clock, factory = build("open")
    handler = RecordingHandler()

    manager.start("O1", handler)
    manager.stop()
    clock.advance(10)

    assert factory.created == []
    assert handler.events == []
    assert manager.state == ConnectionState.DISCONNECTED


def test_stop_during_backoff_silences_everything():
    manager, clock, factory = build("fail")
    handler = RecordingHandler()
    manager.start("O1", handler)
    clock.advance(0.1)
    assert manager.state == ConnectionState.RECONNECTING
    handler.events.clear()

    manager.stop()
    manager.stop()
    clock.advance(120)

    assert len(factory.created) == 1
    assert handler.events == []
    assert clock.pending() == []
    assert manager.state == ConnectionState.DISCONNECTED
    assert manager.connection_status == ConnectionStatus.DISCONNECTED
    assert not manager.is_connected


def test_stop_closes_open_transport():
    manager, clock, factory = build("open")
    handler = RecordingHandler()
    manager.start("O1", handler)
    clock.advance(0.1)

    manager.stop()
    factory.last.emit_message(stream_json(StreamEventType.NEW_ORDER, make_order()))

    assert factory.last.closed
    assert handler.names() == ["connect"]


# -----------------------------------------------------------------------------
# push path
# -----------------------------------------------------------------------------

def test_first_attempt_is_a_capability_probe():
    manager, clock, factory = build("silent")
    manager.start("O1", RecordingHandler())
    clock.advance(0.1)

    assert manager.state == ConnectionState.PROBING
    assert manager.connection_status == ConnectionStatus.CONNECTING
    assert not manager.is_connected


def test_push_messages_reach_the_handler():
    manager, clock, factory = build("open")
    handler = RecordingHandler()
    manager.start("O1", handler)
    clock.advance(0.1)
    transport = factory.last

    transport.emit_message(stream_json(StreamEventType.CONNECTION, message="Connected"))
    transport.emit_message(stream_json(StreamEventType.NEW_ORDER, make_order("ORD-1")))
    transport.emit_message(stream_json(StreamEventType.ORDER_UPDATED, make_order("ORD-2")))
    transport.emit_message(
        stream_json(StreamEventType.ORDER_COMPLETED, make_order("ORD-3", order_status="served", payment_status="paid"))
    )
    transport.emit_message(stream_json(StreamEventType.ERROR, error="kitchen printer offline"))

    assert handler.names() == ["connect", "new_order", "order_update", "order_complete", "error"]
    assert handler.events[1][1].order_id == "ORD-1"
    assert handler.events[2][1].order_id == "ORD-2"
    assert handler.events[3][1].is_complete
    assert handler.events[4][1] == "kitchen printer offline"
    assert manager.last_message.type == StreamEventType.ERROR


def test_unparseable_messages_are_dropped():
    manager, clock, factory = build("open")
    handler = RecordingHandler()
    manager.start("O1", handler)
    clock.advance(0.1)

    factory.last.emit_message("not json")
    factory.last.emit_message('{"type": "new-order", "timestamp": "2024-05-01T12:00:00Z"}')
    factory.last.emit_message('{"type": "bogus", "timestamp": "2024-05-01T12:00:00Z"}')

    assert handler.names() == ["connect"]
    assert manager.state == ConnectionState.CONNECTED
    assert manager.last_message is None
    assert not factory.last.closed


@pytest.mark.asyncio
async def test_unsupported_push_switches_to_polling_without_retries():
    manager, clock, factory = build("unsupported")
    handler = RecordingHandler()
    manager.start("O1", handler)

    clock.advance(0.1)

    assert manager.state == ConnectionState.POLLING
    assert manager.capability == Capability.UNSUPPORTED
    assert manager.mode == TransportMode.POLLING
    assert manager.is_connected
    assert manager.reconnect_attempts == 0
    assert handler.names() == ["connect"]
    assert manager.snapshot().to_dict() == {
        "isConnected": True,
        "connectionStatus": "connected",
        "state": "polling",
        "capability": "unsupported",
        "mode": "polling",
        "lastMessage": None,
        "reconnectAttempts": 0,
        "maxReconnectAttempts": 3,
    }

    clock.advance(600)
    assert len(factory.created) == 1
    manager.stop()
    await settle()


@pytest.mark.asyncio
async def test_failures_back_off_then_fall_back_to_polling():
    config = LiveUpdateConfig(
        open_timeout=5.0, max_reconnect_attempts=3, base_delay=1.0, max_delay=3.0, start_delay=0.1
    )
    manager, clock, factory = build("fail", config=config)
    handler = RecordingHandler()
    manager.start("O1", handler)

    clock.advance(60)

    assert len(factory.created) == 4
    assert factory.gaps() == [1.0, 2.0, 3.0]
    assert all(t.closed for t in factory.created)
    assert manager.state == ConnectionState.POLLING
    assert manager.reconnect_attempts == 3
    assert handler.count("connect") == 1
    assert handler.count("disconnect") == 0
    errors = [e[1] for e in handler.events if e[0] == "error"]
    assert len(errors) == 4
    assert errors[-1].startswith("Live updates degraded to polling")

    clock.advance(600)
    assert len(factory.created) == 4
    manager.stop()
    await settle()


@pytest.mark.asyncio
async def test_push_that_never_opens_ends_in_polling():
    manager, clock, factory = build("silent")
    handler = RecordingHandler()
    manager.start("O1", handler)

    clock.advance(30.0)
    await settle()

    assert manager.state == ConnectionState.POLLING
    assert manager.is_connected
    assert len(factory.created) == 4
    assert factory.gaps() == [6.0, 7.0, 9.0]
    assert handler.count("connect") == 1
    manager.stop()


def test_error_after_open_reports_disconnect_and_recovers():
    manager, clock, factory = build("open")
    handler = RecordingHandler()
    manager.start("O1", handler)
    clock.advance(0.1)

    factory.last.emit_error()

    assert manager.state == ConnectionState.RECONNECTING
    assert manager.connection_status == ConnectionStatus.RECONNECTING
    assert manager.reconnect_attempts == 1
    assert handler.names() == ["connect", "disconnect", "error"]

    clock.advance(1.0)

    assert len(factory.created) == 2
    assert manager.state == ConnectionState.CONNECTED
    assert manager.reconnect_attempts == 0
    assert handler.count("connect") == 2


def test_reconnect_attempt_is_not_a_probe():
    manager, clock, factory = build("open")
    manager.start("O1", RecordingHandler())
    clock.advance(0.1)
    factory.behaviour = "silent"
    factory.last.emit_error()

    clock.advance(1.0)

    assert manager.state == ConnectionState.CONNECTING


def test_events_from_a_replaced_transport_are_ignored():
    manager, clock, factory = build("silent")
    handler = RecordingHandler()
    manager.start("O1", handler)
    clock.advance(0.1)
    stale = factory.last

    clock.advance(5.0)
    assert manager.state == ConnectionState.RECONNECTING
    stale.emit_open()
    stale.emit_message(stream_json(StreamEventType.NEW_ORDER, make_order()))

    assert stale.closed
    assert manager.state == ConnectionState.RECONNECTING
    assert handler.count("connect") == 0
    assert handler.count("new_order") == 0


def test_liveness_check_notices_a_silently_closed_channel():
    manager, clock, factory = build("open")
    handler = RecordingHandler()
    manager.start("O1", handler)
    clock.advance(0.1)

    clock.advance(60.0)
    assert manager.state == ConnectionState.CONNECTED

    factory.last.closed = True
    clock.advance(60.0)

    assert manager.state == ConnectionState.RECONNECTING
    assert handler.names()[-2:] == ["disconnect", "error"]


def test_handler_exceptions_do_not_break_the_manager():
    class ExplodingHandler(RecordingHandler):
        def on_connect(self):
            raise RuntimeError("ui crashed")

    manager, clock, factory = build("open")
    handler = ExplodingHandler()
    manager.start("O1", handler)

    clock.advance(0.1)
    factory.last.emit_message(stream_json(StreamEventType.NEW_ORDER, make_order()))

    assert manager.state == ConnectionState.CONNECTED
    assert handler.names() == ["new_order"]


def test_reconnect_grace_must_be_at_least_half_a_second():
    with pytest.raises(ValueError):
        LiveUpdateConfig(reconnect_grace=0.1)


# -----------------------------------------------------------------------------
# polling path
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_polling_dispatches_only_when_updated_at_changes():
    store = ActiveOrderStore()
    store.set("ORD-1", "S1")
    source = StubOrderSource(make_order("ORD-1"))
    manager, clock, factory = build("unsupported", source=source, store=store)
    handler = RecordingHandler()
    manager.start("O1", handler)

    clock.advance(0.1)
    await settle()
    assert source.calls == [("ORD-1", "S1")]
    assert handler.names() == ["connect", "order_update"]

    clock.advance(10.0)
    await settle()
    assert len(source.calls) == 2
    assert handler.count("order_update") == 1

    later = datetime(2024, 5, 1, 12, 5, tzinfo=timezone.utc)
    source.order = make_order("ORD-1", updated_at=later, order_status="preparing")
    clock.advance(10.0)
    await settle()
    assert len(source.calls) == 3
    assert handler.count("order_update") == 2
    assert manager.last_message.type == StreamEventType.ORDER_UPDATED

    manager.stop()


@pytest.mark.asyncio
async def test_polling_reports_served_and_paid_as_complete():
    store = ActiveOrderStore()
    store.set("ORD-1", "S1")
    source = StubOrderSource(make_order("ORD-1", order_status="served", payment_status="paid"))
    manager, clock, factory = build("unsupported", source=source, store=store)
    handler = RecordingHandler()
    manager.start("O1", handler)

    clock.advance(0.1)
    await settle()

    assert handler.names() == ["connect", "order_complete"]
    assert manager.last_message.type == StreamEventType.ORDER_COMPLETED
    manager.stop()


@pytest.mark.asyncio
async def test_polling_without_active_order_keeps_waiting():
    source = StubOrderSource(make_order())
    store = ActiveOrderStore()
    manager, clock, factory = build("unsupported", source=source, store=store)
    handler = RecordingHandler()
    manager.start("O1", handler)

    clock.advance(0.1)
    await settle()
    assert source.calls == []

    store.set("ORD-1", "S1")
    clock.advance(10.0)
    await settle()
    assert source.calls == [("ORD-1", "S1")]
    assert handler.count("order_update") == 1
    manager.stop()


@pytest.mark.asyncio
async def test_poll_failures_are_reported_and_polling_continues():
    store = ActiveOrderStore()
    store.set("ORD-1", "S1")
    source = StubOrderSource()
    source.error = OrderApiError(500, "boom")
    manager, clock, factory = build("unsupported", source=source, store=store)
    handler = RecordingHandler()
    manager.start("O1", handler)

    clock.advance(0.1)
    await settle()
    assert handler.names() == ["connect", "error"]
    assert handler.events[-1][1].startswith("Polling failed")
    assert manager.state == ConnectionState.POLLING

    source.error = None
    source.order = make_order()
    clock.advance(10.0)
    await settle()
    assert handler.count("order_update") == 1
    manager.stop()


@pytest.mark.asyncio
async def test_stop_while_polling_prevents_further_fetches():
    store = ActiveOrderStore()
    store.set("ORD-1", "S1")
    source = StubOrderSource(make_order())
    manager, clock, factory = build("unsupported", source=source, store=store)
    handler = RecordingHandler()
    manager.start("O1", handler)
    clock.advance(0.1)
    await settle()

    manager.stop()
    clock.advance(100.0)
    await settle()

    assert len(source.calls) == 1
    assert clock.pending() == []
    assert manager.mode == TransportMode.NONE


@pytest.mark.asyncio
async def test_force_reconnect_retries_push_after_grace_delay():
    store = ActiveOrderStore()
    source = StubOrderSource()
    manager, clock, factory = build("unsupported", source=source, store=store)
    handler = RecordingHandler()
    manager.start("O1", handler)
    clock.advance(0.1)
    await settle()
    assert manager.state == ConnectionState.POLLING

    factory.behaviour = "open"
    manager.force_reconnect()

    assert manager.state == ConnectionState.RECONNECTING
    assert manager.capability == Capability.UNKNOWN
    assert manager.reconnect_attempts == 0

    clock.advance(0.4)
    assert len(factory.created) == 1

    clock.advance(0.7)
    await settle()
    assert len(factory.created) == 2
    assert manager.state == ConnectionState.CONNECTED
    assert manager.capability == Capability.SUPPORTED
    assert manager.mode == TransportMode.PUSH
    manager.stop()


def test_force_reconnect_before_start_is_ignored():
    manager, clock, factory = build("open")
    manager.force_reconnect()
    clock.advance(5)

    assert factory.created == []
    assert manager.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_first_open_timeout_can_fall_back_immediately():
    config = LiveUpdateConfig(open_timeout=5.0, start_delay=0.1, fallback_on_open_timeout=True)
    manager, clock, factory = build("silent", config=config)
    handler = RecordingHandler()
    manager.start("O1", handler)

    clock.advance(6.0)
    await settle()

    assert manager.state == ConnectionState.POLLING
    assert manager.reconnect_attempts == 0
    assert len(factory.created) == 1
    assert factory.last.closed
    assert handler.names() == ["error", "connect"]

    clock.advance(600)
    assert len(factory.created) == 1
    manager.stop()
    await settle()


def test_timeout_after_push_was_seen_still_retries_with_fallback_option():
    config = LiveUpdateConfig(open_timeout=5.0, start_delay=0.1, fallback_on_open_timeout=True)
    manager, clock, factory = build("open", config=config)
    manager.start("O1", RecordingHandler())
    clock.advance(0.1)
    factory.behaviour = "silent"
    factory.last.emit_error()

    clock.advance(1.0)
    clock.advance(5.0)

    assert manager.state == ConnectionState.RECONNECTING
    assert manager.reconnect_attempts == 2
