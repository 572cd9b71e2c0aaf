"""Stream payload parsing, retry budget arithmetic and session ids."""
import json
import re

import pytest

from app.live import (
    ActiveOrderStore,
    ConnectionState,
    ConnectionStatus,
    RetryBudget,
    SessionStore,
    UpdateCallbacks,
    UpdateParseError,
    generate_session_id,
    parse_update_event,
)
from app.live.events import STATUS_BY_STATE
from app.schemas import StreamEventType
from tests.fakes.live import make_order


def test_retry_budget_doubles_and_caps():
    budget = RetryBudget(max=5, base_delay=1.0, max_delay=10.0)

    delays = [budget.consume() for _ in range(5)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 10.0]
    assert budget.exhausted
    budget.reset()
    assert budget.attempts == 0
    assert budget.next_delay() == 1.0


def test_every_state_has_a_ui_status():
    assert set(STATUS_BY_STATE) == set(ConnectionState)
    assert STATUS_BY_STATE[ConnectionState.POLLING] == ConnectionStatus.CONNECTED
    assert STATUS_BY_STATE[ConnectionState.PROBING] == ConnectionStatus.CONNECTING


def test_parse_order_event():
    order = make_order("ORD-9")
    raw = json.dumps({
        "type": "order-updated",
        "order": order.model_dump(mode="json", by_alias=True),
        "timestamp": "2024-05-01T12:00:00Z",
        "outletId": "O1",
    })

    event = parse_update_event(raw)

    assert event.type == StreamEventType.ORDER_UPDATED
    assert event.order.order_id == "ORD-9"
    assert event.outlet_id == "O1"


def test_parse_error_event_text():
    event = parse_update_event({"type": "error", "message": "stream hiccup", "timestamp": "2024-05-01T12:00:00Z"})

    assert event.type == StreamEventType.ERROR
    assert event.error_text == "stream hiccup"


@pytest.mark.parametrize("raw", [
    "not json",
    b"{",
    '{"type": "new-order", "timestamp": "2024-05-01T12:00:00Z"}',
    '{"type": "order-completed"}',
    '{"type": "mystery", "timestamp": "2024-05-01T12:00:00Z"}',
    "[]",
])
def test_parse_rejects_bad_payloads(raw):
    with pytest.raises(UpdateParseError):
        parse_update_event(raw)


def test_session_id_format():
    session_id = generate_session_id()

    assert re.fullmatch(r"session_[0-9a-z]+_[0-9a-z]{11}", session_id)
    assert generate_session_id() != session_id


def test_session_store_creates_once():
    store = SessionStore()
    first = store.get_or_create()

    assert store.get_or_create() == first
    store.clear()
    assert store.get_or_create() != first


def test_active_order_store_keeps_last_write():
    store = ActiveOrderStore()
    assert store.get() is None

    store.set("ORD-1", "S1")
    store.set("ORD-2", "S1")

    assert store.get().order_id == "ORD-2"
    store.clear()
    assert store.get() is None


def test_update_callbacks_skip_missing_callables():
    seen = []
    callbacks = UpdateCallbacks(order_update=seen.append)

    callbacks.on_order_update(make_order())
    callbacks.on_new_order(make_order())
    callbacks.on_connect()

    assert [o.order_id for o in seen] == ["ORD-1"]
