import uuid

import pytest

from simaset.services.events import (
    ApprovalNeeded,
    EventBus,
    ReorderPointAlert,
    RequestCreated,
    RequestLine,
    publish_committed,
)


def _alert(stock=3):
    return ReorderPointAlert(
        entity_kind="item",
        entity_id=uuid.uuid4(),
        name="Tinta Printer",
        code="ATK-007",
        current_stock=stock,
        min_stock=5,
        unit="botol",
    )


def test_every_handler_runs_and_first_error_is_raised():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("first")

    def also_broken(event):
        raise ValueError("second")

    bus.subscribe(ReorderPointAlert, broken)
    bus.subscribe(ReorderPointAlert, seen.append)
    bus.subscribe(ReorderPointAlert, also_broken)

    event = _alert()
    with pytest.raises(RuntimeError, match="first"):
        bus.publish(event)
    assert seen == [event]


def test_handlers_only_receive_their_event_class():
    bus = EventBus()
    seen = []
    bus.subscribe(ApprovalNeeded, seen.append)
    bus.publish(_alert())
    assert seen == []


def test_publish_committed_does_not_raise():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(ReorderPointAlert, broken)
    bus.subscribe(ReorderPointAlert, seen.append)
    publish_committed(bus, [_alert(1), _alert(2)])
    assert [e.current_stock for e in seen] == [1, 2]


def test_reorder_payload():
    event = _alert(stock=2)
    payload = event.payload()
    assert event.event_type.value == "reorder_alert"
    assert payload["item_name"] == "Tinta Printer"
    assert payload["item_code"] == "ATK-007"
    assert payload["current_stock"] == 2
    assert payload["minimal_stock"] == 5
    assert payload["deficit"] == 3
    assert payload["unit"] == "botol"


def test_request_payload_lists_items():
    event = RequestCreated(
        request_id=uuid.uuid4(),
        request_no="REQ-20260305-0001",
        requester_id=uuid.uuid4(),
        requester_name="Siti",
        department="Kepaniteraan",
        request_date="2026-03-05",
        items=(RequestLine("Pulpen", 10, "pcs"),),
    )
    payload = event.payload()
    assert event.event_type.value == "request_created"
    assert payload["user_name"] == "Siti"
    assert payload["request_kind"] == "item"
    assert payload["items"] == [{"item_name": "Pulpen", "quantity": 10, "unit": "pcs"}]
