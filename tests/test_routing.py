import uuid

import pytest

from simaset.config import settings
from simaset.errors import UnknownEventType
from simaset.models.models import NotificationLog, QueuedJob
from simaset.services.events import ApprovalNeeded, ReorderPointAlert, RequestCreated, RequestLine
from simaset.services.notification_routing import (
    NotificationRouter,
    first_operator,
    get_notification_logs,
    register_notification_listeners,
)
from simaset.services.stock import adjust_stock
from simaset.services.stock_monitor import install_stock_monitor, uninstall_stock_monitor


@pytest.fixture
def router(session_factory):
    return NotificationRouter(session_factory)


def _request_created(user):
    return RequestCreated(
        request_id=uuid.uuid4(),
        request_no="REQ-20260305-0001",
        requester_id=user.id,
        requester_name=user.name,
        department="Kepaniteraan",
        request_date="2026-03-05",
        items=(RequestLine("Kertas HVS A4", 5, "rim"),),
    )


def _approval_needed(user, level=2):
    return ApprovalNeeded(
        request_id=uuid.uuid4(),
        request_no="REQ-20260305-0001",
        requester_id=user.id,
        requester_name=user.name,
        department=None,
        level=level,
        role="Kasubag Umum",
    )


def _reorder_alert():
    return ReorderPointAlert(
        entity_kind="item",
        entity_id=uuid.uuid4(),
        name="Tinta Printer",
        code="ATK-007",
        current_stock=2,
        min_stock=5,
        unit="botol",
    )


def _jobs(db):
    db.expire_all()
    return db.query(QueuedJob).all()


def test_request_created_is_queued_for_requester(db, router, make_user):
    user = make_user(name="Siti")
    row = router.handle(_request_created(user))

    assert row is not None
    [job] = _jobs(db)
    assert job.queue == "whatsapp"
    assert job.job_name == "send_whatsapp_notification"
    assert job.max_attempts == 3
    assert job.payload["user_id"] == str(user.id)
    assert job.payload["event_type"] == "request_created"
    assert job.payload["data"]["request_no"] == "REQ-20260305-0001"


def test_request_update_category_off_suppresses(db, router, make_user):
    user = make_user(notify_request_update=False)
    assert router.handle(_request_created(user)) is None
    assert _jobs(db) == []


def test_approval_needed_goes_to_requester(db, router, make_user):
    user = make_user(name="Siti")
    router.handle(_approval_needed(user))
    [job] = _jobs(db)
    assert job.payload["event_type"] == "approval_needed"
    assert job.payload["data"]["level"] == 2


def test_reorder_alert_goes_to_first_operator(db, router, operator):
    assert first_operator(db).id == operator.id
    router.handle(_reorder_alert())
    [job] = _jobs(db)
    assert job.payload["user_id"] == str(operator.id)
    assert job.payload["data"]["deficit"] == 3


def test_reorder_alert_without_operator_is_dropped(db, router):
    assert router.handle(_reorder_alert()) is None
    assert _jobs(db) == []


@pytest.mark.parametrize(
    "user_kwargs",
    [
        {"phone": None},
        {"setting": False},
        {"whatsapp_enabled": False},
        {"notify_approval_needed": False},
    ],
)
def test_recipient_preferences_suppress_queueing(db, router, make_user, user_kwargs):
    user = make_user(**user_kwargs)
    assert router.handle(_approval_needed(user)) is None
    assert _jobs(db) == []


def test_global_switch_disables_queueing(db, router, make_user, monkeypatch):
    monkeypatch.setattr(settings, "enable_whatsapp", False)
    user = make_user()
    assert router.handle(_request_created(user)) is None
    assert _jobs(db) == []


def test_unknown_event_is_rejected(db, router):
    with pytest.raises(UnknownEventType):
        router.determine_recipient(db, object())


def test_committed_stock_change_queues_operator_alert(db, session_factory, bus, operator, make_item):
    register_notification_listeners(bus, session_factory)
    monitor = install_stock_monitor(session_factory, bus, mode="on_change")
    try:
        item = make_item(name="Toner", stock=7, min_stock=5, unit="pcs")
        adjust_stock(db, item, -4)
        db.commit()
    finally:
        uninstall_stock_monitor(session_factory, monitor)

    [job] = _jobs(db)
    assert job.payload["event_type"] == "reorder_alert"
    assert job.payload["user_id"] == str(operator.id)
    assert job.payload["data"]["item_name"] == "Toner"
    assert job.payload["data"]["current_stock"] == 3


def test_get_notification_logs_filters(db, make_user):
    user = make_user()
    db.add_all(
        [
            NotificationLog(user_id=user.id, event_type="reorder_alert", phone=user.phone, message="a", status="sent"),
            NotificationLog(user_id=user.id, event_type="reorder_alert", phone=user.phone, message="b", status="failed"),
            NotificationLog(user_id=user.id, event_type="approval_needed", phone=user.phone, message="c", status="failed"),
        ]
    )
    db.commit()

    rows, total = get_notification_logs(db, status="failed")
    assert total == 2
    assert {row.message for row in rows} == {"b", "c"}

    rows, total = get_notification_logs(db, status="failed", event_type="reorder_alert", user_id=user.id)
    assert total == 1
    assert rows[0].message == "b"

    rows, total = get_notification_logs(db, limit=1)
    assert total == 3
    assert len(rows) == 1
