import re
import uuid

import pytest

from simaset.auth.authorization import UserAuthorization
from simaset.errors import (
    InsufficientStock,
    InvalidRequestData,
    InvalidStateTransition,
    PermissionDenied,
    RequestNotFound,
)
from simaset.models.models import AuditLog, Item, ItemRequest, StockMutation
from simaset.services import workflow
from simaset.services.audit import get_audit_logs, verify_integrity
from simaset.services.events import ApprovalNeeded, ReorderPointAlert, RequestCreated
from simaset.services.stock_monitor import install_stock_monitor, uninstall_stock_monitor

from conftest import StaticAuthorization


@pytest.fixture
def requester(make_user, department):
    return make_user(name="Siti Aminah", department=department)


@pytest.fixture
def paper(make_item):
    return make_item(name="Kertas HVS A4", stock=50, min_stock=10, unit="rim")


@pytest.fixture
def pens(make_item):
    return make_item(name="Pulpen Hitam", stock=30, min_stock=5, unit="pcs")


def _create(db, bus, requester, *lines, **kwargs):
    return workflow.create_item_request(
        db,
        bus,
        requester,
        [{"item_id": item.id, "quantity": qty} for item, qty in lines],
        **kwargs,
    )


def _approve_through(db, bus, request, approvers, levels):
    for level in levels:
        request = workflow.approve_item_request(db, bus, request.id, UserAuthorization(approvers[level]))
    return request


def test_create_starts_at_first_level_and_emits_request_created(db, bus, recorded_events, requester, paper, today):
    request = _create(db, bus, requester, (paper, 5), request_date=today, notes="Untuk sidang")

    assert request.status == "pending_level_1"
    assert request.required_levels == 3
    assert re.match(r"^REQ-20260305-\d{4}$", request.request_no)
    assert request.lines[0].quantity_requested == 5
    assert request.lines[0].quantity_approved == 5

    assert len(recorded_events) == 1
    event = recorded_events[0]
    assert isinstance(event, RequestCreated)
    assert event.requester_id == requester.id
    assert event.department == "Kepaniteraan"
    assert event.payload()["items"] == [{"item_name": "Kertas HVS A4", "quantity": 5, "unit": "rim"}]


def test_request_numbers_are_sequential_per_day(db, bus, requester, paper, today):
    first = _create(db, bus, requester, (paper, 1), request_date=today)
    second = _create(db, bus, requester, (paper, 1), request_date=today)
    assert first.request_no == "REQ-20260305-0001"
    assert second.request_no == "REQ-20260305-0002"


def test_create_validates_lines(db, bus, requester, paper):
    with pytest.raises(InvalidRequestData):
        workflow.create_item_request(db, bus, requester, [])
    with pytest.raises(InvalidRequestData):
        _create(db, bus, requester, (paper, 0))
    with pytest.raises(InvalidRequestData):
        workflow.create_item_request(db, bus, requester, [{"item_id": "not-a-uuid", "quantity": 1}])
    assert db.query(ItemRequest).count() == 0


def test_draft_is_submitted_explicitly(db, bus, recorded_events, requester, paper):
    request = _create(db, bus, requester, (paper, 2), submit=False)
    assert request.status == "draft"
    assert recorded_events == []

    request = workflow.submit_item_request(db, bus, request.id, UserAuthorization(requester))
    assert request.status == "pending_level_1"
    assert [type(e) for e in recorded_events] == [RequestCreated]

    with pytest.raises(InvalidStateTransition):
        workflow.submit_item_request(db, bus, request.id, UserAuthorization(requester))


def test_three_level_approval_reaches_approved(db, bus, recorded_events, requester, approvers, paper):
    request = _create(db, bus, requester, (paper, 5))

    request = workflow.approve_item_request(db, bus, request.id, UserAuthorization(approvers[1]))
    assert request.status == "pending_level_2"
    assert request.level1_approved_by == approvers[1].id
    assert request.level1_approved_at is not None

    request = workflow.approve_item_request(db, bus, request.id, UserAuthorization(approvers[2]))
    assert request.status == "pending_level_3"

    request = workflow.approve_item_request(db, bus, request.id, UserAuthorization(approvers[3]))
    assert request.status == "approved"
    assert request.level3_approved_by == approvers[3].id

    needed = [e for e in recorded_events if isinstance(e, ApprovalNeeded)]
    assert [(e.level, e.role) for e in needed] == [(2, "Kasubag Umum"), (3, "KPA")]


@pytest.mark.parametrize("levels", [1, 2])
def test_shorter_approval_chains(db, bus, requester, approvers, paper, levels):
    request = _create(db, bus, requester, (paper, 1), approval_levels=levels)
    request = _approve_through(db, bus, request, approvers, range(1, levels + 1))
    assert request.status == "approved"
    assert request.required_levels == levels


def test_wrong_level_approver_is_denied_without_mutation(db, bus, requester, approvers, paper):
    request = _create(db, bus, requester, (paper, 1))

    with pytest.raises(PermissionDenied):
        workflow.approve_item_request(db, bus, request.id, UserAuthorization(approvers[2]))
    with pytest.raises(PermissionDenied):
        workflow.approve_item_request(db, bus, request.id, UserAuthorization(requester))

    db.expire_all()
    request = db.get(ItemRequest, request.id)
    assert request.status == "pending_level_1"
    assert request.level1_approved_by is None


def test_authorization_is_injected(db, bus, requester, paper):
    request = _create(db, bus, requester, (paper, 1), approval_levels=1)
    auth = StaticAuthorization(user_id=requester.id, levels={1})
    request = workflow.approve_item_request(db, bus, request.id, auth)
    assert request.status == "approved"
    assert request.level1_approved_by == requester.id


def test_reject_at_level_two_keeps_level_one_data(db, bus, requester, approvers, paper):
    request = _create(db, bus, requester, (paper, 1))
    request = _approve_through(db, bus, request, approvers, [1])
    level1_at = request.level1_approved_at

    request = workflow.reject_item_request(
        db, bus, request.id, UserAuthorization(approvers[2]), "  Anggaran habis  "
    )
    assert request.status == "rejected"
    assert request.rejection_reason == "Anggaran habis"
    assert request.rejected_by == approvers[2].id
    assert request.level1_approved_by == approvers[1].id
    assert request.level1_approved_at == level1_at
    assert request.level2_approved_by is None

    with pytest.raises(InvalidStateTransition):
        workflow.approve_item_request(db, bus, request.id, UserAuthorization(approvers[2]))


def test_reject_requires_reason(db, bus, requester, approvers, paper):
    request = _create(db, bus, requester, (paper, 1))
    with pytest.raises(InvalidRequestData):
        workflow.reject_item_request(db, bus, request.id, UserAuthorization(approvers[1]), "   ")
    db.expire_all()
    assert db.get(ItemRequest, request.id).status == "pending_level_1"


def test_terminal_states_accept_no_transitions(db, bus, requester, approvers, operator, paper):
    request = _create(db, bus, requester, (paper, 1), approval_levels=1)
    request = _approve_through(db, bus, request, approvers, [1])
    request = workflow.complete_item_request(db, bus, request.id, UserAuthorization(operator))
    assert request.status == "completed"

    with pytest.raises(InvalidStateTransition):
        workflow.reject_item_request(db, bus, request.id, UserAuthorization(approvers[1]), "Terlambat")
    with pytest.raises(InvalidStateTransition):
        workflow.complete_item_request(db, bus, request.id, UserAuthorization(operator))


def test_complete_requires_approved_status_and_permission(db, bus, requester, approvers, operator, paper):
    request = _create(db, bus, requester, (paper, 1), approval_levels=1)
    with pytest.raises(InvalidStateTransition):
        workflow.complete_item_request(db, bus, request.id, UserAuthorization(operator))

    request = _approve_through(db, bus, request, approvers, [1])
    with pytest.raises(PermissionDenied):
        workflow.complete_item_request(db, bus, request.id, UserAuthorization(approvers[1]))


def test_complete_deducts_stock_and_records_mutations(db, bus, requester, approvers, operator, paper, pens):
    request = _create(db, bus, requester, (paper, 5), (pens, 10), approval_levels=1)
    request = _approve_through(db, bus, request, approvers, [1])
    pen_line = request.lines[1]

    request = workflow.complete_item_request(
        db, bus, request.id, UserAuthorization(operator), fulfilled={pen_line.id: 4}
    )

    assert request.status == "completed"
    assert request.completed_by == operator.id
    assert [line.quantity_fulfilled for line in request.lines] == [5, 4]

    db.expire_all()
    assert db.get(Item, paper.id).stock == 45
    assert db.get(Item, pens.id).stock == 26
    mutations = db.query(StockMutation).filter(StockMutation.reference_id == request.id).all()
    assert sorted(m.quantity for m in mutations) == [4, 5]
    assert {m.reference_type for m in mutations} == {"item_request"}


def test_complete_can_trigger_reorder_alert(db, session_factory, bus, recorded_events, requester, approvers, operator, make_item):
    toner = make_item(name="Toner", stock=6, min_stock=5, unit="pcs")
    monitor = install_stock_monitor(session_factory, bus, mode="on_change")
    try:
        request = _create(db, bus, requester, (toner, 3), approval_levels=1)
        request = _approve_through(db, bus, request, approvers, [1])
        workflow.complete_item_request(db, bus, request.id, UserAuthorization(operator))
    finally:
        uninstall_stock_monitor(session_factory, monitor)

    alerts = [e for e in recorded_events if isinstance(e, ReorderPointAlert)]
    assert len(alerts) == 1
    assert alerts[0].entity_id == toner.id
    assert alerts[0].current_stock == 3


def test_insufficient_stock_leaves_request_approved(db, bus, requester, approvers, operator, make_item):
    ink = make_item(name="Tinta", stock=2, min_stock=1)
    request = _create(db, bus, requester, (ink, 5), approval_levels=1)
    request = _approve_through(db, bus, request, approvers, [1])

    with pytest.raises(InsufficientStock):
        workflow.complete_item_request(db, bus, request.id, UserAuthorization(operator))

    db.expire_all()
    assert db.get(ItemRequest, request.id).status == "approved"
    assert db.get(Item, ink.id).stock == 2
    assert db.query(StockMutation).count() == 0


def test_concurrent_approvals_at_same_level_only_one_wins(db, session_factory, bus, requester, approvers, paper):
    request = _create(db, bus, requester, (paper, 1))

    other = session_factory()
    try:
        stale = other.get(ItemRequest, request.id)
        assert stale.status == "pending_level_1"

        workflow.approve_item_request(db, bus, request.id, UserAuthorization(approvers[1]))

        auth = StaticAuthorization(user_id=approvers[1].id, levels={1})
        with pytest.raises(InvalidStateTransition):
            workflow.approve_item_request(other, bus, request.id, auth)
    finally:
        other.close()

    db.expire_all()
    request = db.get(ItemRequest, request.id)
    assert request.status == "pending_level_2"
    assert db.query(AuditLog).filter(AuditLog.action == "APPROVE").count() == 1


def test_unknown_request(db, bus, approvers):
    with pytest.raises(RequestNotFound):
        workflow.approve_item_request(db, bus, uuid.uuid4(), UserAuthorization(approvers[1]))


def test_transitions_are_audited(db, bus, requester, approvers, paper):
    request = _create(db, bus, requester, (paper, 1), approval_levels=2)
    _approve_through(db, bus, request, approvers, [1, 2])

    entries = get_audit_logs(db, entity_type="item_request", entity_id=request.id)
    assert [e.action for e in entries] == ["CREATE", "APPROVE", "APPROVE"]
    assert entries[1].changes_json == {"status": {"before": "pending_level_1", "after": "pending_level_2"}}
    assert entries[2].context == {"level": 2}
    assert all(verify_integrity(e) for e in entries)

    entries[2].context = {"level": 3}
    assert not verify_integrity(entries[2])


def test_transition_table():
    assert workflow.can_transition(workflow.ITEM_TRANSITIONS, "pending_level_2", "rejected")
    assert not workflow.can_transition(workflow.ITEM_TRANSITIONS, "approved", "rejected")
    assert not workflow.can_transition(workflow.ITEM_TRANSITIONS, "completed", "approved")
    assert not workflow.can_transition(workflow.OFFICE_TRANSITIONS, "approved", "rejected")
