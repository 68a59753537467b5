"""
Request lifecycle state machine for ATK item requests and office-supply requests.

Item request:
    draft -> pending_level_1 -> pending_level_2 -> pending_level_3 -> approved -> completed
    rejected is reachable from any pending_level_* state.

Office-supply request:
    pending -> approved -> completed, rejected reachable from pending.

Every status write is a compare-and-swap on the current status, so two
concurrent transitions from the same state cannot both succeed. Events are
published only after the transaction commits.
"""
import uuid
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ..auth.authorization import (
    APPROVE_OFFICE_REQUESTS,
    MANAGE_ITEM_REQUESTS,
    MANAGE_OFFICE_SUPPLIES,
    AuthorizationContext,
)
from ..config import settings
from ..errors import (
    InvalidRequestData,
    InvalidStateTransition,
    PermissionDenied,
    RequestNotFound,
)
from ..models.models import (
    Department,
    Item,
    ItemRequest,
    ItemRequestLine,
    OfficeRequest,
    OfficeRequestLine,
    OfficeSupply,
    User,
    utcnow,
)
from .audit import record_transition
from .events import ApprovalNeeded, EventBus, RequestCreated, RequestLine, publish_committed
from .stock import adjust_stock


logger = structlog.get_logger(__name__)


LEVEL_STATUSES = {
    1: "pending_level_1",
    2: "pending_level_2",
    3: "pending_level_3",
}
PENDING_LEVELS = {status: level for level, status in LEVEL_STATUSES.items()}

ITEM_TRANSITIONS = {
    "draft": {"pending_level_1"},
    "pending_level_1": {"pending_level_2", "approved", "rejected"},
    "pending_level_2": {"pending_level_3", "approved", "rejected"},
    "pending_level_3": {"approved", "rejected"},
    "approved": {"completed"},
    "rejected": set(),
    "completed": set(),
}

OFFICE_TRANSITIONS = {
    "pending": {"approved", "rejected"},
    "approved": {"completed"},
    "rejected": set(),
    "completed": set(),
}


def can_transition(transitions: Mapping[str, set], current: str, target: str) -> bool:
    return target in transitions.get(current, set())


def level_role(level: int) -> str:
    roles = settings.approval_level_roles
    if 0 < level <= len(roles):
        return roles[level - 1]
    return f"Level {level}"


# =====================
# Helpers
# =====================


def _compare_and_swap(db: Session, model, request_id, expected: str, values: Dict[str, Any]) -> None:
    result = db.execute(
        update(model)
        .where(model.id == request_id, model.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise InvalidStateTransition(
            f"Request is no longer {expected}; it was changed by another user",
            request_id=str(request_id),
        )


def _finish(db: Session, bus: Optional[EventBus], request, events: List) -> None:
    db.commit()
    db.refresh(request)
    if bus is not None and events:
        publish_committed(bus, events)


def _quantity(value) -> int:
    try:
        quantity = int(value)
    except (TypeError, ValueError):
        raise InvalidRequestData(f"Invalid quantity: {value!r}")
    if quantity <= 0:
        raise InvalidRequestData("Quantity must be greater than zero")
    return quantity


def _as_uuid(value, label: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise InvalidRequestData(f"Invalid {label} id: {value!r}")


def _department_id(db: Session, actor: User, department_id) -> Optional[uuid.UUID]:
    department_id = _as_uuid(department_id, "department") if department_id else actor.department_id
    if department_id is not None and db.get(Department, department_id) is None:
        raise InvalidRequestData(f"Unknown department: {department_id}")
    return department_id


def next_item_request_no(db: Session, on: Optional[date] = None) -> str:
    prefix = f"REQ-{(on or date.today()).strftime('%Y%m%d')}-"
    count = db.query(func.count(ItemRequest.id)).filter(ItemRequest.request_no.like(f"{prefix}%")).scalar() or 0
    return f"{prefix}{count + 1:04d}"


def next_office_request_no(on: Optional[date] = None) -> str:
    return f"REQ-{(on or date.today()).strftime('%Y%m%d')}-{uuid.uuid4().hex[-6:].upper()}"


def _item_lines(request: ItemRequest) -> tuple:
    return tuple(
        RequestLine(item_name=line.item.name, quantity=line.quantity_requested, unit=line.item.unit)
        for line in request.lines
    )


def _office_lines(request: OfficeRequest) -> tuple:
    return tuple(
        RequestLine(item_name=line.supply.name, quantity=line.quantity_requested, unit=line.supply.unit)
        for line in request.lines
    )


def _request_created(request, lines: tuple, kind: str) -> RequestCreated:
    return RequestCreated(
        request_id=request.id,
        request_no=request.request_no,
        requester_id=request.user_id,
        requester_name=request.user.name,
        department=request.department.name if request.department else None,
        request_date=request.request_date.isoformat(),
        items=lines,
        request_kind=kind,
    )


# =====================
# Item requests
# =====================


def get_item_request(db: Session, request_id) -> ItemRequest:
    request = db.get(ItemRequest, request_id)
    if request is None:
        raise RequestNotFound(f"Item request {request_id} not found", request_id=str(request_id))
    return request


def create_item_request(
    db: Session,
    bus: Optional[EventBus],
    actor: User,
    lines: Iterable[Mapping[str, Any]],
    *,
    department_id=None,
    request_date: Optional[date] = None,
    notes: Optional[str] = None,
    submit: bool = True,
    approval_levels: Optional[int] = None,
) -> ItemRequest:
    """
    Create an ATK request.

    ``lines`` holds mappings with ``item_id`` and ``quantity``. The request
    starts at pending_level_1, or draft when ``submit`` is False.
    """
    lines = list(lines)
    if not lines:
        raise InvalidRequestData("A request needs at least one item")

    required_levels = approval_levels or settings.approval_levels
    if required_levels not in LEVEL_STATUSES:
        raise InvalidRequestData(f"Approval levels must be between 1 and 3, got {required_levels}")

    request_date = request_date or date.today()
    request = ItemRequest(
        request_no=next_item_request_no(db, request_date),
        user_id=actor.id,
        department_id=_department_id(db, actor, department_id),
        request_date=request_date,
        status="pending_level_1" if submit else "draft",
        required_levels=required_levels,
        notes=notes,
    )
    for position, data in enumerate(lines):
        item = db.get(Item, _as_uuid(data.get("item_id"), "item"))
        if item is None:
            raise InvalidRequestData(f"Unknown item: {data.get('item_id')}")
        quantity = _quantity(data.get("quantity"))
        request.lines.append(
            ItemRequestLine(
                item_id=item.id,
                item=item,
                position=position,
                quantity_requested=quantity,
                quantity_approved=quantity,
            )
        )
    db.add(request)
    db.flush()

    record_transition(
        db,
        "item_request",
        request.id,
        "CREATE",
        actor_id=actor.id,
        changes={"status": {"before": None, "after": request.status}},
        context={"request_no": request.request_no, "required_levels": required_levels},
    )
    db.commit()
    db.refresh(request)

    logger.info("item_request_created", request_id=str(request.id), request_no=request.request_no, status=request.status)
    if submit and bus is not None:
        publish_committed(bus, [_request_created(request, _item_lines(request), "item")])
    return request


def submit_item_request(db: Session, bus: Optional[EventBus], request_id, auth: AuthorizationContext) -> ItemRequest:
    request = get_item_request(db, request_id)
    if request.status != "draft":
        raise InvalidStateTransition(
            f"Request {request.request_no} can only be submitted from draft, not {request.status}",
            request_id=str(request.id),
        )
    if auth.user_id != request.user_id and not auth.can(MANAGE_ITEM_REQUESTS):
        raise PermissionDenied("Only the requester can submit this request", request_id=str(request.id))

    now = utcnow()
    _compare_and_swap(db, ItemRequest, request.id, "draft", {"status": "pending_level_1", "updated_at": now})
    record_transition(
        db,
        "item_request",
        request.id,
        "SUBMIT",
        actor_id=auth.user_id,
        changes={"status": {"before": "draft", "after": "pending_level_1"}},
    )
    db.commit()
    db.refresh(request)

    logger.info("item_request_submitted", request_id=str(request.id))
    if bus is not None:
        publish_committed(bus, [_request_created(request, _item_lines(request), "item")])
    return request


def approve_item_request(db: Session, bus: Optional[EventBus], request_id, auth: AuthorizationContext) -> ItemRequest:
    """
    Approve the current pending level.

    Records approver and timestamp for that level, then moves to the next
    level or to approved once the request's required levels are passed.
    """
    request = get_item_request(db, request_id)
    expected = request.status
    level = PENDING_LEVELS.get(expected)
    if level is None:
        raise InvalidStateTransition(
            f"Request {request.request_no} cannot be approved from status {expected}",
            request_id=str(request.id),
        )
    if not auth.has_approval_role_for_level(level):
        raise PermissionDenied(
            f"Approval at level {level} requires the {level_role(level)} role",
            request_id=str(request.id),
        )

    next_status = "approved" if level >= request.required_levels else LEVEL_STATUSES[level + 1]
    now = utcnow()
    _compare_and_swap(
        db,
        ItemRequest,
        request.id,
        expected,
        {
            "status": next_status,
            f"level{level}_approved_by": auth.user_id,
            f"level{level}_approved_at": now,
            "updated_at": now,
        },
    )
    record_transition(
        db,
        "item_request",
        request.id,
        "APPROVE",
        actor_id=auth.user_id,
        changes={"status": {"before": expected, "after": next_status}},
        context={"level": level},
    )

    events = []
    if next_status != "approved":
        events.append(
            ApprovalNeeded(
                request_id=request.id,
                request_no=request.request_no,
                requester_id=request.user_id,
                requester_name=request.user.name,
                department=request.department.name if request.department else None,
                level=level + 1,
                role=level_role(level + 1),
                items=_item_lines(request),
            )
        )
    _finish(db, bus, request, events)

    logger.info("item_request_approved", request_id=str(request.id), level=level, status=next_status)
    return request


def reject_item_request(
    db: Session,
    bus: Optional[EventBus],
    request_id,
    auth: AuthorizationContext,
    reason: str,
) -> ItemRequest:
    request = get_item_request(db, request_id)
    expected = request.status
    level = PENDING_LEVELS.get(expected)
    if level is None:
        raise InvalidStateTransition(
            f"Request {request.request_no} cannot be rejected from status {expected}",
            request_id=str(request.id),
        )
    if not auth.has_approval_role_for_level(level):
        raise PermissionDenied(
            f"Rejection at level {level} requires the {level_role(level)} role",
            request_id=str(request.id),
        )
    reason = (reason or "").strip()
    if not reason:
        raise InvalidRequestData("A rejection reason is required", request_id=str(request.id))

    now = utcnow()
    _compare_and_swap(
        db,
        ItemRequest,
        request.id,
        expected,
        {
            "status": "rejected",
            "rejected_by": auth.user_id,
            "rejected_at": now,
            "rejection_reason": reason,
            "updated_at": now,
        },
    )
    record_transition(
        db,
        "item_request",
        request.id,
        "REJECT",
        actor_id=auth.user_id,
        changes={"status": {"before": expected, "after": "rejected"}},
        context={"level": level, "reason": reason},
    )
    _finish(db, bus, request, [])

    logger.info("item_request_rejected", request_id=str(request.id), level=level)
    return request


def complete_item_request(
    db: Session,
    bus: Optional[EventBus],
    request_id,
    auth: AuthorizationContext,
    fulfilled: Optional[Mapping[Any, int]] = None,
) -> ItemRequest:
    """
    Hand the items over and deduct stock.

    ``fulfilled`` maps line id to the quantity handed over; lines not listed
    receive their approved quantity. Partial fulfilment is allowed.
    """
    request = get_item_request(db, request_id)
    if request.status != "approved":
        raise InvalidStateTransition(
            f"Request {request.request_no} can only be completed once approved, not {request.status}",
            request_id=str(request.id),
        )
    if not auth.can(MANAGE_ITEM_REQUESTS):
        raise PermissionDenied("Completing a request requires ATK management rights", request_id=str(request.id))

    fulfilled = {str(key): value for key, value in (fulfilled or {}).items()}
    line_ids = {str(line.id) for line in request.lines}
    unknown = set(fulfilled) - line_ids
    if unknown:
        raise InvalidRequestData(f"Unknown request lines: {', '.join(sorted(unknown))}", request_id=str(request.id))

    now = utcnow()
    _compare_and_swap(
        db,
        ItemRequest,
        request.id,
        "approved",
        {"status": "completed", "completed_by": auth.user_id, "completed_at": now, "updated_at": now},
    )
    try:
        for line in request.lines:
            quantity = fulfilled.get(str(line.id), line.quantity_approved or line.quantity_requested)
            quantity = int(quantity)
            if quantity < 0:
                raise InvalidRequestData("Fulfilled quantity cannot be negative", request_id=str(request.id))
            line.quantity_fulfilled = quantity
            if quantity:
                adjust_stock(
                    db,
                    line.item,
                    -quantity,
                    reference_type="item_request",
                    reference_id=request.id,
                    user_id=auth.user_id,
                    note=f"Permintaan {request.request_no}",
                )
        record_transition(
            db,
            "item_request",
            request.id,
            "COMPLETE",
            actor_id=auth.user_id,
            changes={"status": {"before": "approved", "after": "completed"}},
            context={"fulfilled": {str(line.id): line.quantity_fulfilled for line in request.lines}},
        )
    except Exception:
        db.rollback()
        raise
    _finish(db, bus, request, [])

    logger.info("item_request_completed", request_id=str(request.id))
    return request


# =====================
# Office-supply requests
# =====================


def get_office_request(db: Session, request_id) -> OfficeRequest:
    request = db.get(OfficeRequest, request_id)
    if request is None:
        raise RequestNotFound(f"Office request {request_id} not found", request_id=str(request_id))
    return request


def create_office_request(
    db: Session,
    bus: Optional[EventBus],
    actor: User,
    lines: Iterable[Mapping[str, Any]],
    *,
    department_id=None,
    request_date: Optional[date] = None,
    notes: Optional[str] = None,
) -> OfficeRequest:
    """``lines`` holds mappings with ``supply_id`` and ``quantity``."""
    lines = list(lines)
    if not lines:
        raise InvalidRequestData("A request needs at least one supply")

    request_date = request_date or date.today()
    request = OfficeRequest(
        request_no=next_office_request_no(request_date),
        user_id=actor.id,
        department_id=_department_id(db, actor, department_id),
        request_date=request_date,
        status="pending",
        notes=notes,
    )
    for position, data in enumerate(lines):
        supply = db.get(OfficeSupply, _as_uuid(data.get("supply_id"), "office supply"))
        if supply is None:
            raise InvalidRequestData(f"Unknown office supply: {data.get('supply_id')}")
        request.lines.append(
            OfficeRequestLine(
                supply_id=supply.id,
                supply=supply,
                position=position,
                quantity_requested=_quantity(data.get("quantity")),
            )
        )
    db.add(request)
    db.flush()

    record_transition(
        db,
        "office_request",
        request.id,
        "CREATE",
        actor_id=actor.id,
        changes={"status": {"before": None, "after": "pending"}},
        context={"request_no": request.request_no},
    )
    db.commit()
    db.refresh(request)

    logger.info("office_request_created", request_id=str(request.id), request_no=request.request_no)
    if bus is not None:
        publish_committed(bus, [_request_created(request, _office_lines(request), "office")])
    return request


def approve_office_request(db: Session, bus: Optional[EventBus], request_id, auth: AuthorizationContext) -> OfficeRequest:
    request = get_office_request(db, request_id)
    if request.status != "pending":
        raise InvalidStateTransition(
            f"Request {request.request_no} can only be approved while pending, not {request.status}",
            request_id=str(request.id),
        )
    if not auth.can(APPROVE_OFFICE_REQUESTS):
        raise PermissionDenied("Approving office requests requires approval rights", request_id=str(request.id))

    now = utcnow()
    _compare_and_swap(
        db,
        OfficeRequest,
        request.id,
        "pending",
        {"status": "approved", "approved_by": auth.user_id, "approved_at": now, "updated_at": now},
    )
    record_transition(
        db,
        "office_request",
        request.id,
        "APPROVE",
        actor_id=auth.user_id,
        changes={"status": {"before": "pending", "after": "approved"}},
    )
    _finish(db, bus, request, [])

    logger.info("office_request_approved", request_id=str(request.id))
    return request


def reject_office_request(
    db: Session,
    bus: Optional[EventBus],
    request_id,
    auth: AuthorizationContext,
    reason: str,
) -> OfficeRequest:
    request = get_office_request(db, request_id)
    if request.status != "pending":
        raise InvalidStateTransition(
            f"Request {request.request_no} can only be rejected while pending, not {request.status}",
            request_id=str(request.id),
        )
    if not auth.can(APPROVE_OFFICE_REQUESTS):
        raise PermissionDenied("Rejecting office requests requires approval rights", request_id=str(request.id))
    reason = (reason or "").strip()
    if not reason:
        raise InvalidRequestData("A rejection reason is required", request_id=str(request.id))

    now = utcnow()
    _compare_and_swap(
        db,
        OfficeRequest,
        request.id,
        "pending",
        {
            "status": "rejected",
            "rejected_by": auth.user_id,
            "rejected_at": now,
            "rejection_reason": reason,
            "updated_at": now,
        },
    )
    record_transition(
        db,
        "office_request",
        request.id,
        "REJECT",
        actor_id=auth.user_id,
        changes={"status": {"before": "pending", "after": "rejected"}},
        context={"reason": reason},
    )
    _finish(db, bus, request, [])

    logger.info("office_request_rejected", request_id=str(request.id))
    return request


def complete_office_request(
    db: Session,
    bus: Optional[EventBus],
    request_id,
    auth: AuthorizationContext,
    fulfilled: Optional[Mapping[Any, int]] = None,
) -> OfficeRequest:
    """
    Hand the supplies over. Lines not listed in ``fulfilled`` receive as much
    as is in stock, up to the requested quantity.
    """
    request = get_office_request(db, request_id)
    if request.status != "approved":
        raise InvalidStateTransition(
            f"Request {request.request_no} can only be completed once approved, not {request.status}",
            request_id=str(request.id),
        )
    if not auth.can(MANAGE_OFFICE_SUPPLIES):
        raise PermissionDenied("Completing office requests requires supply management rights", request_id=str(request.id))

    fulfilled = {str(key): value for key, value in (fulfilled or {}).items()}
    unknown = set(fulfilled) - {str(line.id) for line in request.lines}
    if unknown:
        raise InvalidRequestData(f"Unknown request lines: {', '.join(sorted(unknown))}", request_id=str(request.id))

    now = utcnow()
    _compare_and_swap(
        db,
        OfficeRequest,
        request.id,
        "approved",
        {"status": "completed", "completed_by": auth.user_id, "completed_at": now, "updated_at": now},
    )
    try:
        for line in request.lines:
            default = min(line.quantity_requested, max(line.supply.stock or 0, 0))
            quantity = int(fulfilled.get(str(line.id), default))
            if quantity < 0:
                raise InvalidRequestData("Fulfilled quantity cannot be negative", request_id=str(request.id))
            line.quantity_fulfilled = quantity
            if quantity:
                adjust_stock(
                    db,
                    line.supply,
                    -quantity,
                    reference_type="office_request",
                    reference_id=request.id,
                    user_id=auth.user_id,
                    note=f"Permintaan {request.request_no}",
                )
        record_transition(
            db,
            "office_request",
            request.id,
            "COMPLETE",
            actor_id=auth.user_id,
            changes={"status": {"before": "approved", "after": "completed"}},
            context={"fulfilled": {str(line.id): line.quantity_fulfilled for line in request.lines}},
        )
    except Exception:
        db.rollback()
        raise
    _finish(db, bus, request, [])

    logger.info("office_request_completed", request_id=str(request.id))
    return request
