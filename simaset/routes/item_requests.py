import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..auth.authorization import MANAGE_ITEM_REQUESTS, UserAuthorization
from ..auth.security import get_authorization, get_current_user
from ..db import get_db
from ..errors import WorkflowError
from ..models.models import ItemRequest, User
from ..schemas.requests import CompleteRequest, ItemRequestCreate, RejectRequest
from ..services import workflow
from ..services.audit import get_audit_logs
from ..services.events import EventBus
from .common import get_event_bus, http_error, iso, str_or_none


router = APIRouter(prefix="/item-requests", tags=["item-requests"])


def _serialize_request(request: ItemRequest) -> Dict[str, Any]:
    approvals = []
    for level in range(1, request.required_levels + 1):
        approvals.append({
            "level": level,
            "role": workflow.level_role(level),
            "approved_by": str_or_none(getattr(request, f"level{level}_approved_by")),
            "approved_at": iso(getattr(request, f"level{level}_approved_at")),
        })
    return {
        "id": str(request.id),
        "request_no": request.request_no,
        "status": request.status,
        "required_levels": request.required_levels,
        "request_date": iso(request.request_date),
        "notes": request.notes,
        "user": {"id": str(request.user_id), "name": request.user.name if request.user else None},
        "department": {
            "id": str_or_none(request.department_id),
            "name": request.department.name if request.department else None,
        },
        "approvals": approvals,
        "rejected_by": str_or_none(request.rejected_by),
        "rejected_at": iso(request.rejected_at),
        "rejection_reason": request.rejection_reason,
        "completed_by": str_or_none(request.completed_by),
        "completed_at": iso(request.completed_at),
        "items": [
            {
                "id": str(line.id),
                "item_id": str(line.item_id),
                "item_name": line.item.name if line.item else None,
                "unit": line.item.unit if line.item else None,
                "quantity_requested": line.quantity_requested,
                "quantity_approved": line.quantity_approved,
                "quantity_fulfilled": line.quantity_fulfilled,
            }
            for line in request.lines
        ],
        "created_at": iso(request.created_at),
        "updated_at": iso(request.updated_at),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_item_request(
    payload: ItemRequestCreate,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    user: User = Depends(get_current_user),
):
    try:
        request = workflow.create_item_request(
            db,
            bus,
            user,
            [line.model_dump() for line in payload.items],
            department_id=payload.department_id,
            request_date=payload.request_date,
            notes=payload.notes,
            submit=payload.submit,
        )
    except WorkflowError as exc:
        raise http_error(exc)
    return _serialize_request(request)


@router.get("/{request_id}")
def get_item_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        request = workflow.get_item_request(db, request_id)
    except WorkflowError as exc:
        raise http_error(exc)
    auth = UserAuthorization(user)
    if request.user_id != user.id and not auth.can(MANAGE_ITEM_REQUESTS) and not any(
        auth.has_approval_role_for_level(level) for level in range(1, 4)
    ):
        raise HTTPException(status_code=403, detail="Forbidden")
    data = _serialize_request(request)
    data["history"] = [
        {
            "action": entry.action,
            "actor_id": str_or_none(entry.actor_id),
            "changes": entry.changes_json,
            "context": entry.context,
            "timestamp": iso(entry.timestamp_utc),
        }
        for entry in get_audit_logs(db, entity_type="item_request", entity_id=request.id)
    ]
    return data


@router.post("/{request_id}/submit")
def submit_item_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    auth: UserAuthorization = Depends(get_authorization),
):
    try:
        request = workflow.submit_item_request(db, bus, request_id, auth)
    except WorkflowError as exc:
        raise http_error(exc)
    return _serialize_request(request)


@router.post("/{request_id}/approve")
def approve_item_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    auth: UserAuthorization = Depends(get_authorization),
):
    try:
        request = workflow.approve_item_request(db, bus, request_id, auth)
    except WorkflowError as exc:
        raise http_error(exc)
    return _serialize_request(request)


@router.post("/{request_id}/reject")
def reject_item_request(
    request_id: uuid.UUID,
    payload: RejectRequest,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    auth: UserAuthorization = Depends(get_authorization),
):
    try:
        request = workflow.reject_item_request(db, bus, request_id, auth, payload.reason)
    except WorkflowError as exc:
        raise http_error(exc)
    return _serialize_request(request)


@router.post("/{request_id}/complete")
def complete_item_request(
    request_id: uuid.UUID,
    payload: Optional[CompleteRequest] = None,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    auth: UserAuthorization = Depends(get_authorization),
):
    fulfilled = payload.fulfilled if payload else None
    try:
        request = workflow.complete_item_request(db, bus, request_id, auth, fulfilled)
    except WorkflowError as exc:
        raise http_error(exc)
    return _serialize_request(request)
