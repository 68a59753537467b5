import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..auth.authorization import APPROVE_OFFICE_REQUESTS, MANAGE_OFFICE_SUPPLIES, UserAuthorization
from ..auth.security import get_authorization, get_current_user
from ..db import get_db
from ..errors import WorkflowError
from ..models.models import OfficeRequest, User
from ..schemas.requests import CompleteRequest, OfficeRequestCreate, RejectRequest
from ..services import workflow
from ..services.events import EventBus
from .common import get_event_bus, http_error, iso, str_or_none


router = APIRouter(prefix="/office-requests", tags=["office-requests"])


def _serialize_request(request: OfficeRequest) -> Dict[str, Any]:
    return {
        "id": str(request.id),
        "request_no": request.request_no,
        "status": request.status,
        "request_date": iso(request.request_date),
        "notes": request.notes,
        "user": {"id": str(request.user_id), "name": request.user.name if request.user else None},
        "department": {
            "id": str_or_none(request.department_id),
            "name": request.department.name if request.department else None,
        },
        "approved_by": str_or_none(request.approved_by),
        "approved_at": iso(request.approved_at),
        "rejected_by": str_or_none(request.rejected_by),
        "rejected_at": iso(request.rejected_at),
        "rejection_reason": request.rejection_reason,
        "completed_by": str_or_none(request.completed_by),
        "completed_at": iso(request.completed_at),
        "items": [
            {
                "id": str(line.id),
                "supply_id": str(line.supply_id),
                "supply_name": line.supply.name if line.supply else None,
                "unit": line.supply.unit if line.supply else None,
                "quantity_requested": line.quantity_requested,
                "quantity_fulfilled": line.quantity_fulfilled,
            }
            for line in request.lines
        ],
        "created_at": iso(request.created_at),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_office_request(
    payload: OfficeRequestCreate,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    user: User = Depends(get_current_user),
):
    try:
        request = workflow.create_office_request(
            db,
            bus,
            user,
            [line.model_dump() for line in payload.items],
            department_id=payload.department_id,
            request_date=payload.request_date,
            notes=payload.notes,
        )
    except WorkflowError as exc:
        raise http_error(exc)
    return _serialize_request(request)


@router.get("/{request_id}")
def get_office_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        request = workflow.get_office_request(db, request_id)
    except WorkflowError as exc:
        raise http_error(exc)
    auth = UserAuthorization(user)
    if request.user_id != user.id and not (auth.can(APPROVE_OFFICE_REQUESTS) or auth.can(MANAGE_OFFICE_SUPPLIES)):
        raise HTTPException(status_code=403, detail="Forbidden")
    return _serialize_request(request)


@router.post("/{request_id}/approve")
def approve_office_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    auth: UserAuthorization = Depends(get_authorization),
):
    try:
        request = workflow.approve_office_request(db, bus, request_id, auth)
    except WorkflowError as exc:
        raise http_error(exc)
    return _serialize_request(request)


@router.post("/{request_id}/reject")
def reject_office_request(
    request_id: uuid.UUID,
    payload: RejectRequest,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    auth: UserAuthorization = Depends(get_authorization),
):
    try:
        request = workflow.reject_office_request(db, bus, request_id, auth, payload.reason)
    except WorkflowError as exc:
        raise http_error(exc)
    return _serialize_request(request)


@router.post("/{request_id}/complete")
def complete_office_request(
    request_id: uuid.UUID,
    payload: Optional[CompleteRequest] = None,
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    auth: UserAuthorization = Depends(get_authorization),
):
    fulfilled = payload.fulfilled if payload else None
    try:
        request = workflow.complete_office_request(db, bus, request_id, auth, fulfilled)
    except WorkflowError as exc:
        raise http_error(exc)
    return _serialize_request(request)
