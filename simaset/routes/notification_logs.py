from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.authorization import VIEW_NOTIFICATION_LOGS
from ..auth.security import require_permissions
from ..db import get_db
from ..models.models import User
from ..services.notification_routing import get_notification_logs
from .common import iso, str_or_none


router = APIRouter(prefix="/admin/notification-logs", tags=["notification-logs"])


@router.get("")
def list_notification_logs(
    status: Optional[str] = Query(default=None, pattern="^(sent|failed)$"),
    event_type: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _: User = Depends(require_permissions(VIEW_NOTIFICATION_LOGS)),
):
    rows, total = get_notification_logs(db, status=status, event_type=event_type, limit=limit, offset=offset)
    return {
        "total": total,
        "items": [
            {
                "id": str(log.id),
                "user_id": str_or_none(log.user_id),
                "event_type": log.event_type,
                "phone": log.phone,
                "message": log.message,
                "status": log.status,
                "error_message": log.error_message,
                "retry_count": log.retry_count,
                "sent_at": iso(log.sent_at),
                "created_at": iso(log.created_at),
            }
            for log in rows
        ],
    }
