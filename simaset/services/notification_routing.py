"""
Routes domain events to WhatsApp delivery jobs.
"""
from typing import Optional

import structlog
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..errors import UnknownEventType
from ..models.models import NotificationLog, QueuedJob, Role, User
from .delivery import SendWhatsAppNotification
from .events import ApprovalNeeded, DomainEvent, EventBus, ReorderPointAlert, RequestCreated
from .notifications import get_setting, is_category_enabled
from .queue import enqueue


logger = structlog.get_logger(__name__)


def first_operator(db: Session) -> Optional[User]:
    return (
        db.query(User)
        .join(User.roles)
        .filter(Role.name == settings.operator_role, User.is_active.is_(True))
        .order_by(User.created_at)
        .first()
    )


class NotificationRouter:
    def __init__(self, session_factory: sessionmaker, queue: Optional[str] = None):
        self.session_factory = session_factory
        self.queue = queue or settings.whatsapp_queue

    def determine_recipient(self, db: Session, event: DomainEvent) -> Optional[User]:
        if isinstance(event, (RequestCreated, ApprovalNeeded)):
            return db.get(User, event.requester_id)
        if isinstance(event, ReorderPointAlert):
            return first_operator(db)
        raise UnknownEventType(type(event).__name__)

    def should_send(self, db: Session, user: Optional[User], event_type: str) -> bool:
        if user is None or not user.phone:
            return False
        setting = get_setting(db, user.id)
        if setting is None or not setting.whatsapp_enabled:
            return False
        return is_category_enabled(setting, event_type)

    def handle(self, event: DomainEvent) -> Optional[QueuedJob]:
        event_type = event.event_type.value
        if not settings.enable_whatsapp:
            logger.debug("notification_suppressed", event_type=event_type, reason="whatsapp_disabled")
            return None

        with self.session_factory() as db:
            user = self.determine_recipient(db, event)
            if not self.should_send(db, user, event_type):
                logger.debug(
                    "notification_suppressed",
                    event_type=event_type,
                    user_id=str(user.id) if user else None,
                )
                return None
            job = SendWhatsAppNotification(user.id, event_type, event.payload())
            return enqueue(db, job, queue=self.queue)


def register_notification_listeners(bus: EventBus, session_factory: sessionmaker, queue: Optional[str] = None) -> NotificationRouter:
    router = NotificationRouter(session_factory, queue)
    for event_cls in (RequestCreated, ApprovalNeeded, ReorderPointAlert):
        bus.subscribe(event_cls, router.handle)
    return router


def get_notification_logs(
    db: Session,
    status: Optional[str] = None,
    event_type: Optional[str] = None,
    user_id=None,
    limit: int = 50,
    offset: int = 0,
):
    query = db.query(NotificationLog)
    if status:
        query = query.filter(NotificationLog.status == status)
    if event_type:
        query = query.filter(NotificationLog.event_type == event_type)
    if user_id:
        query = query.filter(NotificationLog.user_id == user_id)
    total = query.count()
    rows = query.order_by(NotificationLog.created_at.desc()).limit(limit).offset(offset).all()
    return rows, total
