"""
WhatsApp delivery job.

One job per notification. Every gateway attempt is recorded in
notification_logs; quiet hours and disabled preferences end the job quietly
without a log entry.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

import pytz
import structlog

from ..config import settings
from ..errors import GatewayNotConfigured, UnknownEventType
from ..models.models import NotificationLog, User, utcnow
from .fonnte import FonnteClient
from .messages import MessageGenerator
from .notifications import CATEGORY_FLAGS, get_or_create_setting, is_category_enabled, is_quiet_hours
from .queue import Job, JobContext, register_job


logger = structlog.get_logger(__name__)

FALLBACK_MESSAGE = "Failed to generate message"


def local_now(utc_now: Optional[datetime] = None, timezone_str: Optional[str] = None) -> datetime:
    tz = pytz.timezone(timezone_str or settings.tz_default)
    if utc_now is None:
        return datetime.now(tz)
    if utc_now.tzinfo is None:
        utc_now = pytz.utc.localize(utc_now)
    return utc_now.astimezone(tz)


@register_job
class SendWhatsAppNotification(Job):
    name = "send_whatsapp_notification"
    queue = "whatsapp"
    tries = 3
    backoff = (60, 300, 1800)  # 1 min, 5 min, 30 min

    def __init__(self, user_id: uuid.UUID, event_type: str, data: Dict[str, Any]):
        self.user_id = user_id
        self.event_type = event_type
        self.data = data

    def to_payload(self) -> Dict[str, Any]:
        return {"user_id": str(self.user_id), "event_type": self.event_type, "data": self.data}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SendWhatsAppNotification":
        return cls(uuid.UUID(payload["user_id"]), payload["event_type"], payload.get("data") or {})

    def generate_message(self) -> str:
        return MessageGenerator().generate(self.event_type, self.data)

    def handle(self, ctx: JobContext) -> None:
        if self.event_type not in CATEGORY_FLAGS:
            raise UnknownEventType(self.event_type)

        db = ctx.db
        log = logger.bind(user_id=str(self.user_id), event_type=self.event_type, attempt=ctx.attempt)

        user = db.get(User, self.user_id)
        if user is None or not user.phone:
            log.debug("whatsapp_skipped_no_recipient")
            return

        setting = get_or_create_setting(db, user)
        if not setting.whatsapp_enabled or not is_category_enabled(setting, self.event_type):
            log.debug("whatsapp_skipped_disabled")
            return

        if is_quiet_hours(setting.quiet_hours_start, setting.quiet_hours_end, now=local_now(ctx.now)):
            log.info("whatsapp_skipped_quiet_hours")
            return

        message = self.generate_message()
        gateway = ctx.gateway
        if gateway is None:
            try:
                gateway = FonnteClient()
            except ValueError as exc:
                raise GatewayNotConfigured(str(exc)) from exc

        try:
            response = gateway.send(user.phone, message)
        except Exception as exc:
            db.add(
                NotificationLog(
                    user_id=user.id,
                    event_type=self.event_type,
                    phone=user.phone,
                    message=message,
                    status="failed",
                    error_message=str(exc),
                    retry_count=ctx.current_attempt_number() - 1,
                )
            )
            db.commit()
            log.warning("whatsapp_send_failed", error=str(exc))
            raise

        db.add(
            NotificationLog(
                user_id=user.id,
                event_type=self.event_type,
                phone=user.phone,
                message=message,
                status="sent",
                gateway_response=response,
                retry_count=ctx.current_attempt_number() - 1,
                sent_at=utcnow(),
            )
        )
        db.commit()
        log.info("whatsapp_sent")

    def failed(self, ctx: JobContext, exc: BaseException) -> None:
        db = ctx.db
        user = db.get(User, self.user_id)
        try:
            message = self.generate_message()
        except Exception:
            logger.warning("whatsapp_message_generation_failed", event_type=self.event_type)
            message = FALLBACK_MESSAGE

        db.add(
            NotificationLog(
                user_id=user.id if user else None,
                event_type=self.event_type,
                phone=user.phone if user else None,
                message=message,
                status="failed",
                error_message=str(exc),
                retry_count=ctx.current_attempt_number() - 1,
            )
        )
        db.commit()
        logger.error(
            "whatsapp_delivery_abandoned",
            user_id=str(self.user_id),
            event_type=self.event_type,
            attempts=ctx.attempt,
            error=str(exc),
        )
