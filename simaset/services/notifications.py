"""
Notification preference service for WhatsApp delivery.
Respects user category switches and quiet hours.
"""
from datetime import datetime, time
from typing import Optional, Union

import pytz
import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import NotificationSetting, User
from .events import EventType


logger = structlog.get_logger(__name__)


# Applied when a delivery finds no preference record for the recipient
DEFAULT_NOTIFICATION_SETTINGS = {
    "whatsapp_enabled": True,
    "notify_reorder_alert": True,
    "notify_approval_needed": True,
    "notify_request_update": False,
}

CATEGORY_FLAGS = {
    EventType.REQUEST_CREATED.value: "notify_request_update",
    EventType.APPROVAL_NEEDED.value: "notify_approval_needed",
    EventType.REORDER_ALERT.value: "notify_reorder_alert",
}


def _parse_time(value: Union[str, time]) -> time:
    if isinstance(value, time):
        return value
    return time.fromisoformat(value)


def is_quiet_hours(
    start: Optional[Union[str, time]],
    end: Optional[Union[str, time]],
    now: Optional[Union[datetime, time, str]] = None,
    timezone_str: Optional[str] = None,
) -> bool:
    """
    Check if the wall-clock time falls within a quiet-hours window.

    Args:
        start: Window start ("HH:MM")
        end: Window end ("HH:MM"); earlier than start means the window wraps midnight
        now: Time to test; defaults to the current time in ``timezone_str``
        timezone_str: Timezone used when ``now`` is omitted

    Returns:
        True if within quiet hours (both bounds inclusive)
    """
    if not start or not end:
        return False

    start_time = _parse_time(start)
    end_time = _parse_time(end)

    if now is None:
        tz = pytz.timezone(timezone_str or settings.tz_default)
        current_time = datetime.now(tz).time()
    elif isinstance(now, datetime):
        current_time = now.time()
    else:
        current_time = _parse_time(now)
    current_time = current_time.replace(second=0, microsecond=0)

    # Handle quiet hours that span midnight
    if start_time <= end_time:
        return start_time <= current_time <= end_time
    return current_time >= start_time or current_time <= end_time


def is_category_enabled(setting: NotificationSetting, event_type: str) -> bool:
    flag = CATEGORY_FLAGS.get(event_type)
    if flag is None:
        return False
    return bool(getattr(setting, flag))


def get_setting(db: Session, user_id) -> Optional[NotificationSetting]:
    return db.query(NotificationSetting).filter(NotificationSetting.user_id == user_id).first()


def get_or_create_setting(db: Session, user: User) -> NotificationSetting:
    """
    Return the user's preference record, creating it with
    DEFAULT_NOTIFICATION_SETTINGS when absent. Safe to call repeatedly.
    """
    setting = get_setting(db, user.id)
    if setting is not None:
        return setting

    setting = NotificationSetting(user_id=user.id, **DEFAULT_NOTIFICATION_SETTINGS)
    db.add(setting)
    try:
        db.commit()
    except IntegrityError:
        # Another worker created it first
        db.rollback()
        return get_setting(db, user.id)
    db.refresh(setting)
    logger.info("notification_setting_created", user_id=str(user.id))
    return setting


def update_setting(db: Session, user: User, changes: dict) -> NotificationSetting:
    setting = get_or_create_setting(db, user)
    for key, value in changes.items():
        if key in ("quiet_hours_start", "quiet_hours_end") and value:
            value = _parse_time(value).strftime("%H:%M")
        setattr(setting, key, value)
    db.commit()
    db.refresh(setting)
    return setting
