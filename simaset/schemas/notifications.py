import re
from typing import Optional

from pydantic import BaseModel, field_validator


_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?$")


class NotificationSettingUpdate(BaseModel):
    whatsapp_enabled: Optional[bool] = None
    notify_reorder_alert: Optional[bool] = None
    notify_approval_needed: Optional[bool] = None
    notify_request_update: Optional[bool] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def _valid_time(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not _TIME_RE.match(v):
            raise ValueError("time must be HH:MM")
        return v[:5]


class NotificationSettingOut(BaseModel):
    whatsapp_enabled: bool
    notify_reorder_alert: bool
    notify_approval_needed: bool
    notify_request_update: bool
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None

    class Config:
        from_attributes = True
