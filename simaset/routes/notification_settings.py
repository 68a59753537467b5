from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..models.models import User
from ..schemas.notifications import NotificationSettingOut, NotificationSettingUpdate
from ..services.notifications import get_or_create_setting, update_setting


router = APIRouter(prefix="/settings/notifications", tags=["notification-settings"])


@router.get("", response_model=NotificationSettingOut)
def get_notification_settings(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return get_or_create_setting(db, user)


@router.put("", response_model=NotificationSettingOut)
def update_notification_settings(
    payload: NotificationSettingUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return update_setting(db, user, payload.model_dump(exclude_unset=True))
