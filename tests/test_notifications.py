from datetime import datetime, time

import pytest

from simaset.models.models import NotificationSetting
from simaset.services.notifications import (
    DEFAULT_NOTIFICATION_SETTINGS,
    get_or_create_setting,
    get_setting,
    is_category_enabled,
    is_quiet_hours,
    update_setting,
)


@pytest.mark.parametrize(
    "now, expected",
    [
        ("12:59", False),
        ("13:00", True),
        ("14:30", True),
        ("15:00", True),
        ("15:01", False),
    ],
)
def test_quiet_hours_same_day_window_is_inclusive(now, expected):
    assert is_quiet_hours("13:00", "15:00", now=now) is expected


@pytest.mark.parametrize(
    "now, expected",
    [
        ("21:59", False),
        ("22:00", True),
        ("23:30", True),
        ("00:00", True),
        ("06:00", True),
        ("06:01", False),
        ("12:00", False),
    ],
)
def test_quiet_hours_window_wraps_midnight(now, expected):
    assert is_quiet_hours("22:00", "06:00", now=now) is expected


def test_quiet_hours_without_bounds_is_never_quiet():
    assert is_quiet_hours(None, "06:00", now="03:00") is False
    assert is_quiet_hours("22:00", None, now="23:00") is False
    assert is_quiet_hours(None, None) is False


def test_quiet_hours_accepts_datetime_and_time():
    assert is_quiet_hours("22:00", "06:00", now=datetime(2026, 3, 5, 23, 15, 42))
    assert not is_quiet_hours(time(22, 0), time(6, 0), now=time(7, 0))


def test_category_flags():
    setting = NotificationSetting(
        whatsapp_enabled=True,
        notify_reorder_alert=True,
        notify_approval_needed=False,
        notify_request_update=True,
    )
    assert is_category_enabled(setting, "reorder_alert")
    assert not is_category_enabled(setting, "approval_needed")
    assert is_category_enabled(setting, "request_created")
    assert not is_category_enabled(setting, "request_archived")


def test_get_or_create_setting_applies_defaults_once(db, make_user):
    user = make_user(setting=False)
    assert get_setting(db, user.id) is None

    setting = get_or_create_setting(db, user)
    for key, value in DEFAULT_NOTIFICATION_SETTINGS.items():
        assert getattr(setting, key) == value

    again = get_or_create_setting(db, user)
    assert again.id == setting.id
    assert db.query(NotificationSetting).filter(NotificationSetting.user_id == user.id).count() == 1


def test_update_setting_normalises_quiet_hours(db, make_user):
    user = make_user(setting=False)
    setting = update_setting(
        db,
        user,
        {"quiet_hours_start": "22:00:00", "quiet_hours_end": "06:30", "notify_request_update": True},
    )
    assert setting.quiet_hours_start == "22:00"
    assert setting.quiet_hours_end == "06:30"
    assert setting.notify_request_update is True

    cleared = update_setting(db, user, {"quiet_hours_start": None, "quiet_hours_end": None})
    assert cleared.quiet_hours_start is None
    assert cleared.quiet_hours_end is None


@pytest.mark.parametrize("now, expected", [("09:00", True), ("20:00", False)])
def test_quiet_hours_office_day_window(now, expected):
    assert is_quiet_hours("08:00", "17:00", now=now) is expected
