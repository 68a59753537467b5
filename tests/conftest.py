import os
from datetime import date, datetime, timedelta

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("FONNTE_API_TOKEN", "test-token")

import pytest
from sqlalchemy.orm import sessionmaker

from simaset.config import settings
from simaset.db import Base, build_engine
from simaset.errors import DeliveryFailed
from simaset.models.models import (
    Department,
    Item,
    NotificationSetting,
    OfficeSupply,
    Role,
    User,
)
from simaset.services import delivery  # noqa: F401  registers the WhatsApp job
from simaset.services.events import ApprovalNeeded, EventBus, ReorderPointAlert, RequestCreated


class FakeGateway:
    """Records sent messages; raises DeliveryFailed for the first ``failures`` calls."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = []
        self.sent = []

    def send(self, phone, message):
        self.calls.append((phone, message))
        if self.failures > 0:
            self.failures -= 1
            raise DeliveryFailed("Fonnte API error: device disconnected")
        self.sent.append((phone, message))
        return {"status": True, "id": [len(self.sent)], "target": [phone]}


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class StaticAuthorization:
    """AuthorizationContext with fixed answers."""

    def __init__(self, user_id=None, levels=(), permissions=()):
        self.user_id = user_id
        self.levels = set(levels)
        self.permissions = set(permissions)

    def has_approval_role_for_level(self, level):
        return level in self.levels

    def can(self, permission):
        return permission in self.permissions


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorded_events(bus):
    events = []
    for event_cls in (RequestCreated, ApprovalNeeded, ReorderPointAlert):
        bus.subscribe(event_cls, events.append)
    return events


@pytest.fixture
def clock():
    # 10:00 in Asia/Makassar
    return Clock(datetime(2026, 3, 5, 2, 0, 0))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def department(db):
    dept = Department(name="Kepaniteraan", code="KPN")
    db.add(dept)
    db.commit()
    return dept


@pytest.fixture
def make_role(db):
    def _make(name, **permissions):
        role = db.query(Role).filter(Role.name == name).first()
        if role is None:
            role = Role(name=name, permissions=permissions)
            db.add(role)
            db.commit()
        return role

    return _make


@pytest.fixture
def make_user(db, make_role):
    counter = {"n": 0}

    def _make(name="Pegawai", roles=(), phone="081234567890", department=None, setting=True, **setting_values):
        counter["n"] += 1
        user = User(
            username=f"user{counter['n']}",
            name=name,
            email=f"user{counter['n']}@pa-ppu.go.id",
            phone=phone,
            department_id=department.id if department else None,
        )
        user.roles = [make_role(role) if isinstance(role, str) else role for role in roles]
        db.add(user)
        db.flush()
        if setting:
            values = {
                "whatsapp_enabled": True,
                "notify_reorder_alert": True,
                "notify_approval_needed": True,
                "notify_request_update": True,
            }
            values.update(setting_values)
            db.add(NotificationSetting(user_id=user.id, **values))
        db.commit()
        return user

    return _make


@pytest.fixture
def make_item(db):
    counter = {"n": 0}

    def _make(name="Kertas HVS A4", stock=50, min_stock=10, unit="rim"):
        counter["n"] += 1
        item = Item(code=f"ATK-{counter['n']:03d}", name=name, stock=stock, min_stock=min_stock, unit=unit)
        db.add(item)
        db.commit()
        return item

    return _make


@pytest.fixture
def make_supply(db):
    def _make(name="Kopi Sachet", stock=40, min_stock=5, unit="sachet"):
        supply = OfficeSupply(name=name, stock=stock, min_stock=min_stock, unit=unit)
        db.add(supply)
        db.commit()
        return supply

    return _make


@pytest.fixture
def approvers(make_role, make_user):
    make_role("approver_l1", approve_request_l1=True)
    make_role("approver_l2", approve_request_l2=True)
    make_role("approver_l3", approve_request_l3=True)
    return {
        1: make_user(name="Operator Persediaan", roles=["approver_l1"]),
        2: make_user(name="Kasubag Umum", roles=["approver_l2"]),
        3: make_user(name="KPA", roles=["approver_l3"]),
    }


@pytest.fixture
def operator(make_role, make_user):
    make_role(
        settings.operator_role,
        manage_atk_requests=True,
        manage_office_supplies=True,
        approve_office_request=True,
        manage_items=True,
    )
    return make_user(name="Operator Gudang", roles=[settings.operator_role], phone="081311112222")


@pytest.fixture
def today():
    return date(2026, 3, 5)
