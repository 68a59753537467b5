import re
import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Table,
    Integer,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column, validates

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def utcnow() -> datetime:
    # Naive UTC; SQLite drops tzinfo and mixed comparisons break
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Strip whitespace and rewrite a leading 0/62 to +62."""
    if value is None:
        return None
    phone = re.sub(r"\s+", "", value)
    if not phone:
        return None
    return re.sub(r"^(0|62)", "+62", phone)


# Association table for many-to-many User<->Role
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", UUID(as_uuid=True), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    permissions: Mapped[Optional[dict]] = mapped_column(JSON, default=dict)  # {approve_request_l1: true, ...}

    users = relationship("User", secondary=user_roles, back_populates="roles")


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[Optional[str]] = mapped_column(String(50), unique=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50))  # +62 format, WhatsApp target
    department_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("departments.id", ondelete="SET NULL"), index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    permissions_override: Mapped[Optional[dict]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    roles = relationship("Role", secondary=user_roles, back_populates="users")
    department = relationship("Department")
    notification_setting = relationship(
        "NotificationSetting", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )

    @validates("phone")
    def _normalize_phone(self, key, value):
        return normalize_phone(value)


# =====================
# Stock entities
# =====================


class Item(Base):
    """ATK item tracked by the warehouse"""
    __tablename__ = "items"

    id: Mapped[uuid.UUID] = uuid_pk()
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(50), default="pcs")
    category: Mapped[Optional[str]] = mapped_column(String(100))
    stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False, active_history=True)
    min_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # Reorder threshold
    max_stock: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class OfficeSupply(Base):
    """Office supply (pantry/consumables) tracked separately from ATK items"""
    __tablename__ = "office_supplies"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(50), default="pcs")
    category: Mapped[Optional[str]] = mapped_column(String(100))
    description: Mapped[Optional[str]] = mapped_column(Text)
    stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False, active_history=True)
    min_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def code(self) -> Optional[str]:
        return None


class StockMutation(Base):
    """Append-only stock ledger for items and office supplies"""
    __tablename__ = "stock_mutations"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)  # item|office_supply
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # in|out|adjust
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    stock_before: Mapped[int] = mapped_column(Integer, nullable=False)
    stock_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_type: Mapped[Optional[str]] = mapped_column(String(50))  # item_request|office_request|manual
    reference_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    note: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_stock_mutations_entity", "entity_type", "entity_id"),
    )


# =====================
# Requests
# =====================


class ItemRequest(Base):
    """ATK request with up to three sequential approval levels"""
    __tablename__ = "item_requests"

    id: Mapped[uuid.UUID] = uuid_pk()
    request_no: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    department_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("departments.id", ondelete="SET NULL"), index=True
    )
    request_date: Mapped[date] = mapped_column(Date, nullable=False)
    # draft|pending_level_1|pending_level_2|pending_level_3|approved|rejected|completed
    status: Mapped[str] = mapped_column(String(30), default="draft", index=True)
    required_levels: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    level1_approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    level1_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    level2_approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    level2_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    level3_approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    level3_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)

    completed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    lines = relationship(
        "ItemRequestLine",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="ItemRequestLine.position",
    )
    user = relationship("User", foreign_keys=[user_id])
    department = relationship("Department")


class ItemRequestLine(Base):
    __tablename__ = "item_request_lines"

    id: Mapped[uuid.UUID] = uuid_pk()
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("item_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("items.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    quantity_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_approved: Mapped[Optional[int]] = mapped_column(Integer)  # Initially same as requested
    quantity_fulfilled: Mapped[Optional[int]] = mapped_column(Integer)

    request = relationship("ItemRequest", back_populates="lines")
    item = relationship("Item")


class OfficeRequest(Base):
    """Office supply request with a single approval step"""
    __tablename__ = "office_requests"

    id: Mapped[uuid.UUID] = uuid_pk()
    request_no: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    department_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("departments.id", ondelete="SET NULL"), index=True
    )
    request_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="pending", index=True)  # pending|approved|rejected|completed
    notes: Mapped[Optional[str]] = mapped_column(Text)

    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    completed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    lines = relationship(
        "OfficeRequestLine",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="OfficeRequestLine.position",
    )
    user = relationship("User", foreign_keys=[user_id])
    department = relationship("Department")


class OfficeRequestLine(Base):
    __tablename__ = "office_request_lines"

    id: Mapped[uuid.UUID] = uuid_pk()
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("office_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    supply_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("office_supplies.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    quantity_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_fulfilled: Mapped[Optional[int]] = mapped_column(Integer)

    request = relationship("OfficeRequest", back_populates="lines")
    supply = relationship("OfficeSupply")


# =====================
# Notifications
# =====================


class NotificationSetting(Base):
    """Per-user WhatsApp notification preferences"""
    __tablename__ = "notification_settings"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True
    )
    whatsapp_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_reorder_alert: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_approval_needed: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_request_update: Mapped[bool] = mapped_column(Boolean, default=False)
    quiet_hours_start: Mapped[Optional[str]] = mapped_column(String(5))  # "HH:MM"
    quiet_hours_end: Mapped[Optional[str]] = mapped_column(String(5))  # "HH:MM"
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="notification_setting")


class NotificationLog(Base):
    """Append-only record of every WhatsApp delivery attempt"""
    __tablename__ = "notification_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # sent|failed
    gateway_response: Mapped[Optional[dict]] = mapped_column(JSON)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)  # zero-based attempt index
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_notification_logs_user_status", "user_id", "status"),
    )


class QueuedJob(Base):
    """Durable queue row consumed by the background worker"""
    __tablename__ = "queued_jobs"

    id: Mapped[uuid.UUID] = uuid_pk()
    queue: Mapped[str] = mapped_column(String(50), nullable=False, default="default")
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)  # pending|reserved|done|failed
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    reserved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_queued_jobs_poll", "queue", "status", "available_at"),
    )


class AuditLog(Base):
    """Append-only audit log for request workflow actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # item_request|office_request
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|SUBMIT|APPROVE|REJECT|COMPLETE
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
    )
