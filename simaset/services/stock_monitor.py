"""
Reorder-point monitoring for items and office supplies.

Installed as session listeners: stock changes are collected on flush and the
resulting alerts are published only after the transaction commits.
"""
from typing import Dict, Optional, Type

import structlog
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..models.models import Item, OfficeSupply
from .events import EventBus, ReorderPointAlert, publish_committed


logger = structlog.get_logger(__name__)

TRACKED_ENTITIES = {
    Item: "item",
    OfficeSupply: "office_supply",
}

ALERT_MODES = ("on_change", "crossing")

_PENDING_KEY = "pending_reorder_alerts"


def is_below_reorder_point(entity) -> bool:
    return entity.stock <= entity.min_stock


def low_stock_query(db: Session, model: Type):
    return db.query(model).filter(model.stock <= model.min_stock).order_by(model.name)


def build_alert(entity) -> ReorderPointAlert:
    return ReorderPointAlert(
        entity_kind=TRACKED_ENTITIES[type(entity)],
        entity_id=entity.id,
        name=entity.name,
        code=entity.code,
        current_stock=entity.stock,
        min_stock=entity.min_stock,
        unit=entity.unit or "pcs",
    )


def _stock_change(entity) -> Optional[tuple]:
    """(previous, current) when ``stock`` changed in this flush, else None."""
    history = inspect(entity).attrs.stock.history
    if not history.added:
        return None
    previous = history.deleted[0] if history.deleted else None
    current = history.added[0]
    if previous == current:
        return None
    return previous, current


def should_alert(entity, previous: Optional[int], mode: str) -> bool:
    if not is_below_reorder_point(entity):
        return False
    if mode == "crossing":
        return previous is None or previous > entity.min_stock
    return True


class StockMonitor:
    def __init__(self, bus: EventBus, mode: Optional[str] = None):
        mode = mode or settings.reorder_alert_mode
        if mode not in ALERT_MODES:
            raise ValueError(f"Unknown reorder alert mode: {mode}")
        self.bus = bus
        self.mode = mode

    def after_flush(self, session: Session, flush_context) -> None:
        # One alert per entity per transaction, carrying the latest stock
        pending: Dict[tuple, ReorderPointAlert] = session.info.setdefault(_PENDING_KEY, {})
        for entity in session.dirty:
            if type(entity) not in TRACKED_ENTITIES:
                continue
            change = _stock_change(entity)
            if change is None:
                continue
            previous, _ = change
            key = (TRACKED_ENTITIES[type(entity)], entity.id)
            if should_alert(entity, previous, self.mode) or key in pending:
                pending[key] = build_alert(entity)

    def after_commit(self, session: Session) -> None:
        alerts = list(session.info.pop(_PENDING_KEY, {}).values())
        alerts = [alert for alert in alerts if alert.current_stock <= alert.min_stock]
        for alert in alerts:
            logger.info(
                "reorder_point_reached",
                entity_kind=alert.entity_kind,
                entity_id=str(alert.entity_id),
                stock=alert.current_stock,
                min_stock=alert.min_stock,
            )
        publish_committed(self.bus, alerts)

    def after_rollback(self, session: Session) -> None:
        session.info.pop(_PENDING_KEY, None)


def install_stock_monitor(session_factory: sessionmaker, bus: EventBus, mode: Optional[str] = None) -> StockMonitor:
    monitor = StockMonitor(bus, mode)
    event.listen(session_factory, "after_flush", monitor.after_flush)
    event.listen(session_factory, "after_commit", monitor.after_commit)
    event.listen(session_factory, "after_rollback", monitor.after_rollback)
    return monitor


def uninstall_stock_monitor(session_factory: sessionmaker, monitor: StockMonitor) -> None:
    event.remove(session_factory, "after_flush", monitor.after_flush)
    event.remove(session_factory, "after_commit", monitor.after_commit)
    event.remove(session_factory, "after_rollback", monitor.after_rollback)
