"""
Domain events and the in-process event bus.

Events are a closed set of frozen dataclasses. Each carries its own payload
and its event type, so routing never has to guess from a class name.
"""
import enum
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union

import structlog


logger = structlog.get_logger(__name__)


class EventType(str, enum.Enum):
    REQUEST_CREATED = "request_created"
    APPROVAL_NEEDED = "approval_needed"
    REORDER_ALERT = "reorder_alert"


@dataclass(frozen=True)
class RequestLine:
    item_name: str
    quantity: int
    unit: str

    def to_dict(self) -> Dict[str, Any]:
        return {"item_name": self.item_name, "quantity": self.quantity, "unit": self.unit}


@dataclass(frozen=True)
class RequestCreated:
    request_id: uuid.UUID
    request_no: str
    requester_id: uuid.UUID
    requester_name: str
    department: Optional[str]
    request_date: str
    items: Tuple[RequestLine, ...] = field(default_factory=tuple)
    request_kind: str = "item"  # item|office

    event_type = EventType.REQUEST_CREATED

    def payload(self) -> Dict[str, Any]:
        return {
            "request_id": str(self.request_id),
            "request_no": self.request_no,
            "request_kind": self.request_kind,
            "user_name": self.requester_name,
            "department": self.department,
            "request_date": self.request_date,
            "items": [line.to_dict() for line in self.items],
        }


@dataclass(frozen=True)
class ApprovalNeeded:
    request_id: uuid.UUID
    request_no: str
    requester_id: uuid.UUID
    requester_name: str
    department: Optional[str]
    level: int
    role: str
    items: Tuple[RequestLine, ...] = field(default_factory=tuple)

    event_type = EventType.APPROVAL_NEEDED

    def payload(self) -> Dict[str, Any]:
        return {
            "request_id": str(self.request_id),
            "request_no": self.request_no,
            "user_name": self.requester_name,
            "department": self.department,
            "level": self.level,
            "role": self.role,
            "items": [line.to_dict() for line in self.items],
        }


@dataclass(frozen=True)
class ReorderPointAlert:
    entity_kind: str  # item|office_supply
    entity_id: uuid.UUID
    name: str
    code: Optional[str]
    current_stock: int
    min_stock: int
    unit: str

    event_type = EventType.REORDER_ALERT

    @property
    def deficit(self) -> int:
        return self.min_stock - self.current_stock

    def payload(self) -> Dict[str, Any]:
        return {
            "entity_kind": self.entity_kind,
            "item_id": str(self.entity_id),
            "item_name": self.name,
            "item_code": self.code,
            "current_stock": self.current_stock,
            "minimal_stock": self.min_stock,
            "unit": self.unit,
            "deficit": self.deficit,
        }


DomainEvent = Union[RequestCreated, ApprovalNeeded, ReorderPointAlert]
EventHandler = Callable[[DomainEvent], None]


class EventBus:
    """
    Fan-out of events to independently registered handlers.

    Every handler runs even if an earlier one raised; failures are logged and
    the first one is re-raised once all handlers have had their turn.
    Handlers must not rely on running in registration order.
    """

    def __init__(self):
        self._handlers: Dict[Type, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_cls: Type, handler: EventHandler) -> None:
        self._handlers[event_cls].append(handler)

    def handlers_for(self, event: DomainEvent) -> List[EventHandler]:
        return list(self._handlers.get(type(event), []))

    def publish(self, event: DomainEvent) -> None:
        first_error: Optional[BaseException] = None
        for handler in self.handlers_for(event):
            try:
                handler(event)
            except Exception as exc:
                logger.exception(
                    "event_handler_failed",
                    event_type=event.event_type.value,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error


def publish_committed(bus: EventBus, events: List[DomainEvent]) -> None:
    """
    Publish the events of an already committed transaction.

    The transaction cannot be undone at this point, so handler failures are
    logged instead of propagating to the caller.
    """
    for event in events:
        try:
            bus.publish(event)
        except Exception:
            logger.warning("post_commit_publish_failed", event_type=event.event_type.value)
