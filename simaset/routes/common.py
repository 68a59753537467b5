from typing import Any, Dict

from fastapi import HTTPException, Request

from ..errors import WorkflowError
from ..services.events import EventBus


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus


def http_error(exc: WorkflowError) -> HTTPException:
    detail: Dict[str, Any] = {"message": exc.message, "error": type(exc).__name__}
    if exc.request_id:
        detail["request_id"] = exc.request_id
    return HTTPException(status_code=exc.status_code, detail=detail)


def iso(value) -> Any:
    return value.isoformat() if value is not None else None


def str_or_none(value) -> Any:
    return str(value) if value is not None else None
