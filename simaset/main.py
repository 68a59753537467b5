from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy import inspect
from sqlalchemy.orm import sessionmaker

from .config import settings
from .db import Base, SessionLocal
from .logging import RequestIdMiddleware, setup_logging
from .routes.item_requests import router as item_requests_router
from .routes.items import router as items_router
from .routes.notification_logs import router as notification_logs_router
from .routes.notification_settings import router as notification_settings_router
from .routes.office_requests import router as office_requests_router
from .services.events import EventBus
from .services.notification_routing import register_notification_listeners
from .services.stock_monitor import install_stock_monitor


logger = structlog.get_logger(__name__)


def build_event_bus(session_factory: sessionmaker) -> EventBus:
    """Event bus with the stock monitor and WhatsApp routing attached to ``session_factory``."""
    bus = EventBus()
    install_stock_monitor(session_factory, bus)
    register_notification_listeners(bus, session_factory)
    return bus


def create_app(session_factory: Optional[sessionmaker] = None, bus: Optional[EventBus] = None) -> FastAPI:
    setup_logging()
    session_factory = session_factory or SessionLocal
    app = FastAPI(title=settings.app_name)
    app.state.session_factory = session_factory
    app.state.event_bus = bus or build_event_bus(session_factory)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Routers
    app.include_router(item_requests_router)
    app.include_router(office_requests_router)
    app.include_router(items_router)
    app.include_router(notification_settings_router)
    app.include_router(notification_logs_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok", "environment": settings.environment}

    @app.on_event("startup")
    def _startup():
        if not settings.auto_create_db:
            return
        engine = session_factory.kw["bind"]
        existing_tables = set(inspect(engine).get_table_names())
        missing = set(Base.metadata.tables.keys()) - existing_tables
        if missing:
            logger.info("creating_tables", count=len(missing))
            Base.metadata.create_all(bind=engine)

    return app


app = create_app()
