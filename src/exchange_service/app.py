"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from exchange_service.config import get_settings
from exchange_service.core.exceptions import register_exception_handlers
from exchange_service.core.lifespan import lifespan
from exchange_service.core.middleware import RequestValidationMiddleware
from exchange_service.routers import (
    admin,
    health,
    messages,
    notifications,
    offers,
    payments,
    requests,
)


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI instance with all routers registered.
    """
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Operations"])
    app.include_router(requests.router, tags=["Requests"])
    app.include_router(offers.router, tags=["Offers"])
    app.include_router(payments.router, tags=["Payments"])
    app.include_router(messages.router, tags=["Conversations"])
    app.include_router(notifications.router, tags=["Notifications"])
    app.include_router(admin.router, tags=["Admin"])

    app.add_middleware(
        RequestValidationMiddleware,
        max_body_size=settings.request.max_body_size,
    )

    return app
