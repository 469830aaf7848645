"""API routers."""

from exchange_service.routers import (
    admin,
    health,
    messages,
    notifications,
    offers,
    payments,
    requests,
)

__all__ = ["admin", "health", "messages", "notifications", "offers", "payments", "requests"]
