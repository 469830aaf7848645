"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from exchange_service.core.state import get_app_state
from exchange_service.schemas import HealthResponse
from exchange_service.services.notification_dispatcher import ChannelNotificationDispatcher

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return per-collection statistics."""
    state = get_app_state()
    requests_by_status: dict[str, int] = {}
    offers_by_status: dict[str, int] = {}
    payments_by_status: dict[str, int] = {}
    total_messages = 0
    if state.store is not None:
        requests_by_status = state.store.count_requests_by_status()
        offers_by_status = state.store.count_offers_by_status()
        payments_by_status = state.store.count_payments_by_status()
        total_messages = state.store.count_messages()
    subscribers = 0
    if isinstance(state.dispatcher, ChannelNotificationDispatcher):
        subscribers = state.dispatcher.subscriber_count()
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        requests_by_status=requests_by_status,
        offers_by_status=offers_by_status,
        payments_by_status=payments_by_status,
        total_messages=total_messages,
        notification_subscribers=subscribers,
    )
