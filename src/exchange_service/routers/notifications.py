"""Server-Sent Events stream of workflow notifications."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from sse_starlette.sse import EventSourceResponse

from exchange_service.config import get_settings
from exchange_service.core.state import get_app_state
from exchange_service.logging import get_logger
from exchange_service.routers.validation import current_user
from exchange_service.services.notification_dispatcher import (
    ChannelNotificationDispatcher,
    conversation_channel,
    user_channel,
)
from exchange_service.services.states import ASSIGNED_STATUSES

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from exchange_service.services.notification_dispatcher import Subscription

router = APIRouter()
logger = get_logger(__name__)


async def _stream(
    request: Request,
    dispatcher: ChannelNotificationDispatcher,
    subscription: Subscription,
    keepalive_seconds: int,
) -> AsyncIterator[dict[str, Any]]:
    """Yield SSE events until the client disconnects."""
    try:
        yield {"retry": 3000}
        while not await request.is_disconnected():
            event = await subscription.next_event(timeout=keepalive_seconds)
            if event is None:
                yield {"comment": "keepalive"}
                continue
            yield {"event": event.kind, "data": json.dumps(event.to_dict())}
    finally:
        dispatcher.unsubscribe(subscription)
        logger.info(
            "Notification stream closed",
            extra={"channels": sorted(subscription.channels), "dropped": subscription.dropped},
        )


@router.get("/notifications/stream")  # nosemgrep
async def stream_notifications(request: Request) -> EventSourceResponse:
    """
    Subscribe to the caller's notifications.

    Covers the caller's user channel and every conversation that is unlocked
    at connect time. Delivery is at-most-once; reconnect and re-read state
    to catch up.
    """
    actor = current_user(request)
    state = get_app_state()
    if not isinstance(state.dispatcher, ChannelNotificationDispatcher) or state.store is None:
        msg = "Notification channel not available"
        raise RuntimeError(msg)

    conversations = state.store.list_requests_for_participant(actor.id, ASSIGNED_STATUSES)
    channels = [user_channel(actor.id)]
    channels.extend(conversation_channel(row["request_id"]) for row in conversations)
    subscription = state.dispatcher.subscribe(channels)

    return EventSourceResponse(
        _stream(
            request,
            state.dispatcher,
            subscription,
            get_settings().notifications.keepalive_seconds,
        ),
        headers={"X-Accel-Buffering": "no"},
    )
