"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from exchange_service.config import get_settings
from exchange_service.core.state import init_app_state
from exchange_service.logging import get_logger, setup_logging
from exchange_service.services.conversation_gate import ConversationGate
from exchange_service.services.identity_context import IdentityContext
from exchange_service.services.notification_dispatcher import ChannelNotificationDispatcher
from exchange_service.services.offer_arbitrator import OfferArbitrator
from exchange_service.services.payment_gate import PaymentGate
from exchange_service.services.request_lifecycle import RequestLifecycle
from exchange_service.services.workflow_store import WorkflowStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    store = WorkflowStore(db_path=settings.database.path)
    state.store = store
    state.identity = IdentityContext(
        jwt_secret=settings.auth.jwt_secret,
        issuer=settings.auth.issuer,
    )

    dispatcher = ChannelNotificationDispatcher(queue_size=settings.notifications.queue_size)
    state.dispatcher = dispatcher

    # Components, in dependency order
    requests = RequestLifecycle(store=store, limits=settings.limits)
    offers = OfferArbitrator(
        store=store,
        requests=requests,
        dispatcher=dispatcher,
        limits=settings.limits,
    )
    conversations = ConversationGate(
        store=store,
        requests=requests,
        dispatcher=dispatcher,
        limits=settings.limits,
        pagination=settings.pagination,
    )
    payments = PaymentGate(
        store=store,
        requests=requests,
        offers=offers,
        conversations=conversations,
        dispatcher=dispatcher,
    )
    state.requests = requests
    state.offers = offers
    state.conversations = conversations
    state.payments = payments

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    store.close()
