"""Service layer components."""

from exchange_service.services.conversation_gate import ConversationGate
from exchange_service.services.identity_context import CurrentUser, IdentityContext
from exchange_service.services.notification_dispatcher import (
    ChannelNotificationDispatcher,
    NotificationDispatcher,
    NullNotificationDispatcher,
)
from exchange_service.services.offer_arbitrator import OfferArbitrator
from exchange_service.services.payment_gate import PaymentGate
from exchange_service.services.request_lifecycle import RequestLifecycle
from exchange_service.services.workflow_store import WorkflowStore

__all__ = [
    "ChannelNotificationDispatcher",
    "ConversationGate",
    "CurrentUser",
    "IdentityContext",
    "NotificationDispatcher",
    "NullNotificationDispatcher",
    "OfferArbitrator",
    "PaymentGate",
    "RequestLifecycle",
    "WorkflowStore",
]
