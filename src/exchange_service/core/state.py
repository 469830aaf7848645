"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from exchange_service.services.conversation_gate import ConversationGate
    from exchange_service.services.identity_context import IdentityContext
    from exchange_service.services.notification_dispatcher import NotificationDispatcher
    from exchange_service.services.offer_arbitrator import OfferArbitrator
    from exchange_service.services.payment_gate import PaymentGate
    from exchange_service.services.request_lifecycle import RequestLifecycle
    from exchange_service.services.workflow_store import WorkflowStore

_DISPATCHER_CONSUMERS = ("offers", "payments", "conversations")


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: WorkflowStore | None = None
    identity: IdentityContext | None = None
    dispatcher: NotificationDispatcher | None = None
    requests: RequestLifecycle | None = None
    offers: OfferArbitrator | None = None
    payments: PaymentGate | None = None
    conversations: ConversationGate | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep component dispatcher references in sync with AppState.dispatcher."""
        super().__setattr__(name, value)

        if name == "dispatcher" and value is not None:
            for consumer_name in _DISPATCHER_CONSUMERS:
                consumer = self.__dict__.get(consumer_name)
                if consumer is not None:
                    consumer.set_dispatcher(value)
        elif name in _DISPATCHER_CONSUMERS and value is not None:
            dispatcher = self.__dict__.get("dispatcher")
            if dispatcher is not None:
                value.set_dispatcher(dispatcher)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
