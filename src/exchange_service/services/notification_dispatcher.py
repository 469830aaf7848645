"""
Best-effort push notifications for workflow events.

Delivery is at-most-once: an event is handed to the subscribers connected
at publish time and dropped otherwise. Clients recover missed state by
re-reading the owning resource.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from threading import Lock
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable
    from logging import Logger

EVENT_KINDS = frozenset(
    {
        "offer_admin_approved",
        "offer_admin_rejected",
        "payment_approved",
        "payment_rejected",
        "new_message",
        "message_read",
        "conversation_read",
    }
)


def user_channel(user_id: str) -> str:
    """Channel name for events addressed to one user."""
    return f"user:{user_id}"


def conversation_channel(conversation_id: str) -> str:
    """Channel name for events broadcast to a conversation's participants."""
    return f"conversation:{conversation_id}"


@dataclass(frozen=True)
class WorkflowEvent:
    """A notification addressed to one user or one conversation."""

    kind: str
    payload: dict[str, Any]
    user_id: str | None = None
    conversation_id: str | None = None

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            msg = f"Unknown event kind: {self.kind}"
            raise ValueError(msg)
        if (self.user_id is None) == (self.conversation_id is None):
            msg = "Event needs exactly one of user_id or conversation_id"
            raise ValueError(msg)

    @property
    def channel(self) -> str:
        if self.user_id is not None:
            return user_channel(self.user_id)
        return conversation_channel(str(self.conversation_id))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "payload": self.payload,
        }


class NotificationDispatcher(ABC):
    """Fire-and-forget event sink."""

    @abstractmethod
    def publish(self, event: WorkflowEvent) -> None:
        """Deliver the event to whoever is listening right now. Never blocks."""


class NullNotificationDispatcher(NotificationDispatcher):
    """Dispatcher that discards every event."""

    def publish(self, event: WorkflowEvent) -> None:
        """Drop the event."""
        _ = event


@dataclass(eq=False)
class Subscription:
    """One connected client's bounded inbox."""

    channels: frozenset[str]
    queue: asyncio.Queue[WorkflowEvent]
    loop: asyncio.AbstractEventLoop
    dropped: int = field(default=0)

    def offer(self, event: WorkflowEvent) -> None:
        """Enqueue without blocking, from any thread. Drops the event when full."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self.loop:
            self._put(event)
            return
        try:
            self.loop.call_soon_threadsafe(self._put, event)
        except RuntimeError:
            # Subscriber's loop is closed
            self.dropped += 1

    def _put(self, event: WorkflowEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    async def next_event(self, timeout: float) -> WorkflowEvent | None:
        """Wait up to ``timeout`` seconds for the next event."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except TimeoutError:
            return None


class ChannelNotificationDispatcher(NotificationDispatcher):
    """In-process publish/subscribe keyed by user and conversation channels."""

    def __init__(self, queue_size: int) -> None:
        self._queue_size = queue_size
        self._channels: dict[str, set[Subscription]] = {}
        self._lock = Lock()

    def subscribe(self, channels: Iterable[str]) -> Subscription:
        """Open an inbox on the given channels. Must be called from a running event loop."""
        subscription = Subscription(
            channels=frozenset(channels),
            queue=asyncio.Queue(maxsize=self._queue_size),
            loop=asyncio.get_running_loop(),
        )
        with self._lock:
            for channel in subscription.channels:
                self._channels.setdefault(channel, set()).add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Close an inbox. Safe to call more than once."""
        with self._lock:
            for channel in subscription.channels:
                subscribers = self._channels.get(channel)
                if subscribers is None:
                    continue
                subscribers.discard(subscription)
                if not subscribers:
                    del self._channels[channel]

    def publish(self, event: WorkflowEvent) -> None:
        """Hand the event to current subscribers of its channel."""
        with self._lock:
            subscribers = list(self._channels.get(event.channel, ()))
        for subscription in subscribers:
            subscription.offer(event)

    def subscriber_count(self) -> int:
        """Number of distinct open inboxes."""
        with self._lock:
            unique = {id(sub) for subs in self._channels.values() for sub in subs}
        return len(unique)


def publish_safely(
    dispatcher: NotificationDispatcher,
    event: WorkflowEvent,
    logger: Logger,
) -> None:
    """Publish and swallow any failure. Notifications never affect the workflow."""
    try:
        dispatcher.publish(event)
    except Exception:
        logger.warning(
            "Notification dispatch failed",
            exc_info=True,
            extra={"event_kind": event.kind, "channel": event.channel},
        )
