"""Private request conversations, unlocked once the request is assigned."""

from __future__ import annotations

import math
import uuid
from typing import TYPE_CHECKING, Any

from exchange_service.core.exceptions import (
    ConversationLockedError,
    ForbiddenActorError,
    NotFoundError,
    ValidationError,
)
from exchange_service.logging import get_logger
from exchange_service.services.clock import now_iso
from exchange_service.services.notification_dispatcher import WorkflowEvent, publish_safely
from exchange_service.services.states import ASSIGNED_STATUSES

if TYPE_CHECKING:
    from exchange_service.config import LimitsConfig, PaginationConfig
    from exchange_service.services.identity_context import CurrentUser
    from exchange_service.services.notification_dispatcher import NotificationDispatcher
    from exchange_service.services.request_lifecycle import RequestLifecycle
    from exchange_service.services.workflow_store import WorkflowStore

MESSAGE_TYPES = frozenset({"text", "image", "file", "offer_response"})

_SEED_FROM_EXPERT = (
    "Hello! Your payment has been approved. "
    "We can start the project, how would you like to proceed?"
)
_SEED_FROM_OWNER = "Hello! The payment has been approved. Let's get the project started."


def is_unlocked(request: dict[str, Any]) -> bool:
    """A conversation opens once an expert is assigned and never closes again."""
    return request["status"] in ASSIGNED_STATUSES and request["expert_id"] is not None


class ConversationGate:
    """
    Message log keyed by request id.

    Holds no state beyond the messages themselves: whether a conversation is
    open, and who may talk in it, is read from the request every time.
    """

    def __init__(
        self,
        store: WorkflowStore,
        requests: RequestLifecycle,
        dispatcher: NotificationDispatcher,
        limits: LimitsConfig,
        pagination: PaginationConfig,
    ) -> None:
        self._store = store
        self._requests = requests
        self._dispatcher = dispatcher
        self._limits = limits
        self._pagination = pagination
        self._logger = get_logger(__name__)

    def set_dispatcher(self, dispatcher: NotificationDispatcher) -> None:
        """Replace the notification sink."""
        self._dispatcher = dispatcher

    def _notify(self, event: WorkflowEvent) -> None:
        publish_safely(self._dispatcher, event, self._logger)

    @staticmethod
    def _participants(request: dict[str, Any]) -> tuple[str, str | None]:
        return request["owner_id"], request["expert_id"]

    def _other_participant(self, request: dict[str, Any], user_id: str) -> str | None:
        owner_id, expert_id = self._participants(request)
        return expert_id if user_id == owner_id else owner_id

    def _require_participant(self, request: dict[str, Any], actor: CurrentUser) -> None:
        if actor.id not in self._participants(request):
            raise ForbiddenActorError("You are not a participant in this conversation")

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def can_send(self, request_id: str, sender_id: str) -> bool:
        """True once the request is assigned and the sender is one of its two parties."""
        request = self._store.get_request(request_id)
        if request is None:
            return False
        return is_unlocked(request) and sender_id in self._participants(request)

    def send(
        self,
        request_id: str,
        sender: CurrentUser,
        content: object,
        message_type: object = "text",
        related_offer_id: object = None,
    ) -> dict[str, Any]:
        """
        Post a message to the other participant.

        Raises:
            NotFoundError: REQUEST_NOT_FOUND
            ForbiddenActorError: sender is neither owner nor assigned expert
            ConversationLockedError: request not yet assigned
            ValidationError: empty or oversized content, unknown type
        """
        request = self._requests.get(request_id)
        if sender.id not in self._participants(request):
            # A bidder on a request that is still open is told to wait, not refused
            if not is_unlocked(request) and self._store.find_offer(request_id, sender.id):
                raise ConversationLockedError
            raise ForbiddenActorError("You are not a participant in this conversation")
        if not is_unlocked(request):
            raise ConversationLockedError

        if not isinstance(content, str) or len(content.strip()) == 0:
            raise ValidationError("Message content must be a non-empty string")
        if len(content) > self._limits.max_message_length:
            raise ValidationError(
                f"Message content must not exceed {self._limits.max_message_length} characters"
            )
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(
                f"Message type must be one of: {', '.join(sorted(MESSAGE_TYPES))}"
            )
        if related_offer_id is not None:
            if not isinstance(related_offer_id, str):
                raise ValidationError("related_offer_id must be a string")
            offer = self._store.get_offer(related_offer_id)
            if offer is None or offer["request_id"] != request_id:
                raise ValidationError("related_offer_id does not belong to this request")

        receiver_id = self._other_participant(request, sender.id)
        message = self._write(
            request_id,
            sender.id,
            str(receiver_id),
            content.strip(),
            str(message_type),
            related_offer_id,
        )
        self._notify(
            WorkflowEvent(kind="new_message", conversation_id=request_id, payload=message)
        )
        self._notify(
            WorkflowEvent(kind="new_message", user_id=message["receiver_id"], payload=message)
        )
        return message

    def seed(self, request: dict[str, Any], offer: dict[str, Any]) -> list[dict[str, Any]]:
        """Write the two opening messages of a freshly assigned request."""
        owner_id = request["owner_id"]
        expert_id = offer["expert_id"]
        seeded = [
            self._write(
                request["request_id"], expert_id, owner_id, _SEED_FROM_EXPERT, "text",
                offer["offer_id"],
            ),
            self._write(
                request["request_id"], owner_id, expert_id, _SEED_FROM_OWNER, "text",
                offer["offer_id"],
            ),
        ]
        self._logger.info(
            "Conversation opened",
            extra={"conversation_id": request["request_id"], "expert_id": expert_id},
        )
        return seeded

    def _write(
        self,
        conversation_id: str,
        sender_id: str,
        receiver_id: str,
        content: str,
        message_type: str,
        related_offer_id: str | None,
    ) -> dict[str, Any]:
        message = {
            "message_id": f"msg-{uuid.uuid4()}",
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
            "message_type": message_type,
            "related_offer_id": related_offer_id,
            "is_read": False,
            "read_at": None,
            "created_at": now_iso(),
        }
        self._store.insert_message(message)
        return message

    # ------------------------------------------------------------------
    # Read receipts
    # ------------------------------------------------------------------

    def mark_read(self, message_id: str, actor: CurrentUser) -> dict[str, Any]:
        """
        Mark a message read. Marking an already-read message is a no-op.

        Raises:
            NotFoundError: MESSAGE_NOT_FOUND
            ForbiddenActorError: caller is not the receiver
        """
        message = self._store.get_message(message_id)
        if message is None:
            raise NotFoundError("message", message_id)
        if message["receiver_id"] != actor.id:
            raise ForbiddenActorError("Only the receiver can mark this message as read")

        read_at = now_iso()
        if self._store.mark_message_read(message_id, read_at) > 0:
            receipt = {
                "conversation_id": message["conversation_id"],
                "message_id": message_id,
                "reader_id": actor.id,
                "read_at": read_at,
            }
            self._notify(
                WorkflowEvent(
                    kind="message_read",
                    conversation_id=message["conversation_id"],
                    payload=receipt,
                )
            )
            # Streams opened before assignment only carry the user channel
            self._notify(
                WorkflowEvent(kind="message_read", user_id=message["sender_id"], payload=receipt)
            )
            message = {**message, "is_read": True, "read_at": read_at}
        return message

    def mark_all_read(self, request_id: str, actor: CurrentUser) -> int:
        """Mark every message addressed to the caller in a conversation. Returns the count."""
        request = self._requests.get(request_id)
        self._require_participant(request, actor)
        read_at = now_iso()
        changed = self._store.mark_conversation_read(request_id, actor.id, read_at)
        if changed > 0:
            receipt = {
                "conversation_id": request_id,
                "reader_id": actor.id,
                "count": changed,
                "read_at": read_at,
            }
            self._notify(
                WorkflowEvent(
                    kind="conversation_read",
                    conversation_id=request_id,
                    payload=receipt,
                )
            )
            other_id = self._other_participant(request, actor.id)
            if other_id is not None:
                self._notify(
                    WorkflowEvent(kind="conversation_read", user_id=other_id, payload=receipt)
                )
        return changed

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_messages(
        self,
        request_id: str,
        actor: CurrentUser,
        page: int = 1,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """One page of a conversation, oldest first within the page, newest page first."""
        if limit is None:
            limit = self._pagination.default_limit
        if page < 1:
            raise ValidationError("page must be at least 1")
        if not 1 <= limit <= self._pagination.max_limit:
            raise ValidationError(f"limit must be between 1 and {self._pagination.max_limit}")

        request = self._requests.get(request_id)
        self._require_participant(request, actor)

        total = self._store.count_messages(request_id)
        newest_first = self._store.list_messages(
            request_id, limit=limit, offset=(page - 1) * limit
        )
        return {
            "conversation_id": request_id,
            "messages": list(reversed(newest_first)),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
            },
        }

    def list_conversations(self, actor: CurrentUser) -> list[dict[str, Any]]:
        """Every unlocked conversation the caller takes part in."""
        conversations: list[dict[str, Any]] = []
        for request in self._store.list_requests_for_participant(actor.id, ASSIGNED_STATUSES):
            conversation_id = request["request_id"]
            conversations.append(
                {
                    "conversation_id": conversation_id,
                    "title": request["title"],
                    "status": request["status"],
                    "other_participant_id": self._other_participant(request, actor.id),
                    "last_message": self._store.get_last_message(conversation_id),
                    "unread_count": self._store.count_unread(conversation_id, actor.id),
                }
            )
        return conversations
