"""Conversation endpoints, gated on request assignment."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request

from exchange_service.core.state import get_app_state
from exchange_service.routers.validation import current_user, parse_int_param, parse_json_body
from exchange_service.schemas import MessageResponse

if TYPE_CHECKING:
    from exchange_service.services.conversation_gate import ConversationGate

router = APIRouter()


def _conversations() -> ConversationGate:
    state = get_app_state()
    if state.conversations is None:
        msg = "ConversationGate not initialized"
        raise RuntimeError(msg)
    return state.conversations


@router.get("/conversations")
async def list_conversations(request: Request) -> dict[str, Any]:
    """Unlocked conversations the caller takes part in."""
    actor = current_user(request)
    return {"conversations": _conversations().list_conversations(actor)}


@router.get("/conversations/{request_id}/messages")
async def list_messages(request_id: str, request: Request) -> dict[str, Any]:
    """One page of a conversation."""
    actor = current_user(request)
    page = parse_int_param(request, "page", minimum=1)
    limit = parse_int_param(request, "limit", minimum=1)
    result = _conversations().list_messages(request_id, actor, page or 1, limit)
    result["messages"] = [MessageResponse(**row) for row in result["messages"]]
    return result


@router.post("/conversations/{request_id}/messages", status_code=201)
async def send_message(request_id: str, request: Request) -> MessageResponse:
    """Post a message to the other participant."""
    actor = current_user(request)
    data = parse_json_body(await request.body())
    message = _conversations().send(
        request_id,
        actor,
        data.get("content"),
        data.get("message_type", "text"),
        data.get("related_offer_id"),
    )
    return MessageResponse(**message)


@router.post("/conversations/{request_id}/read")
async def mark_conversation_read(request_id: str, request: Request) -> dict[str, Any]:
    """Mark every message addressed to the caller as read."""
    actor = current_user(request)
    marked = _conversations().mark_all_read(request_id, actor)
    return {"conversation_id": request_id, "marked_read": marked}


@router.post("/messages/{message_id}/read")
async def mark_message_read(message_id: str, request: Request) -> MessageResponse:
    """Mark one message as read."""
    actor = current_user(request)
    return MessageResponse(**_conversations().mark_read(message_id, actor))
