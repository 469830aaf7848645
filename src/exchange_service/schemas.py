"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    requests_by_status: dict[str, int]
    offers_by_status: dict[str, int]
    payments_by_status: dict[str, int]
    total_messages: int
    notification_subscribers: int


class ServiceRequestResponse(BaseModel):
    """A service request."""

    model_config = ConfigDict(extra="forbid")
    request_id: str
    owner_id: str
    title: str
    description: str
    budget: float
    deadline: str
    skills: list[str]
    status: str
    approval_status: str
    expert_id: str | None
    created_at: str
    updated_at: str
    reviewed_at: str | None
    reviewed_by: str | None
    assigned_at: str | None
    completed_at: str | None
    cancelled_at: str | None


class OfferResponse(BaseModel):
    """An offer against a service request."""

    model_config = ConfigDict(extra="forbid")
    offer_id: str
    request_id: str
    expert_id: str
    message: str
    proposed_price: float
    estimated_duration: str
    status: str
    approval_status: str
    created_at: str
    updated_at: str
    reviewed_at: str | None
    reviewed_by: str | None
    responded_at: str | None


class PaymentResponse(BaseModel):
    """A payment attestation."""

    model_config = ConfigDict(extra="forbid")
    payment_id: str
    offer_id: str
    request_id: str
    payer_id: str
    amount: float
    status: str
    approver_id: str | None
    approved_at: str | None
    rejected_at: str | None
    created_at: str


class MessageResponse(BaseModel):
    """A conversation message."""

    model_config = ConfigDict(extra="forbid")
    message_id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    content: str
    message_type: str
    related_offer_id: str | None
    is_read: bool
    read_at: str | None
    created_at: str


class PaymentApprovalResponse(BaseModel):
    """Response model for POST /admin/payments/{payment_id}/approve."""

    model_config = ConfigDict(extra="forbid")
    payment: PaymentResponse
    offer: OfferResponse
    request: ServiceRequestResponse
    rejected_siblings: int
