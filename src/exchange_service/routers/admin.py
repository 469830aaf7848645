"""Administrator review queues and gate decisions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request, Response

from exchange_service.core.state import get_app_state
from exchange_service.routers.validation import current_user
from exchange_service.schemas import (
    OfferResponse,
    PaymentApprovalResponse,
    PaymentResponse,
    ServiceRequestResponse,
)

if TYPE_CHECKING:
    from exchange_service.services.offer_arbitrator import OfferArbitrator
    from exchange_service.services.payment_gate import PaymentGate
    from exchange_service.services.request_lifecycle import RequestLifecycle

router = APIRouter(prefix="/admin")


def _requests() -> RequestLifecycle:
    state = get_app_state()
    if state.requests is None:
        msg = "RequestLifecycle not initialized"
        raise RuntimeError(msg)
    return state.requests


def _offers() -> OfferArbitrator:
    state = get_app_state()
    if state.offers is None:
        msg = "OfferArbitrator not initialized"
        raise RuntimeError(msg)
    return state.offers


def _payments() -> PaymentGate:
    state = get_app_state()
    if state.payments is None:
        msg = "PaymentGate not initialized"
        raise RuntimeError(msg)
    return state.payments


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@router.get("/requests/pending")
async def list_pending_requests(request: Request) -> dict[str, Any]:
    """Requests awaiting review."""
    admin = current_user(request)
    requests = _requests().list_pending(admin)
    return {"requests": [ServiceRequestResponse(**row) for row in requests]}


@router.post("/requests/{request_id}/approve")
async def approve_request(request_id: str, request: Request) -> ServiceRequestResponse:
    """Open a request for offers."""
    admin = current_user(request)
    approved = _requests().admin_approve(request_id, admin)
    return ServiceRequestResponse(**approved)


@router.post("/requests/{request_id}/reject")
async def reject_request(request_id: str, request: Request) -> ServiceRequestResponse:
    """Refuse a request."""
    admin = current_user(request)
    rejected = _requests().admin_reject(request_id, admin)
    return ServiceRequestResponse(**rejected)


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------


@router.get("/offers/pending")
async def list_pending_offers(request: Request) -> dict[str, Any]:
    """Offers awaiting review."""
    admin = current_user(request)
    offers = _offers().list_pending(admin)
    return {"offers": [OfferResponse(**row) for row in offers]}


@router.post("/offers/{offer_id}/approve")
async def approve_offer(offer_id: str, request: Request) -> OfferResponse:
    """Admit an offer so the requester may pay for it."""
    admin = current_user(request)
    return OfferResponse(**_offers().admin_approve(offer_id, admin))


@router.post("/offers/{offer_id}/reject")
async def reject_offer(offer_id: str, request: Request) -> OfferResponse:
    """Refuse an offer."""
    admin = current_user(request)
    return OfferResponse(**_offers().admin_reject(offer_id, admin))


# ---------------------------------------------------------------------------
# Payment attestations
# ---------------------------------------------------------------------------


@router.get("/payments/pending")
async def list_pending_payments(request: Request) -> dict[str, Any]:
    """Attestations awaiting reconciliation."""
    admin = current_user(request)
    payments = _payments().list_pending(admin)
    return {"payments": [PaymentResponse(**row) for row in payments]}


@router.post("/payments/{payment_id}/approve")
async def approve_payment(payment_id: str, request: Request) -> PaymentApprovalResponse:
    """Confirm a transfer: accept the offer, assign the request, open the conversation."""
    admin = current_user(request)
    result = _payments().admin_approve(payment_id, admin)
    return PaymentApprovalResponse(
        payment=PaymentResponse(**result["payment"]),
        offer=OfferResponse(**result["offer"]),
        request=ServiceRequestResponse(**result["request"]),
        rejected_siblings=result["rejected_siblings"],
    )


@router.post("/payments/{payment_id}/reject")
async def reject_payment(payment_id: str, request: Request) -> PaymentResponse:
    """Refuse an attestation."""
    admin = current_user(request)
    return PaymentResponse(**_payments().admin_reject(payment_id, admin))


@router.delete("/payments/{payment_id}", status_code=204)
async def delete_payment(payment_id: str, request: Request) -> Response:
    """Remove an attestation record."""
    admin = current_user(request)
    _payments().admin_delete(payment_id, admin)
    return Response(status_code=204)
