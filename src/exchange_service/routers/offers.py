"""Offer endpoints for experts and requesters."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from exchange_service.core.state import get_app_state
from exchange_service.routers.validation import current_user
from exchange_service.schemas import OfferResponse, PaymentResponse

router = APIRouter()


@router.get("/offers/mine")
async def list_my_offers(request: Request) -> dict[str, Any]:
    """Offers the caller has submitted."""
    actor = current_user(request)
    state = get_app_state()
    if state.offers is None:
        msg = "OfferArbitrator not initialized"
        raise RuntimeError(msg)
    offers = state.offers.list_for_expert(actor)
    return {"offers": [OfferResponse(**row) for row in offers]}


@router.post("/offers/{offer_id}/withdraw")
async def withdraw_offer(offer_id: str, request: Request) -> OfferResponse:
    """Expert cancels their own live offer."""
    actor = current_user(request)
    state = get_app_state()
    if state.offers is None:
        msg = "OfferArbitrator not initialized"
        raise RuntimeError(msg)
    return OfferResponse(**state.offers.withdraw(offer_id, actor))


@router.post("/offers/{offer_id}/reject")
async def reject_offer(offer_id: str, request: Request) -> OfferResponse:
    """Request owner declines an admin-approved offer."""
    actor = current_user(request)
    state = get_app_state()
    if state.offers is None:
        msg = "OfferArbitrator not initialized"
        raise RuntimeError(msg)
    return OfferResponse(**state.offers.reject(offer_id, actor))


@router.post("/offers/{offer_id}/payment")
async def request_payment(offer_id: str, request: Request) -> JSONResponse:
    """
    File a bank-transfer attestation for an offer.

    201 when a new attestation is created, 200 when the pending one is replayed.
    """
    actor = current_user(request)
    state = get_app_state()
    if state.payments is None:
        msg = "PaymentGate not initialized"
        raise RuntimeError(msg)
    payment, created = state.payments.request_payment(offer_id, actor)
    return JSONResponse(
        status_code=201 if created else 200,
        content={"payment": PaymentResponse(**payment).model_dump(), "created": created},
    )
