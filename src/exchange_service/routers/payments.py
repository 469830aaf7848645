"""Payment attestation endpoints for requesters."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from exchange_service.core.state import get_app_state
from exchange_service.routers.validation import current_user
from exchange_service.schemas import PaymentResponse

router = APIRouter()


@router.get("/payments/mine")
async def list_my_payments(request: Request) -> dict[str, Any]:
    """Attestations the caller has filed."""
    actor = current_user(request)
    state = get_app_state()
    if state.payments is None:
        msg = "PaymentGate not initialized"
        raise RuntimeError(msg)
    payments = state.payments.list_for_payer(actor)
    return {"payments": [PaymentResponse(**row) for row in payments]}
