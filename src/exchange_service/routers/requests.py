"""Service request endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request, Response

from exchange_service.core.state import get_app_state
from exchange_service.routers.validation import current_user, parse_json_body
from exchange_service.schemas import OfferResponse, ServiceRequestResponse

if TYPE_CHECKING:
    from exchange_service.services.offer_arbitrator import OfferArbitrator
    from exchange_service.services.request_lifecycle import RequestLifecycle

router = APIRouter()


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


# ---------------------------------------------------------------------------
# POST /requests, GET /requests, GET /requests/mine
# (MUST be before GET /requests/{request_id})
# ---------------------------------------------------------------------------


@router.post("/requests", status_code=201)
async def create_request(request: Request) -> ServiceRequestResponse:
    """Post a new service request for admin review."""
    actor = current_user(request)
    data = parse_json_body(await request.body())
    created = _requests().create(actor, data)
    return ServiceRequestResponse(**created)


@router.get("/requests")
async def list_open_requests(request: Request) -> dict[str, Any]:
    """Bid board: requests currently accepting offers."""
    current_user(request)
    requests = _requests().list_open()
    return {"requests": [ServiceRequestResponse(**row) for row in requests]}


@router.get("/requests/mine")
async def list_my_requests(request: Request) -> dict[str, Any]:
    """Requests the caller has posted."""
    actor = current_user(request)
    requests = _requests().list_for_owner(actor)
    return {"requests": [ServiceRequestResponse(**row) for row in requests]}


# ---------------------------------------------------------------------------
# Single request
# ---------------------------------------------------------------------------


@router.get("/requests/{request_id}")
async def get_request(request_id: str, request: Request) -> ServiceRequestResponse:
    """Fetch one request."""
    actor = current_user(request)
    return ServiceRequestResponse(**_requests().view(request_id, actor))


@router.patch("/requests/{request_id}")
async def update_request(request_id: str, request: Request) -> ServiceRequestResponse:
    """Edit an open request."""
    actor = current_user(request)
    data = parse_json_body(await request.body())
    updated = _requests().owner_update(request_id, actor, data)
    return ServiceRequestResponse(**updated)


@router.delete("/requests/{request_id}", status_code=204)
async def delete_request(request_id: str, request: Request) -> Response:
    """Delete an open request and its offers."""
    actor = current_user(request)
    _requests().owner_delete(request_id, actor)
    return Response(status_code=204)


@router.post("/requests/{request_id}/cancel")
async def cancel_request(request_id: str, request: Request) -> ServiceRequestResponse:
    """Withdraw a pending or open request."""
    actor = current_user(request)
    return ServiceRequestResponse(**_requests().cancel(request_id, actor))


@router.post("/requests/{request_id}/start")
async def start_request(request_id: str, request: Request) -> ServiceRequestResponse:
    """Assigned expert begins work."""
    actor = current_user(request)
    return ServiceRequestResponse(**_requests().start_work(request_id, actor))


@router.post("/requests/{request_id}/complete")
async def complete_request(request_id: str, request: Request) -> ServiceRequestResponse:
    """Owner marks the work completed."""
    actor = current_user(request)
    return ServiceRequestResponse(**_requests().complete(request_id, actor))


# ---------------------------------------------------------------------------
# Offers on a request
# ---------------------------------------------------------------------------


@router.post("/requests/{request_id}/offers", status_code=201)
async def submit_offer(request_id: str, request: Request) -> OfferResponse:
    """Expert bids on an open request."""
    actor = current_user(request)
    data = parse_json_body(await request.body())
    offer = _offers().submit(request_id, actor, data)
    return OfferResponse(**offer)


@router.get("/requests/{request_id}/offers")
async def list_request_offers(request_id: str, request: Request) -> dict[str, Any]:
    """Offers received on a request (owner or admin)."""
    actor = current_user(request)
    offers = _offers().list_for_request(request_id, actor)
    return {
        "request_id": request_id,
        "offers": [OfferResponse(**row) for row in offers],
    }
