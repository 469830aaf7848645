"""Router test fixtures: a live app on a temp database and workflow helpers over HTTP."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from exchange_service.app import create_app
from exchange_service.config import clear_settings_cache
from exchange_service.core.lifespan import lifespan
from exchange_service.core.state import reset_app_state
from tests.helpers import (
    ADMIN_ID,
    ALICE_ID,
    BOB_ID,
    bearer,
    offer_fields,
    request_fields,
    write_config,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from httpx import Response

# ---------------------------------------------------------------------------
# Auth headers
# ---------------------------------------------------------------------------
ALICE_AUTH = bearer(ALICE_ID, "requester")
BOB_AUTH = bearer(BOB_ID, "expert")
ADMIN_AUTH = bearer(ADMIN_ID, "admin")


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def max_body_size() -> int:
    """Body size limit for the test app. Override in a module to shrink it."""
    return 1048576


@pytest.fixture
async def app(tmp_path: Path, max_body_size: int) -> AsyncIterator[Any]:
    """Create a test app with a temp database."""
    config_path = write_config(tmp_path, max_body_size=max_body_size)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Workflow helper functions
# ---------------------------------------------------------------------------
async def create_request(
    client: AsyncClient,
    headers: dict[str, str] = ALICE_AUTH,
    **overrides: Any,
) -> Response:
    """Create a request via POST /requests and return the response."""
    return await client.post("/requests", json=request_fields(**overrides), headers=headers)


async def create_open_request(
    client: AsyncClient,
    headers: dict[str, str] = ALICE_AUTH,
    **overrides: Any,
) -> str:
    """Create a request and approve it. Returns the request_id."""
    created = await create_request(client, headers, **overrides)
    request_id = created.json()["request_id"]
    await client.post(f"/admin/requests/{request_id}/approve", headers=ADMIN_AUTH)
    return request_id


async def submit_offer(
    client: AsyncClient,
    request_id: str,
    headers: dict[str, str] = BOB_AUTH,
    **overrides: Any,
) -> Response:
    """Submit an offer via POST /requests/{request_id}/offers."""
    return await client.post(
        f"/requests/{request_id}/offers",
        json=offer_fields(**overrides),
        headers=headers,
    )


async def create_approved_offer(
    client: AsyncClient,
    request_id: str,
    headers: dict[str, str] = BOB_AUTH,
    **overrides: Any,
) -> str:
    """Submit an offer and approve it. Returns the offer_id."""
    submitted = await submit_offer(client, request_id, headers, **overrides)
    offer_id = submitted.json()["offer_id"]
    await client.post(f"/admin/offers/{offer_id}/approve", headers=ADMIN_AUTH)
    return offer_id


async def request_payment(
    client: AsyncClient,
    offer_id: str,
    headers: dict[str, str] = ALICE_AUTH,
) -> Response:
    """File a payment attestation via POST /offers/{offer_id}/payment."""
    return await client.post(f"/offers/{offer_id}/payment", headers=headers)


async def setup_assigned_request(client: AsyncClient) -> tuple[str, str]:
    """
    Run Alice's request through to assignment with Bob as the expert.

    Returns (request_id, offer_id).
    """
    request_id = await create_open_request(client)
    offer_id = await create_approved_offer(client, request_id)
    payment = await request_payment(client, offer_id)
    payment_id = payment.json()["payment"]["payment_id"]
    await client.post(f"/admin/payments/{payment_id}/approve", headers=ADMIN_AUTH)
    return request_id, offer_id
