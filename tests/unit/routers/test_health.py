"""Health endpoint tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from tests.unit.routers.conftest import setup_assigned_request

if TYPE_CHECKING:
    from httpx import AsyncClient


@pytest.mark.unit
async def test_health_schema(client: AsyncClient) -> None:
    """GET /health needs no credentials and returns the full schema."""
    resp = await client.get("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["uptime_seconds"] >= 0
    assert body["started_at"].endswith("Z")
    assert body["requests_by_status"] == {}
    assert body["total_messages"] == 0
    assert body["notification_subscribers"] == 0


@pytest.mark.unit
async def test_health_counts_workflow(client: AsyncClient) -> None:
    await setup_assigned_request(client)

    body = (await client.get("/health")).json()

    assert body["requests_by_status"] == {"assigned": 1}
    assert body["offers_by_status"] == {"accepted": 1}
    assert body["payments_by_status"] == {"approved": 1}
    assert body["total_messages"] == 2


@pytest.mark.unit
async def test_health_post_not_allowed(client: AsyncClient) -> None:
    resp = await client.post("/health")

    assert resp.status_code == 405
    assert resp.json()["error"] == "METHOD_NOT_ALLOWED"
