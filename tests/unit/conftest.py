"""Unit test fixtures: cache reset and an in-process workflow."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import pytest

from exchange_service.config import LimitsConfig, PaginationConfig, clear_settings_cache
from exchange_service.core.state import reset_app_state
from exchange_service.services.conversation_gate import ConversationGate
from exchange_service.services.offer_arbitrator import OfferArbitrator
from exchange_service.services.payment_gate import PaymentGate
from exchange_service.services.request_lifecycle import RequestLifecycle
from exchange_service.services.workflow_store import WorkflowStore
from tests.helpers import (
    ADMIN,
    ALICE,
    BOB,
    LIMITS,
    RecordingDispatcher,
    offer_fields,
    request_fields,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from exchange_service.services.identity_context import CurrentUser


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@dataclass
class Workflow:
    """All components wired to one store."""

    store: WorkflowStore
    requests: RequestLifecycle
    offers: OfferArbitrator
    conversations: ConversationGate
    payments: PaymentGate
    dispatcher: RecordingDispatcher

    def open_request(self, owner: CurrentUser = ALICE, **overrides: Any) -> dict[str, Any]:
        """Create a request and approve it."""
        created = self.requests.create(owner, request_fields(**overrides))
        return self.requests.admin_approve(created["request_id"], ADMIN)

    def approved_offer(
        self,
        request_id: str,
        expert: CurrentUser = BOB,
        **overrides: Any,
    ) -> dict[str, Any]:
        """Submit an offer and approve it."""
        submitted = self.offers.submit(request_id, expert, offer_fields(**overrides))
        return self.offers.admin_approve(submitted["offer_id"], ADMIN)

    def assigned_request(
        self,
        owner: CurrentUser = ALICE,
        expert: CurrentUser = BOB,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Run the whole funnel and return ``(request, offer)`` after payment approval."""
        request = self.open_request(owner)
        offer = self.approved_offer(request["request_id"], expert)
        payment, _ = self.payments.request_payment(offer["offer_id"], owner)
        result = self.payments.admin_approve(payment["payment_id"], ADMIN)
        return result["request"], result["offer"]


def build_workflow(db_path: str, dispatcher: RecordingDispatcher) -> Workflow:
    """Wire the components in dependency order."""
    limits = LimitsConfig(**LIMITS)
    store = WorkflowStore(db_path=db_path)
    requests = RequestLifecycle(store=store, limits=limits)
    offers = OfferArbitrator(store=store, requests=requests, dispatcher=dispatcher, limits=limits)
    conversations = ConversationGate(
        store=store,
        requests=requests,
        dispatcher=dispatcher,
        limits=limits,
        pagination=PaginationConfig(default_limit=50, max_limit=200),
    )
    payments = PaymentGate(
        store=store,
        requests=requests,
        offers=offers,
        conversations=conversations,
        dispatcher=dispatcher,
    )
    return Workflow(store, requests, offers, conversations, payments, dispatcher)


@pytest.fixture
def workflow(tmp_path: Path) -> Iterator[Workflow]:
    """A fresh workflow on a temp database with a recording dispatcher."""
    wired = build_workflow(str(tmp_path / "exchange.db"), RecordingDispatcher())
    yield wired
    wired.store.close()
