"""Unit tests for RequestLifecycle."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from exchange_service.core.exceptions import (
    ConcurrentModificationError,
    ForbiddenActorError,
    ForbiddenTransitionError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from tests.helpers import ADMIN, ALICE, BOB, CAROL, DAVE, offer_fields, request_fields


@pytest.mark.unit
def test_create_starts_pending(workflow) -> None:
    request = workflow.requests.create(ALICE, request_fields())

    assert request["request_id"].startswith("req-")
    assert request["status"] == "pending"
    assert request["approval_status"] == "pending"
    assert request["owner_id"] == ALICE.id
    assert request["expert_id"] is None
    assert request["skills"] == ["latex", "writing"]
    assert request["budget"] == 500.0


@pytest.mark.unit
def test_create_requires_requester_role(workflow) -> None:
    with pytest.raises(ForbiddenActorError):
        workflow.requests.create(BOB, request_fields())


@pytest.mark.unit
@pytest.mark.parametrize(
    ("overrides", "fragment"),
    [
        ({"budget": 0}, "Budget"),
        ({"budget": -10}, "Budget"),
        ({"budget": True}, "Budget"),
        ({"budget": 100001}, "Budget"),
        ({"budget": float("nan")}, "Budget"),
        ({"budget": float("inf")}, "Budget"),
        ({"budget": 10**400}, "Budget"),
        ({"title": "Hi"}, "Title"),
        ({"title": "x" * 101}, "Title"),
        ({"description": "short"}, "Description"),
        ({"deadline": "not-a-date"}, "Deadline"),
        ({"deadline": "9999-12-31T23:59:59-12:00"}, "ISO 8601"),
        ({"deadline": (datetime.now(UTC) - timedelta(hours=1)).isoformat()}, "future"),
        ({"skills": "python"}, "Skills"),
        ({"skills": ["python", ""]}, "Skills"),
        ({"colour": "blue"}, "Unknown field"),
    ],
)
def test_create_validation(workflow, overrides, fragment) -> None:
    with pytest.raises(ValidationError, match=fragment):
        workflow.requests.create(ALICE, request_fields(**overrides))


@pytest.mark.unit
def test_create_requires_core_fields(workflow) -> None:
    fields = request_fields()
    del fields["deadline"]
    with pytest.raises(ValidationError, match="Missing required field: deadline"):
        workflow.requests.create(ALICE, fields)


@pytest.mark.unit
def test_duplicate_skills_collapse(workflow) -> None:
    request = workflow.requests.create(ALICE, request_fields(skills=["sql", "sql", " etl "]))
    assert request["skills"] == ["sql", "etl"]


@pytest.mark.unit
def test_admin_approve_opens_request(workflow) -> None:
    created = workflow.requests.create(ALICE, request_fields())
    approved = workflow.requests.admin_approve(created["request_id"], ADMIN)

    assert approved["status"] == "open"
    assert approved["approval_status"] == "approved"
    assert approved["reviewed_by"] == ADMIN.id
    assert approved["reviewed_at"] is not None


@pytest.mark.unit
def test_admin_reject(workflow) -> None:
    created = workflow.requests.create(ALICE, request_fields())
    rejected = workflow.requests.admin_reject(created["request_id"], ADMIN)

    assert rejected["status"] == "admin_rejected"
    assert rejected["approval_status"] == "rejected"


@pytest.mark.unit
def test_review_only_once(workflow) -> None:
    created = workflow.requests.create(ALICE, request_fields())
    workflow.requests.admin_approve(created["request_id"], ADMIN)

    with pytest.raises(InvalidStateError, match="already been reviewed"):
        workflow.requests.admin_approve(created["request_id"], ADMIN)
    with pytest.raises(InvalidStateError):
        workflow.requests.admin_reject(created["request_id"], ADMIN)


@pytest.mark.unit
def test_review_requires_admin(workflow) -> None:
    created = workflow.requests.create(ALICE, request_fields())
    with pytest.raises(ForbiddenActorError):
        workflow.requests.admin_approve(created["request_id"], ALICE)


@pytest.mark.unit
def test_unknown_request(workflow) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        workflow.requests.admin_approve("req-missing", ADMIN)
    assert exc_info.value.error == "REQUEST_NOT_FOUND"


@pytest.mark.unit
def test_pending_queue_and_open_board(workflow) -> None:
    pending = workflow.requests.create(ALICE, request_fields(title="Pending request"))
    opened = workflow.open_request(ALICE)

    assert [row["request_id"] for row in workflow.requests.list_pending(ADMIN)] == [
        pending["request_id"]
    ]
    assert [row["request_id"] for row in workflow.requests.list_open()] == [
        opened["request_id"]
    ]
    assert len(workflow.requests.list_for_owner(ALICE)) == 2
    assert workflow.requests.list_for_owner(DAVE) == []
    with pytest.raises(ForbiddenActorError):
        workflow.requests.list_pending(ALICE)


@pytest.mark.unit
def test_view_visibility(workflow) -> None:
    pending = workflow.requests.create(ALICE, request_fields())
    opened = workflow.open_request(ALICE)

    assert workflow.requests.view(opened["request_id"], BOB)["status"] == "open"
    assert workflow.requests.view(pending["request_id"], ALICE)["status"] == "pending"
    assert workflow.requests.view(pending["request_id"], ADMIN)["status"] == "pending"
    with pytest.raises(ForbiddenActorError):
        workflow.requests.view(pending["request_id"], BOB)


# ---------------------------------------------------------------------------
# Owner edits
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_owner_update_open_request(workflow) -> None:
    opened = workflow.open_request(ALICE)
    updated = workflow.requests.owner_update(
        opened["request_id"], ALICE, {"budget": 750, "skills": ["latex"]}
    )
    assert updated["budget"] == 750.0
    assert updated["skills"] == ["latex"]
    assert updated["status"] == "open"


@pytest.mark.unit
def test_owner_update_needs_a_field(workflow) -> None:
    opened = workflow.open_request(ALICE)
    with pytest.raises(ValidationError, match="At least one field"):
        workflow.requests.owner_update(opened["request_id"], ALICE, {})


@pytest.mark.unit
def test_owner_update_by_stranger(workflow) -> None:
    opened = workflow.open_request(ALICE)
    with pytest.raises(ForbiddenActorError):
        workflow.requests.owner_update(opened["request_id"], DAVE, {"budget": 10})


@pytest.mark.unit
def test_owner_update_pending_request_is_forbidden(workflow) -> None:
    created = workflow.requests.create(ALICE, request_fields())
    with pytest.raises(ForbiddenTransitionError):
        workflow.requests.owner_update(created["request_id"], ALICE, {"budget": 10})


@pytest.mark.unit
def test_owner_edit_blocked_once_offer_admitted(workflow) -> None:
    opened = workflow.open_request(ALICE)
    workflow.approved_offer(opened["request_id"], BOB)

    with pytest.raises(ForbiddenTransitionError, match="past initial review"):
        workflow.requests.owner_update(opened["request_id"], ALICE, {"budget": 10})
    with pytest.raises(ForbiddenTransitionError, match="past initial review"):
        workflow.requests.owner_delete(opened["request_id"], ALICE)


@pytest.mark.unit
@pytest.mark.parametrize("outcome", ["owner_rejected", "admin_rejected", "withdrawn"])
def test_owner_delete_blocked_by_reviewed_offer(workflow, outcome) -> None:
    """Once any offer has left pending, the request and its offers stay on record."""
    opened = workflow.open_request(ALICE)
    request_id = opened["request_id"]
    if outcome == "owner_rejected":
        offer = workflow.approved_offer(request_id, BOB)
        workflow.offers.reject(offer["offer_id"], ALICE)
    else:
        offer = workflow.offers.submit(request_id, BOB, offer_fields())
        if outcome == "admin_rejected":
            workflow.offers.admin_reject(offer["offer_id"], ADMIN)
        else:
            workflow.offers.withdraw(offer["offer_id"], BOB)

    with pytest.raises(ForbiddenTransitionError) as exc_info:
        workflow.requests.owner_delete(request_id, ALICE)

    assert exc_info.value.details["blocking_offers"] == 1
    assert workflow.store.get_request(request_id) is not None
    assert workflow.store.get_offer(offer["offer_id"]) is not None


@pytest.mark.unit
def test_owner_update_allowed_after_offer_rejected(workflow) -> None:
    opened = workflow.open_request(ALICE)
    offer = workflow.approved_offer(opened["request_id"], BOB)
    workflow.offers.reject(offer["offer_id"], ALICE)

    updated = workflow.requests.owner_update(opened["request_id"], ALICE, {"budget": 750})

    assert updated["budget"] == 750.0


@pytest.mark.unit
def test_owner_delete_removes_pending_offers(workflow) -> None:
    opened = workflow.open_request(ALICE)
    offer = workflow.offers.submit(
        opened["request_id"],
        BOB,
        {"message": "Happy to help out here", "proposed_price": 10, "estimated_duration": "1d"},
    )

    workflow.requests.owner_delete(opened["request_id"], ALICE)

    assert workflow.store.get_request(opened["request_id"]) is None
    assert workflow.store.get_offer(offer["offer_id"]) is None


@pytest.mark.unit
def test_owner_delete_assigned_request_is_forbidden(workflow) -> None:
    """Deleting a request after assignment fails with FORBIDDEN_TRANSITION."""
    request, _ = workflow.assigned_request(ALICE, BOB)

    with pytest.raises(ForbiddenTransitionError) as exc_info:
        workflow.requests.owner_delete(request["request_id"], ALICE)
    assert exc_info.value.error == "FORBIDDEN_TRANSITION"
    assert workflow.store.get_request(request["request_id"]) is not None


# ---------------------------------------------------------------------------
# Workflow advancement
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_advance_to_assigned_requires_open(workflow) -> None:
    created = workflow.requests.create(ALICE, request_fields())
    with pytest.raises(InvalidStateError):
        workflow.requests.advance_to_assigned(created["request_id"], BOB.id)


@pytest.mark.unit
def test_advance_to_assigned_loses_race(workflow, monkeypatch) -> None:
    """A conditional update that matches nothing reports a lost race."""
    opened = workflow.open_request(ALICE)
    monkeypatch.setattr(workflow.store, "update_request", lambda *_args, **_kwargs: 0)

    with pytest.raises(ConcurrentModificationError):
        workflow.requests.advance_to_assigned(opened["request_id"], BOB.id)


@pytest.mark.unit
def test_cancel_cancels_live_offers(workflow) -> None:
    opened = workflow.open_request(ALICE)
    approved = workflow.approved_offer(opened["request_id"], BOB)
    pending = workflow.offers.submit(
        opened["request_id"],
        CAROL,
        {"message": "I can do this quickly", "proposed_price": 300, "estimated_duration": "1d"},
    )

    cancelled = workflow.requests.cancel(opened["request_id"], ALICE)

    assert cancelled["status"] == "cancelled"
    assert cancelled["cancelled_at"] is not None
    assert workflow.offers.get(approved["offer_id"])["status"] == "cancelled"
    assert workflow.offers.get(pending["offer_id"])["status"] == "cancelled"


@pytest.mark.unit
def test_cancel_rules(workflow) -> None:
    opened = workflow.open_request(ALICE)
    with pytest.raises(ForbiddenActorError):
        workflow.requests.cancel(opened["request_id"], DAVE)

    request, _ = workflow.assigned_request(ALICE, BOB)
    with pytest.raises(InvalidStateError):
        workflow.requests.cancel(request["request_id"], ALICE)


@pytest.mark.unit
def test_start_and_complete(workflow) -> None:
    request, _ = workflow.assigned_request(ALICE, BOB)
    request_id = request["request_id"]

    with pytest.raises(ForbiddenActorError):
        workflow.requests.start_work(request_id, CAROL)
    with pytest.raises(InvalidStateError):
        workflow.requests.complete(request_id, ALICE)

    started = workflow.requests.start_work(request_id, BOB)
    assert started["status"] == "in_progress"

    with pytest.raises(ForbiddenActorError):
        workflow.requests.complete(request_id, BOB)
    completed = workflow.requests.complete(request_id, ALICE)
    assert completed["status"] == "completed"
    assert completed["completed_at"] is not None
    assert completed["expert_id"] == BOB.id
