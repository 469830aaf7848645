"""
Workflow states and the transitions between them.

Each entity carries a workflow ``status`` and, for requests and offers, an
``approval_status``. The pair is only ever written through a ``Transition``:
the store applies ``transition.updates()`` guarded by
``status IN transition.sources`` in a single statement, so the two columns
never drift apart.
"""

from __future__ import annotations

from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Service requests
# ---------------------------------------------------------------------------
REQUEST_STATUSES = frozenset(
    {
        "pending",
        "admin_approved",
        "admin_rejected",
        "open",
        "assigned",
        "in_progress",
        "completed",
        "cancelled",
    }
)

# Statuses in which an expert is attached and the conversation is unlocked
ASSIGNED_STATUSES = frozenset({"assigned", "in_progress", "completed"})

# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------
OFFER_STATUSES = frozenset(
    {"pending", "admin_approved", "admin_rejected", "accepted", "rejected", "cancelled"}
)

# Offers that still compete for the request
LIVE_OFFER_STATUSES = frozenset({"pending", "admin_approved"})

# ---------------------------------------------------------------------------
# Payment attestations
# ---------------------------------------------------------------------------
PAYMENT_STATUSES = frozenset({"pending", "approved", "rejected"})

APPROVAL_STATUSES = frozenset({"pending", "approved", "rejected"})


@dataclass(frozen=True)
class Transition:
    """A named move from any of ``sources`` to ``target``."""

    name: str
    sources: frozenset[str]
    target: str
    approval_status: str | None = None

    def allows(self, status: str) -> bool:
        """Return True if the transition may fire from ``status``."""
        return status in self.sources

    def updates(self, **fields: object) -> dict[str, object]:
        """Column updates for this transition plus any extra fields."""
        changes: dict[str, object] = {"status": self.target}
        if self.approval_status is not None:
            changes["approval_status"] = self.approval_status
        changes.update(fields)
        return changes


# Request transitions
REQUEST_ADMIN_APPROVE = Transition("admin_approve", frozenset({"pending"}), "open", "approved")
REQUEST_ADMIN_REJECT = Transition(
    "admin_reject", frozenset({"pending"}), "admin_rejected", "rejected"
)
REQUEST_ASSIGN = Transition("assign", frozenset({"open"}), "assigned")
REQUEST_START = Transition("start", frozenset({"assigned"}), "in_progress")
REQUEST_COMPLETE = Transition("complete", frozenset({"in_progress"}), "completed")
REQUEST_CANCEL = Transition("cancel", frozenset({"pending", "open"}), "cancelled")

# Offer transitions
OFFER_ADMIN_APPROVE = Transition(
    "admin_approve", frozenset({"pending"}), "admin_approved", "approved"
)
OFFER_ADMIN_REJECT = Transition(
    "admin_reject", frozenset({"pending"}), "admin_rejected", "rejected"
)
OFFER_ACCEPT = Transition("accept", frozenset({"admin_approved"}), "accepted")
OFFER_OWNER_REJECT = Transition("owner_reject", frozenset({"admin_approved"}), "rejected")
OFFER_SIBLING_REJECT = Transition("sibling_reject", LIVE_OFFER_STATUSES, "rejected")
OFFER_WITHDRAW = Transition("withdraw", LIVE_OFFER_STATUSES, "cancelled")
OFFER_RESUBMIT = Transition("resubmit", frozenset({"cancelled"}), "pending", "pending")

# Payment transitions
PAYMENT_APPROVE = Transition("approve", frozenset({"pending"}), "approved")
PAYMENT_REJECT = Transition("reject", frozenset({"pending"}), "rejected")


def is_payable(offer: dict[str, object]) -> bool:
    """An offer may be paid for once the admin has approved it and nothing has answered it."""
    return offer["status"] == "admin_approved" and offer["approval_status"] == "approved"
