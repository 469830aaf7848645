"""Service request lifecycle: creation, admin gate, owner edits, and workflow advancement."""

from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from exchange_service.core.exceptions import (
    ConcurrentModificationError,
    ForbiddenActorError,
    ForbiddenTransitionError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from exchange_service.logging import get_logger
from exchange_service.services.clock import now_iso, parse_iso, to_iso
from exchange_service.services.identity_context import require_admin, require_requester
from exchange_service.services.states import (
    OFFER_STATUSES,
    OFFER_WITHDRAW,
    REQUEST_ADMIN_APPROVE,
    REQUEST_ADMIN_REJECT,
    REQUEST_ASSIGN,
    REQUEST_CANCEL,
    REQUEST_COMPLETE,
    REQUEST_START,
    Transition,
)

if TYPE_CHECKING:
    from exchange_service.config import LimitsConfig
    from exchange_service.services.identity_context import CurrentUser
    from exchange_service.services.workflow_store import WorkflowStore

_EDITABLE_FIELDS = frozenset({"title", "description", "budget", "deadline", "skills"})

# Offers in these statuses mean the request has moved past free editing
_ADMITTED_OFFER_STATUSES = frozenset({"admin_approved", "accepted"})

# Any reviewed offer keeps the request on record
_DELETE_BLOCKING_OFFER_STATUSES = OFFER_STATUSES - {"pending"}


def _is_number(value: object) -> bool:
    """Check if value is a finite int or float (not bool)."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return False
    return not isinstance(value, float) or math.isfinite(value)


class RequestLifecycle:
    """
    Owns the ServiceRequest entity.

    Admin approval opens a request for bids; PaymentGate is the only caller
    of ``advance_to_assigned``.
    """

    def __init__(self, store: WorkflowStore, limits: LimitsConfig) -> None:
        self._store = store
        self._limits = limits
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_fields(self, fields: dict[str, Any], *, partial: bool) -> dict[str, Any]:
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown field: {sorted(unknown)[0]}",
                {"fields": sorted(unknown)},
            )
        if partial and len(fields) == 0:
            raise ValidationError("At least one field must be provided")
        if not partial:
            for name in ("title", "description", "budget", "deadline"):
                if name not in fields:
                    raise ValidationError(f"Missing required field: {name}")

        limits = self._limits
        cleaned: dict[str, Any] = {}

        if "title" in fields:
            title = fields["title"]
            if not isinstance(title, str) or not (
                limits.min_title_length <= len(title.strip()) <= limits.max_title_length
            ):
                raise ValidationError(
                    f"Title must be between {limits.min_title_length} and "
                    f"{limits.max_title_length} characters"
                )
            cleaned["title"] = title.strip()

        if "description" in fields:
            description = fields["description"]
            if not isinstance(description, str) or not (
                limits.min_description_length
                <= len(description.strip())
                <= limits.max_description_length
            ):
                raise ValidationError(
                    f"Description must be between {limits.min_description_length} and "
                    f"{limits.max_description_length} characters"
                )
            cleaned["description"] = description.strip()

        if "budget" in fields:
            budget = fields["budget"]
            if not _is_number(budget) or budget <= 0:
                raise ValidationError("Budget must be a positive number")
            if budget > limits.max_budget:
                raise ValidationError(f"Budget must not exceed {limits.max_budget:g}")
            cleaned["budget"] = float(budget)

        if "deadline" in fields:
            deadline = fields["deadline"]
            if not isinstance(deadline, str):
                raise ValidationError("Deadline must be an ISO 8601 timestamp")
            try:
                deadline_dt = parse_iso(deadline)
            except (ValueError, OverflowError) as exc:
                raise ValidationError("Deadline must be an ISO 8601 timestamp") from exc
            if deadline_dt <= datetime.now(UTC):
                raise ValidationError("Deadline must be in the future")
            cleaned["deadline"] = to_iso(deadline_dt)

        if "skills" in fields:
            skills = fields["skills"]
            if not isinstance(skills, list) or not all(
                isinstance(skill, str) and skill.strip() for skill in skills
            ):
                raise ValidationError("Skills must be a list of non-empty strings")
            cleaned["skills"] = list(dict.fromkeys(skill.strip() for skill in skills))

        return cleaned

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, request_id: str) -> dict[str, Any]:
        """
        Fetch a request.

        Raises:
            NotFoundError: REQUEST_NOT_FOUND
        """
        request = self._store.get_request(request_id)
        if request is None:
            raise NotFoundError("request", request_id)
        return request

    def view(self, request_id: str, actor: CurrentUser) -> dict[str, Any]:
        """
        Fetch a request on behalf of a caller.

        Open requests are public to every authenticated user; otherwise only
        the owner, the assigned expert, and admins may see it.
        """
        request = self.get(request_id)
        if request["status"] == "open" or actor.is_admin:
            return request
        if actor.id not in (request["owner_id"], request["expert_id"]):
            raise ForbiddenActorError("You do not have access to this request")
        return request

    def list_open(self) -> list[dict[str, Any]]:
        """Requests currently accepting offers."""
        return self._store.list_requests(status="open")

    def list_for_owner(self, actor: CurrentUser) -> list[dict[str, Any]]:
        """Every request the caller has posted."""
        return self._store.list_requests(owner_id=actor.id)

    def list_pending(self, admin: CurrentUser) -> list[dict[str, Any]]:
        """Admin queue: requests awaiting review."""
        require_admin(admin)
        return self._store.list_requests(approval_status="pending", status="pending")

    # ------------------------------------------------------------------
    # Requester operations
    # ------------------------------------------------------------------

    def create(self, actor: CurrentUser, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Create a request in ``pending/pending``.

        Raises:
            ForbiddenActorError: caller is not a requester
            ValidationError: missing or out-of-bounds fields
        """
        require_requester(actor)
        cleaned = self._validate_fields(fields, partial=False)

        request_id = f"req-{uuid.uuid4()}"
        created_at = now_iso()
        self._store.insert_request(
            {
                "request_id": request_id,
                "owner_id": actor.id,
                "title": cleaned["title"],
                "description": cleaned["description"],
                "budget": cleaned["budget"],
                "deadline": cleaned["deadline"],
                "skills": cleaned.get("skills", []),
                "status": "pending",
                "approval_status": "pending",
                "expert_id": None,
                "created_at": created_at,
                "updated_at": created_at,
                "reviewed_at": None,
                "reviewed_by": None,
                "assigned_at": None,
                "completed_at": None,
                "cancelled_at": None,
            }
        )
        self._logger.info(
            "Request created",
            extra={"request_id": request_id, "owner_id": actor.id},
        )
        return self.get(request_id)

    def _require_owner_edit(
        self,
        request: dict[str, Any],
        actor: CurrentUser,
        verb: str,
        blocking_statuses: frozenset[str],
    ) -> None:
        if request["owner_id"] != actor.id:
            raise ForbiddenActorError(f"Only the request owner can {verb} this request")
        if request["status"] != "open":
            raise ForbiddenTransitionError(
                f"Cannot {verb} a request in '{request['status']}' status, must be 'open'",
                {"status": request["status"]},
            )
        blocking = self._store.count_offers(request["request_id"], blocking_statuses)
        if blocking > 0:
            raise ForbiddenTransitionError(
                f"Cannot {verb} a request that has offers past initial review",
                {"blocking_offers": blocking, "offer_statuses": sorted(blocking_statuses)},
            )

    def owner_update(
        self,
        request_id: str,
        actor: CurrentUser,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Edit an open request.

        Raises:
            ValidationError, NotFoundError, ForbiddenActorError,
            ForbiddenTransitionError, ConcurrentModificationError
        """
        cleaned = self._validate_fields(fields, partial=True)
        with self._store.transaction():
            request = self.get(request_id)
            self._require_owner_edit(request, actor, "update", _ADMITTED_OFFER_STATUSES)
            changed = self._store.update_request(
                request_id,
                {**cleaned, "updated_at": now_iso()},
                expected_statuses={"open"},
            )
            if changed == 0:
                raise ConcurrentModificationError("Request changed while it was being updated")
        return self.get(request_id)

    def owner_delete(self, request_id: str, actor: CurrentUser) -> None:
        """
        Delete an open request whose offers are all still pending.

        Raises:
            NotFoundError, ForbiddenActorError, ForbiddenTransitionError,
            ConcurrentModificationError
        """
        with self._store.transaction():
            request = self.get(request_id)
            self._require_owner_edit(request, actor, "delete", _DELETE_BLOCKING_OFFER_STATUSES)
            if self._store.delete_request(request_id, expected_status="open") == 0:
                raise ConcurrentModificationError("Request changed while it was being deleted")
        self._logger.info("Request deleted", extra={"request_id": request_id})

    def cancel(self, request_id: str, actor: CurrentUser) -> dict[str, Any]:
        """
        Withdraw a pending or open request. Live offers on it are cancelled.

        Raises:
            NotFoundError, ForbiddenActorError, InvalidStateError,
            ConcurrentModificationError
        """
        with self._store.transaction():
            request = self.get(request_id)
            if request["owner_id"] != actor.id:
                raise ForbiddenActorError("Only the request owner can cancel this request")
            now = now_iso()
            self._apply(request, REQUEST_CANCEL, cancelled_at=now, updated_at=now)
            self._store.update_offers_for_request(
                request_id,
                OFFER_WITHDRAW.updates(updated_at=now),
                expected_statuses=OFFER_WITHDRAW.sources,
            )
        self._logger.info("Request cancelled", extra={"request_id": request_id})
        return self.get(request_id)

    def complete(self, request_id: str, actor: CurrentUser) -> dict[str, Any]:
        """Owner marks work in progress as completed."""
        request = self.get(request_id)
        if request["owner_id"] != actor.id:
            raise ForbiddenActorError("Only the request owner can complete this request")
        now = now_iso()
        self._apply(request, REQUEST_COMPLETE, completed_at=now, updated_at=now)
        self._logger.info("Request completed", extra={"request_id": request_id})
        return self.get(request_id)

    # ------------------------------------------------------------------
    # Expert operations
    # ------------------------------------------------------------------

    def start_work(self, request_id: str, actor: CurrentUser) -> dict[str, Any]:
        """Assigned expert moves the request to ``in_progress``."""
        request = self.get(request_id)
        if request["expert_id"] != actor.id:
            raise ForbiddenActorError("Only the assigned expert can start work on this request")
        self._apply(request, REQUEST_START, updated_at=now_iso())
        return self.get(request_id)

    # ------------------------------------------------------------------
    # Admin gate
    # ------------------------------------------------------------------

    def _review(
        self,
        request_id: str,
        admin: CurrentUser,
        transition: Transition,
    ) -> dict[str, Any]:
        require_admin(admin)
        request = self.get(request_id)
        if request["approval_status"] != "pending":
            raise InvalidStateError(
                "This request has already been reviewed",
                {"approval_status": request["approval_status"]},
            )
        now = now_iso()
        self._apply(request, transition, reviewed_at=now, reviewed_by=admin.id, updated_at=now)
        self._logger.info(
            "Request reviewed",
            extra={"request_id": request_id, "transition": transition.name, "admin": admin.id},
        )
        return self.get(request_id)

    def admin_approve(self, request_id: str, admin: CurrentUser) -> dict[str, Any]:
        """Approve a pending request, opening it for offers."""
        return self._review(request_id, admin, REQUEST_ADMIN_APPROVE)

    def admin_reject(self, request_id: str, admin: CurrentUser) -> dict[str, Any]:
        """Reject a pending request."""
        return self._review(request_id, admin, REQUEST_ADMIN_REJECT)

    # ------------------------------------------------------------------
    # Internal: called by PaymentGate
    # ------------------------------------------------------------------

    def advance_to_assigned(self, request_id: str, expert_id: str) -> dict[str, Any]:
        """
        Attach the winning expert and move ``open -> assigned``.

        Raises:
            NotFoundError, InvalidStateError, ConcurrentModificationError
        """
        request = self.get(request_id)
        now = now_iso()
        self._apply(request, REQUEST_ASSIGN, expert_id=expert_id, assigned_at=now, updated_at=now)
        self._logger.info(
            "Request assigned",
            extra={"request_id": request_id, "expert_id": expert_id},
        )
        return self.get(request_id)

    def _apply(self, request: dict[str, Any], transition: Transition, **fields: object) -> None:
        if not transition.allows(request["status"]):
            raise InvalidStateError(
                f"Cannot {transition.name.replace('_', ' ')} a request in "
                f"'{request['status']}' status",
                {"status": request["status"]},
            )
        changed = self._store.update_request(
            request["request_id"],
            transition.updates(**fields),
            expected_statuses=transition.sources,
        )
        if changed == 0:
            raise ConcurrentModificationError(
                "Request was modified by another operation",
                {"request_id": request["request_id"]},
            )
