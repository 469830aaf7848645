"""Offer bidding, admin review, and the single-winner acceptance rule."""

from __future__ import annotations

import math
import sqlite3
import uuid
from typing import TYPE_CHECKING, Any

from exchange_service.core.exceptions import (
    ConcurrentModificationError,
    DuplicateOfferError,
    ForbiddenActorError,
    InvalidStateError,
    NotFoundError,
    SelfDealingError,
    ValidationError,
)
from exchange_service.logging import get_logger
from exchange_service.services.clock import now_iso
from exchange_service.services.identity_context import require_admin, require_expert
from exchange_service.services.notification_dispatcher import WorkflowEvent, publish_safely
from exchange_service.services.states import (
    OFFER_ACCEPT,
    OFFER_ADMIN_APPROVE,
    OFFER_ADMIN_REJECT,
    OFFER_OWNER_REJECT,
    OFFER_RESUBMIT,
    OFFER_SIBLING_REJECT,
    OFFER_WITHDRAW,
    Transition,
)
from exchange_service.services.workflow_store import DuplicateOfferRowError

if TYPE_CHECKING:
    from exchange_service.config import LimitsConfig
    from exchange_service.services.identity_context import CurrentUser
    from exchange_service.services.notification_dispatcher import NotificationDispatcher
    from exchange_service.services.request_lifecycle import RequestLifecycle
    from exchange_service.services.workflow_store import WorkflowStore

_OFFER_FIELDS = frozenset({"message", "proposed_price", "estimated_duration"})


class OfferArbitrator:
    """
    Owns Offer entities and the exclusivity rule.

    ``accept`` is the only path to ``accepted`` and is driven solely by
    PaymentGate. It is a single conditional update, so of two competing
    accepts on one request at most one can win.
    """

    def __init__(
        self,
        store: WorkflowStore,
        requests: RequestLifecycle,
        dispatcher: NotificationDispatcher,
        limits: LimitsConfig,
    ) -> None:
        self._store = store
        self._requests = requests
        self._dispatcher = dispatcher
        self._limits = limits
        self._logger = get_logger(__name__)

    def set_dispatcher(self, dispatcher: NotificationDispatcher) -> None:
        """Replace the notification sink."""
        self._dispatcher = dispatcher

    def _notify(self, kind: str, offer: dict[str, Any]) -> None:
        event = WorkflowEvent(
            kind=kind,
            user_id=offer["expert_id"],
            payload={
                "offer_id": offer["offer_id"],
                "request_id": offer["request_id"],
                "status": offer["status"],
            },
        )
        publish_safely(self._dispatcher, event, self._logger)

    def _validate_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        unknown = set(fields) - _OFFER_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown field: {sorted(unknown)[0]}",
                {"fields": sorted(unknown)},
            )
        for name in ("message", "proposed_price", "estimated_duration"):
            if name not in fields:
                raise ValidationError(f"Missing required field: {name}")

        limits = self._limits
        message = fields["message"]
        if not isinstance(message, str) or not (
            limits.min_offer_message_length
            <= len(message.strip())
            <= limits.max_offer_message_length
        ):
            raise ValidationError(
                f"Message must be between {limits.min_offer_message_length} and "
                f"{limits.max_offer_message_length} characters"
            )

        price = fields["proposed_price"]
        if (
            not isinstance(price, int | float)
            or isinstance(price, bool)
            or (isinstance(price, float) and not math.isfinite(price))
            or price < 0
        ):
            raise ValidationError("Proposed price must be a non-negative number")
        if price > limits.max_proposed_price:
            raise ValidationError(
                f"Proposed price must not exceed {limits.max_proposed_price:g}"
            )

        duration = fields["estimated_duration"]
        if not isinstance(duration, str) or not (
            1 <= len(duration.strip()) <= limits.max_duration_length
        ):
            raise ValidationError(
                f"Estimated duration must be between 1 and "
                f"{limits.max_duration_length} characters"
            )

        return {
            "message": message.strip(),
            "proposed_price": float(price),
            "estimated_duration": duration.strip(),
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, offer_id: str) -> dict[str, Any]:
        """
        Fetch an offer.

        Raises:
            NotFoundError: OFFER_NOT_FOUND
        """
        offer = self._store.get_offer(offer_id)
        if offer is None:
            raise NotFoundError("offer", offer_id)
        return offer

    def list_for_request(self, request_id: str, actor: CurrentUser) -> list[dict[str, Any]]:
        """Offers on a request. Visible to its owner and to admins."""
        request = self._requests.get(request_id)
        if request["owner_id"] != actor.id and not actor.is_admin:
            raise ForbiddenActorError("Only the request owner can view its offers")
        return self._store.list_offers(request_id=request_id)

    def list_for_expert(self, actor: CurrentUser) -> list[dict[str, Any]]:
        """Offers the caller has submitted."""
        return self._store.list_offers(expert_id=actor.id)

    def list_pending(self, admin: CurrentUser) -> list[dict[str, Any]]:
        """Admin queue: offers awaiting review."""
        require_admin(admin)
        return self._store.list_offers(approval_status="pending", statuses={"pending"})

    # ------------------------------------------------------------------
    # Expert operations
    # ------------------------------------------------------------------

    def submit(
        self,
        request_id: str,
        actor: CurrentUser,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Bid on an open request.

        A previously withdrawn offer by the same expert is revived in place.

        Raises:
            ForbiddenActorError, ValidationError, NotFoundError,
            InvalidStateError, SelfDealingError, DuplicateOfferError
        """
        require_expert(actor)
        cleaned = self._validate_fields(fields)

        with self._store.transaction():
            request = self._requests.get(request_id)
            if request["status"] != "open":
                raise InvalidStateError(
                    f"Request is not accepting offers (status '{request['status']}')",
                    {"status": request["status"]},
                )
            if request["owner_id"] == actor.id:
                raise SelfDealingError

            now = now_iso()
            existing = self._store.find_offer(request_id, actor.id)
            if existing is not None:
                if not OFFER_RESUBMIT.allows(existing["status"]):
                    raise DuplicateOfferError
                offer_id = existing["offer_id"]
                changed = self._store.update_offer(
                    offer_id,
                    OFFER_RESUBMIT.updates(
                        **cleaned,
                        updated_at=now,
                        reviewed_at=None,
                        reviewed_by=None,
                        responded_at=None,
                    ),
                    expected_statuses=OFFER_RESUBMIT.sources,
                )
                if changed == 0:
                    raise ConcurrentModificationError("Offer changed while being resubmitted")
            else:
                offer_id = f"off-{uuid.uuid4()}"
                try:
                    self._store.insert_offer(
                        {
                            "offer_id": offer_id,
                            "request_id": request_id,
                            "expert_id": actor.id,
                            **cleaned,
                            "status": "pending",
                            "approval_status": "pending",
                            "created_at": now,
                            "updated_at": now,
                            "reviewed_at": None,
                            "reviewed_by": None,
                            "responded_at": None,
                        }
                    )
                except DuplicateOfferRowError as exc:
                    raise DuplicateOfferError from exc

        self._logger.info(
            "Offer submitted",
            extra={"offer_id": offer_id, "request_id": request_id, "expert_id": actor.id},
        )
        return self.get(offer_id)

    def withdraw(self, offer_id: str, actor: CurrentUser) -> dict[str, Any]:
        """
        Cancel the caller's own live offer.

        Raises:
            NotFoundError, ForbiddenActorError, InvalidStateError,
            ConcurrentModificationError
        """
        with self._store.transaction():
            offer = self.get(offer_id)
            if offer["expert_id"] != actor.id:
                raise ForbiddenActorError("Only the bidding expert can withdraw this offer")
            if self._store.find_pending_payment(offer_id) is not None:
                raise InvalidStateError(
                    "Cannot withdraw an offer with a pending payment",
                    {"offer_id": offer_id},
                )
            self._apply(offer, OFFER_WITHDRAW, updated_at=now_iso())
        self._logger.info("Offer withdrawn", extra={"offer_id": offer_id})
        return self.get(offer_id)

    # ------------------------------------------------------------------
    # Requester operations
    # ------------------------------------------------------------------

    def reject(self, offer_id: str, actor: CurrentUser) -> dict[str, Any]:
        """
        Request owner declines an admin-approved offer.

        Raises:
            NotFoundError, ForbiddenActorError, InvalidStateError,
            ConcurrentModificationError
        """
        offer = self.get(offer_id)
        request = self._requests.get(offer["request_id"])
        if request["owner_id"] != actor.id:
            raise ForbiddenActorError("Only the request owner can reject this offer")
        now = now_iso()
        self._apply(offer, OFFER_OWNER_REJECT, responded_at=now, updated_at=now)
        self._logger.info("Offer rejected by owner", extra={"offer_id": offer_id})
        return self.get(offer_id)

    # ------------------------------------------------------------------
    # Admin gate
    # ------------------------------------------------------------------

    def _review(self, offer_id: str, admin: CurrentUser, transition: Transition) -> dict[str, Any]:
        require_admin(admin)
        offer = self.get(offer_id)
        if offer["approval_status"] != "pending":
            raise InvalidStateError(
                "This offer has already been reviewed",
                {"approval_status": offer["approval_status"]},
            )
        now = now_iso()
        self._apply(offer, transition, reviewed_at=now, reviewed_by=admin.id, updated_at=now)
        self._logger.info(
            "Offer reviewed",
            extra={"offer_id": offer_id, "transition": transition.name, "admin": admin.id},
        )
        return self.get(offer_id)

    def admin_approve(self, offer_id: str, admin: CurrentUser) -> dict[str, Any]:
        """Admit a pending offer so the requester can pay for it."""
        offer = self._review(offer_id, admin, OFFER_ADMIN_APPROVE)
        self._notify("offer_admin_approved", offer)
        return offer

    def admin_reject(self, offer_id: str, admin: CurrentUser) -> dict[str, Any]:
        """Refuse a pending offer."""
        offer = self._review(offer_id, admin, OFFER_ADMIN_REJECT)
        self._notify("offer_admin_rejected", offer)
        return offer

    # ------------------------------------------------------------------
    # Internal: called by PaymentGate
    # ------------------------------------------------------------------

    def accept(self, offer_id: str) -> dict[str, Any]:
        """
        Mark an admin-approved offer as the winner.

        Raises:
            ConcurrentModificationError: the offer was no longer admin-approved
                when the conditional update ran.
        """
        now = now_iso()
        changed = self._store.update_offer(
            offer_id,
            OFFER_ACCEPT.updates(responded_at=now, updated_at=now),
            expected_statuses=OFFER_ACCEPT.sources,
        )
        if changed == 0:
            raise ConcurrentModificationError(
                "Offer is no longer eligible for acceptance",
                {"offer_id": offer_id},
            )
        self._logger.info("Offer accepted", extra={"offer_id": offer_id})
        return self.get(offer_id)

    def reject_siblings(self, request_id: str, winner_offer_id: str) -> int:
        """
        Reject every other live offer on the request. Returns the count.

        Never raises; a failure leaves siblings live but cannot be paid for,
        since the request is no longer open.
        """
        now = now_iso()
        try:
            rejected = self._store.update_offers_for_request(
                request_id,
                OFFER_SIBLING_REJECT.updates(responded_at=now, updated_at=now),
                expected_statuses=OFFER_SIBLING_REJECT.sources,
                exclude_offer_id=winner_offer_id,
            )
        except sqlite3.Error:
            self._logger.exception(
                "Sibling offer rejection failed",
                extra={"request_id": request_id, "winner_offer_id": winner_offer_id},
            )
            return 0
        if rejected > 0:
            self._logger.info(
                "Sibling offers rejected",
                extra={"request_id": request_id, "count": rejected},
            )
        return rejected

    def _apply(self, offer: dict[str, Any], transition: Transition, **fields: object) -> None:
        if not transition.allows(offer["status"]):
            raise InvalidStateError(
                f"Cannot {transition.name.replace('_', ' ')} an offer in "
                f"'{offer['status']}' status",
                {"status": offer["status"]},
            )
        changed = self._store.update_offer(
            offer["offer_id"],
            transition.updates(**fields),
            expected_statuses=transition.sources,
        )
        if changed == 0:
            raise ConcurrentModificationError(
                "Offer was modified by another operation",
                {"offer_id": offer["offer_id"]},
            )
