"""Payment attestations and the approval that commits an offer."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from exchange_service.core.exceptions import (
    ConcurrentModificationError,
    ForbiddenActorError,
    InvalidStateError,
    NotFoundError,
)
from exchange_service.logging import get_logger
from exchange_service.services.clock import now_iso
from exchange_service.services.identity_context import require_admin
from exchange_service.services.notification_dispatcher import WorkflowEvent, publish_safely
from exchange_service.services.states import PAYMENT_APPROVE, PAYMENT_REJECT, is_payable

if TYPE_CHECKING:
    from exchange_service.services.conversation_gate import ConversationGate
    from exchange_service.services.identity_context import CurrentUser
    from exchange_service.services.notification_dispatcher import NotificationDispatcher
    from exchange_service.services.offer_arbitrator import OfferArbitrator
    from exchange_service.services.request_lifecycle import RequestLifecycle
    from exchange_service.services.workflow_store import WorkflowStore


class PaymentGate:
    """
    Owns PaymentAttestation entities.

    ``admin_approve`` is the only operation that assigns a request. It applies
    the offer acceptance, request assignment, conversation seed, and
    attestation approval in one store transaction, then runs the best-effort
    follow-ups (sibling rejection, notifications) after commit.
    """

    def __init__(
        self,
        store: WorkflowStore,
        requests: RequestLifecycle,
        offers: OfferArbitrator,
        conversations: ConversationGate,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self._store = store
        self._requests = requests
        self._offers = offers
        self._conversations = conversations
        self._dispatcher = dispatcher
        self._logger = get_logger(__name__)

    def set_dispatcher(self, dispatcher: NotificationDispatcher) -> None:
        """Replace the notification sink."""
        self._dispatcher = dispatcher

    def _notify(self, kind: str, user_id: str, payment: dict[str, Any]) -> None:
        event = WorkflowEvent(
            kind=kind,
            user_id=user_id,
            payload={
                "payment_id": payment["payment_id"],
                "offer_id": payment["offer_id"],
                "request_id": payment["request_id"],
                "status": payment["status"],
            },
        )
        publish_safely(self._dispatcher, event, self._logger)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, payment_id: str) -> dict[str, Any]:
        """
        Fetch an attestation.

        Raises:
            NotFoundError: PAYMENT_NOT_FOUND
        """
        payment = self._store.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("payment", payment_id)
        return payment

    def list_for_payer(self, actor: CurrentUser) -> list[dict[str, Any]]:
        """Attestations the caller has filed."""
        return self._store.list_payments(payer_id=actor.id)

    def list_pending(self, admin: CurrentUser) -> list[dict[str, Any]]:
        """Admin queue: attestations awaiting reconciliation."""
        require_admin(admin)
        return self._store.list_payments(status="pending")

    # ------------------------------------------------------------------
    # Requester operation
    # ------------------------------------------------------------------

    def request_payment(
        self,
        offer_id: str,
        payer: CurrentUser,
    ) -> tuple[dict[str, Any], bool]:
        """
        File a payment attestation for an admin-approved offer.

        Idempotent: while the offer is still payable, an existing pending
        attestation for it is returned unchanged.

        Returns:
            ``(payment, created)`` where ``created`` is False for a replay.

        Raises:
            NotFoundError, ForbiddenActorError, InvalidStateError
        """
        with self._store.transaction():
            offer = self._offers.get(offer_id)
            request = self._requests.get(offer["request_id"])
            if request["owner_id"] != payer.id:
                raise ForbiddenActorError("Only the request owner can pay for this offer")

            if not is_payable(offer):
                raise InvalidStateError(
                    "This offer is not eligible for payment",
                    {"status": offer["status"], "approval_status": offer["approval_status"]},
                )
            if request["status"] != "open":
                raise InvalidStateError(
                    "The request is no longer open",
                    {"status": request["status"]},
                )

            existing = self._store.find_pending_payment(offer_id)
            if existing is not None:
                return existing, False

            payment_id = f"pay-{uuid.uuid4()}"
            self._store.insert_payment(
                {
                    "payment_id": payment_id,
                    "offer_id": offer_id,
                    "request_id": request["request_id"],
                    "payer_id": payer.id,
                    "amount": offer["proposed_price"],
                    "status": "pending",
                    "approver_id": None,
                    "approved_at": None,
                    "rejected_at": None,
                    "created_at": now_iso(),
                }
            )

        self._logger.info(
            "Payment attestation filed",
            extra={"payment_id": payment_id, "offer_id": offer_id, "payer_id": payer.id},
        )
        return self.get(payment_id), True

    # ------------------------------------------------------------------
    # Admin gate
    # ------------------------------------------------------------------

    def admin_approve(self, payment_id: str, admin: CurrentUser) -> dict[str, Any]:
        """
        Confirm the transfer and commit the offer.

        Every read that drives the decision is repeated inside the
        transaction; the caller may hold stale views of all three entities.

        Returns:
            ``{"payment", "offer", "request", "rejected_siblings"}``

        Raises:
            ForbiddenActorError, NotFoundError, InvalidStateError,
            ConcurrentModificationError
        """
        require_admin(admin)

        with self._store.transaction():
            payment = self.get(payment_id)
            if payment["status"] != "pending":
                raise InvalidStateError(
                    "This payment has already been processed",
                    {"status": payment["status"]},
                )
            offer = self._offers.get(payment["offer_id"])
            if not is_payable(offer):
                raise InvalidStateError(
                    "The offer is no longer eligible for payment approval",
                    {"status": offer["status"], "approval_status": offer["approval_status"]},
                )
            request = self._requests.get(offer["request_id"])
            if request["status"] != "open":
                raise InvalidStateError(
                    "The request is no longer open",
                    {"status": request["status"]},
                )

            offer = self._offers.accept(offer["offer_id"])
            request = self._requests.advance_to_assigned(
                request["request_id"], offer["expert_id"]
            )
            self._conversations.seed(request, offer)

            changed = self._store.update_payment(
                payment_id,
                PAYMENT_APPROVE.updates(approver_id=admin.id, approved_at=now_iso()),
                expected_statuses=PAYMENT_APPROVE.sources,
            )
            if changed == 0:
                raise ConcurrentModificationError(
                    "Payment was processed by another operation",
                    {"payment_id": payment_id},
                )

        rejected = self._offers.reject_siblings(request["request_id"], offer["offer_id"])
        payment = self.get(payment_id)
        self._logger.info(
            "Payment approved",
            extra={
                "payment_id": payment_id,
                "offer_id": offer["offer_id"],
                "request_id": request["request_id"],
                "admin": admin.id,
            },
        )
        self._notify("payment_approved", request["owner_id"], payment)
        self._notify("payment_approved", offer["expert_id"], payment)
        return {
            "payment": payment,
            "offer": offer,
            "request": request,
            "rejected_siblings": rejected,
        }

    def admin_reject(self, payment_id: str, admin: CurrentUser) -> dict[str, Any]:
        """
        Refuse an attestation. The offer stays payable.

        Raises:
            ForbiddenActorError, NotFoundError, InvalidStateError,
            ConcurrentModificationError
        """
        require_admin(admin)
        payment = self.get(payment_id)
        if not PAYMENT_REJECT.allows(payment["status"]):
            raise InvalidStateError(
                "This payment has already been processed",
                {"status": payment["status"]},
            )
        changed = self._store.update_payment(
            payment_id,
            PAYMENT_REJECT.updates(approver_id=admin.id, rejected_at=now_iso()),
            expected_statuses=PAYMENT_REJECT.sources,
        )
        if changed == 0:
            raise ConcurrentModificationError(
                "Payment was processed by another operation",
                {"payment_id": payment_id},
            )
        payment = self.get(payment_id)
        self._logger.info(
            "Payment rejected",
            extra={"payment_id": payment_id, "admin": admin.id},
        )
        self._notify("payment_rejected", payment["payer_id"], payment)
        return payment

    def admin_delete(self, payment_id: str, admin: CurrentUser) -> None:
        """Remove an attestation record. Has no effect on the offer or request."""
        require_admin(admin)
        self.get(payment_id)
        self._store.delete_payment(payment_id)
        self._logger.info(
            "Payment attestation deleted",
            extra={"payment_id": payment_id, "admin": admin.id},
        )
