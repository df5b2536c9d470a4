"""Dispute threads that freeze a contract's escrow until an admin resolves them."""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from escrowline.core.escrow import FUNDED_PAYMENT_STATUSES
from escrowline.core.jobs import release_allocation, sync_job_status
from escrowline.core.ledger import BalanceLedger
from escrowline.core.service import Service
from escrowline.core.transitions import CONTRACT_TRANSITIONS, DISPUTE_TRANSITIONS, PAYMENT_TRANSITIONS
from escrowline.db.base import utcnow
from escrowline.db.models import Contract, Dispute, Payment, User
from escrowline.errors import ForbiddenError, InvalidTransitionError, ValidationError
from escrowline.types import CENT, EvidenceAttachment

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")
OUTCOME_STATUS = {
    "release_to_worker": "resolved_released",
    "refund_to_client": "resolved_refunded",
    "partial_split": "resolved_partial",
}
CATEGORIES = {
    "service_not_delivered",
    "incomplete_work",
    "quality_issues",
    "payment_issues",
    "breach_of_contract",
    "other",
}
PRIORITIES = {"low", "medium", "high", "urgent"}


def _escrow_payment_status(contract: Contract) -> str:
    return {"held_escrow": "held_escrow", "released": "released"}.get(contract.escrow_status, "pending")


class DisputeEngine(Service):
    def _log(self, dispute: Dispute, action: str, actor: User, **details: Any) -> None:
        dispute.logs_json = [
            *(dispute.logs_json or []),
            {
                "action": action,
                "performedBy": actor.id,
                "timestamp": utcnow().isoformat(),
                "details": details,
            },
        ]

    def _load_open(self, dispute: int | Dispute) -> Dispute:
        locked = self.repo.resolve_dispute(dispute, lock=True)
        if locked.is_terminal:
            raise InvalidTransitionError(f"dispute is already {locked.status}", dispute_id=locked.id)
        return locked

    def _is_participant(self, dispute: Dispute, actor: User) -> bool:
        return actor.id in (dispute.initiator_id, dispute.defendant_id) or actor.is_admin

    def _set_status(self, dispute: Dispute, target: str) -> None:
        DISPUTE_TRANSITIONS.ensure(dispute.status, target)
        logger.info("Dispute %s status %s -> %s", dispute.id, dispute.status, target)
        dispute.status = target

    def _complete_by_resolution(self, contract: Contract) -> None:
        CONTRACT_TRANSITIONS.ensure(contract.status, "completed")
        now = utcnow()
        if not contract.client_confirmed:
            contract.client_confirmed = True
            contract.client_confirmed_at = now
        if not contract.doer_confirmed:
            contract.doer_confirmed = True
            contract.doer_confirmed_at = now
        contract.status = "completed"
        contract.completed_at = now

    def open_dispute(
        self,
        contract: int | Contract,
        initiator: User,
        *,
        reason: str,
        description: str = "",
        category: str = "other",
        priority: str = "medium",
        evidence: list[EvidenceAttachment] | None = None,
    ) -> Dispute:
        if not reason.strip():
            raise ValidationError("a reason is required to open a dispute")
        if category not in CATEGORIES:
            raise ValidationError(f"unknown dispute category '{category}'")
        if priority not in PRIORITIES:
            raise ValidationError(f"unknown dispute priority '{priority}'")

        with self.unit():
            locked = self.repo.resolve_contract(contract, lock=True)
            role = locked.party_role(initiator.id)
            if role is None:
                raise ForbiddenError("only a party to the contract can open a dispute", contract_id=locked.id)
            if self.repo.find_open_dispute(locked.id) is not None:
                raise InvalidTransitionError("contract already has an open dispute", contract_id=locked.id)
            CONTRACT_TRANSITIONS.ensure(locked.status, "disputed")

            payment = self.repo.primary_payment(locked.id, lock=True)
            if payment is not None and payment.status in FUNDED_PAYMENT_STATUSES:
                payment.status_before_dispute = payment.status
                PAYMENT_TRANSITIONS.ensure(payment.status, "disputed")
                payment.status = "disputed"

            locked.status_before_dispute = locked.status
            locked.status = "disputed"
            locked.payment_status = "disputed"

            dispute = self.repo.add(
                Dispute(
                    contract_id=locked.id,
                    payment_id=payment.id if payment is not None else None,
                    initiator_id=initiator.id,
                    defendant_id=locked.worker_id if role == "client" else locked.client_id,
                    category=category,
                    priority=priority,
                    reason=reason.strip(),
                    detailed_description=description,
                    evidence_json=[item.model_dump(mode="json", by_alias=True) for item in evidence or []],
                    messages_json=[],
                    logs_json=[],
                    status="open",
                )
            )
            self._log(dispute, "opened", initiator, category=category, reason=dispute.reason)
            self.notify(
                dispute.defendant_id,
                "dispute",
                "Dispute opened",
                f"A dispute was opened on contract #{locked.id}: {dispute.reason}",
            )
        logger.info("Dispute %s opened on contract %s by user %s", dispute.id, locked.id, initiator.id)
        return dispute

    def get(self, dispute: int | Dispute, actor: User) -> Dispute:
        resolved = self.repo.resolve_dispute(dispute)
        if not self._is_participant(resolved, actor):
            raise ForbiddenError("user is not part of this dispute", dispute_id=resolved.id)
        return resolved

    def list_for_user(self, user: User, *, status: str | None = None) -> list[Dispute]:
        return self.repo.list_disputes(user_id=user.id, status=status)

    def list_all(self, admin: User, *, status: str | None = None) -> list[Dispute]:
        self.require_admin(admin)
        return self.repo.list_disputes(status=status)

    def post_message(
        self,
        dispute: int | Dispute,
        sender: User,
        *,
        text: str,
        attachments: list[EvidenceAttachment] | None = None,
    ) -> Dispute:
        if not text.strip():
            raise ValidationError("message cannot be empty")
        with self.unit():
            locked = self.repo.resolve_dispute(dispute, lock=True)
            if not self._is_participant(locked, sender):
                raise ForbiddenError("user is not part of this dispute", dispute_id=locked.id)
            if locked.is_terminal:
                raise InvalidTransitionError(f"dispute is already {locked.status}", dispute_id=locked.id)
            locked.messages_json = [
                *(locked.messages_json or []),
                {
                    "from": sender.id,
                    "message": text.strip(),
                    "attachments": [item.model_dump(mode="json", by_alias=True) for item in attachments or []],
                    "isAdmin": sender.is_admin,
                    "createdAt": utcnow().isoformat(),
                },
            ]
            self._log(locked, "message_added", sender)
            for user_id in {locked.initiator_id, locked.defendant_id} - {sender.id}:
                self.notify(user_id, "dispute", "New dispute message", f"New message on dispute #{locked.id}.")
        return locked

    def assign(self, dispute: int | Dispute, admin: User, *, assignee: User | None = None) -> Dispute:
        self.require_admin(admin)
        target = assignee or admin
        if not target.is_admin:
            raise ValidationError("disputes can only be assigned to admins", user_id=target.id)
        with self.unit():
            locked = self._load_open(dispute)
            locked.assigned_to = target.id
            if locked.status == "open":
                self._set_status(locked, "in_review")
            self._log(locked, "assigned", admin, assignedTo=target.id)
        return locked

    def set_status(self, dispute: int | Dispute, admin: User, *, status: str) -> Dispute:
        self.require_admin(admin)
        if status not in {"in_review", "awaiting_info"}:
            raise ValidationError("status can only be set to in_review or awaiting_info", status=status)
        with self.unit():
            locked = self._load_open(dispute)
            previous = locked.status
            self._set_status(locked, status)
            self._log(locked, "status_changed", admin, previous=previous, status=status)
            if status == "awaiting_info":
                for user_id in (locked.initiator_id, locked.defendant_id):
                    self.notify(user_id, "dispute", "More information needed", f"Dispute #{locked.id} needs more information.")
        return locked

    def set_priority(self, dispute: int | Dispute, admin: User, *, priority: str) -> Dispute:
        self.require_admin(admin)
        if priority not in PRIORITIES:
            raise ValidationError(f"unknown dispute priority '{priority}'")
        with self.unit():
            locked = self._load_open(dispute)
            previous = locked.priority
            locked.priority = priority
            self._log(locked, "priority_changed", admin, previous=previous, priority=priority)
        return locked

    def resolve(
        self,
        dispute: int | Dispute,
        admin: User,
        *,
        outcome: str,
        resolution: str,
        worker_ratio: Decimal | None = None,
    ) -> Dispute:
        """Close the dispute and settle the frozen escrow.

        ``partial_split`` credits the worker ``round(base * worker_ratio)`` and
        refunds the remainder to the client, where base is the escrowed amount
        minus the platform fee.
        """
        self.require_admin(admin)
        if outcome not in OUTCOME_STATUS:
            raise ValidationError(f"unknown resolution outcome '{outcome}'")
        if not resolution.strip():
            raise ValidationError("a resolution text is required")
        if outcome == "partial_split":
            if worker_ratio is None or not (ZERO < Decimal(worker_ratio) < ONE):
                raise ValidationError("worker_ratio must be between 0 and 1 for a partial split")
            worker_ratio = Decimal(worker_ratio)

        with self.unit():
            locked = self._load_open(dispute)
            contract = self.repo.resolve_contract(locked.contract_id, lock=True)
            payment = self.repo.primary_payment(contract.id, lock=True)
            funded = payment is not None and payment.status == "disputed"
            if outcome != "refund_to_client" and not funded:
                raise InvalidTransitionError("contract escrow was never funded", contract_id=contract.id)

            self._set_status(locked, OUTCOME_STATUS[outcome])
            if outcome == "release_to_worker":
                self._release_to_worker(contract, payment)
            elif outcome == "refund_to_client":
                self._refund_to_client(contract, payment if funded else None, locked)
            else:
                self._split(contract, payment, locked, worker_ratio)

            locked.resolution = resolution.strip()
            locked.resolution_type = outcome
            locked.worker_ratio = worker_ratio
            locked.resolved_by = admin.id
            locked.resolved_at = utcnow()
            self._log(locked, "resolved", admin, outcome=outcome, workerRatio=str(worker_ratio) if worker_ratio else None)

            job = self.repo.resolve_job(contract.job_id, lock=True)
            if contract.status == "cancelled":
                release_allocation(job, contract)
            sync_job_status(job, self.repo.list_contracts_for_job(job.id))
            for user_id in (locked.initiator_id, locked.defendant_id):
                self.notify(user_id, "dispute", "Dispute resolved", f"Dispute #{locked.id} was resolved: {locked.resolution}")
        logger.info("Dispute %s resolved as %s by admin %s", locked.id, outcome, admin.id)
        return locked

    def _release_to_worker(self, contract: Contract, payment: Payment) -> None:
        self._complete_by_resolution(contract)
        PAYMENT_TRANSITIONS.ensure(payment.status, payment.status_before_dispute)
        payment.status = payment.status_before_dispute
        payment.escrow_released_at = utcnow()
        contract.escrow_status = "released"
        contract.payment_status = "released"

    def _refund_to_client(self, contract: Contract, payment: Payment | None, dispute: Dispute) -> None:
        CONTRACT_TRANSITIONS.ensure(contract.status, "cancelled")
        contract.status = "cancelled"
        contract.cancellation_reason = f"Refunded by dispute #{dispute.id}"
        if payment is None:
            contract.payment_status = "pending"
            return
        contract.payment_status = "refunded"
        refund = payment.escrow_net
        BalanceLedger(self.session).credit(
            contract.client_id,
            refund,
            tx_type="refund",
            description=f"Dispute #{dispute.id} refund for contract #{contract.id}",
            contract_id=contract.id,
            payment_id=payment.id,
            metadata={"disputeId": dispute.id, "outcome": "refund_to_client"},
        )
        PAYMENT_TRANSITIONS.ensure(payment.status, "refunded")
        payment.status = "refunded"
        payment.refunded_amount = refund
        contract.escrow_status = "refunded"

    def _split(self, contract: Contract, payment: Payment, dispute: Dispute, worker_ratio: Decimal) -> None:
        base = payment.escrow_net
        worker_amount = (base * worker_ratio).quantize(CENT, rounding=ROUND_HALF_UP)
        client_amount = base - worker_amount
        ledger = BalanceLedger(self.session)
        metadata = {
            "disputeId": dispute.id,
            "outcome": "partial_split",
            "workerRatio": str(worker_ratio),
            "escrowNet": str(base),
        }
        if worker_amount > ZERO:
            ledger.credit(
                contract.worker_id,
                worker_amount,
                tx_type="payment",
                description=f"Dispute #{dispute.id} partial payout for contract #{contract.id}",
                contract_id=contract.id,
                payment_id=payment.id,
                metadata=metadata,
            )
        if client_amount > ZERO:
            ledger.credit(
                contract.client_id,
                client_amount,
                tx_type="refund",
                description=f"Dispute #{dispute.id} partial refund for contract #{contract.id}",
                contract_id=contract.id,
                payment_id=payment.id,
                metadata=metadata,
            )
        PAYMENT_TRANSITIONS.ensure(payment.status, "partially_refunded")
        payment.status = "partially_refunded"
        payment.refunded_amount = client_amount
        payment.worker_payment_amount = worker_amount
        self._complete_by_resolution(contract)
        contract.escrow_status = "released"
        contract.payment_status = "completed"

    def cancel(self, dispute: int | Dispute, actor: User, *, reason: str = "") -> Dispute:
        """Withdraw the dispute and restore the contract to where it was."""
        with self.unit():
            locked = self._load_open(dispute)
            if actor.id != locked.initiator_id and not actor.is_admin:
                raise ForbiddenError("only the initiator or an admin can cancel a dispute", dispute_id=locked.id)
            contract = self.repo.resolve_contract(locked.contract_id, lock=True)
            self._set_status(locked, "cancelled")

            restored = contract.status_before_dispute or "pending"
            CONTRACT_TRANSITIONS.ensure(contract.status, restored)
            contract.status = restored
            contract.status_before_dispute = ""
            contract.payment_status = _escrow_payment_status(contract)

            payment = self.repo.primary_payment(contract.id, lock=True)
            if payment is not None and payment.status == "disputed":
                PAYMENT_TRANSITIONS.ensure(payment.status, payment.status_before_dispute)
                payment.status = payment.status_before_dispute
                payment.status_before_dispute = ""
            self._log(locked, "cancelled", actor, reason=reason)
            for user_id in {locked.initiator_id, locked.defendant_id} - {actor.id}:
                self.notify(user_id, "dispute", "Dispute withdrawn", f"Dispute #{locked.id} was withdrawn.")
        logger.info("Dispute %s cancelled by user %s", locked.id, actor.id)
        return locked
