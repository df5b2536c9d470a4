"""Contract state machine and bilateral confirmation."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from escrowline.core.allocation import (
    AllocationRequest,
    allocate,
    check_budget_increase,
    compute_commission,
    percentage_of,
)
from escrowline.core.disputes import DisputeEngine
from escrowline.core.escrow import FUNDED_PAYMENT_STATUSES, EscrowLedger
from escrowline.core.jobs import filled_slots, release_allocation, sync_job_status
from escrowline.core.ledger import BalanceLedger
from escrowline.core.service import Service
from escrowline.core.transitions import CONTRACT_TRANSITIONS, JOB_TRANSITIONS, PAYMENT_TRANSITIONS
from escrowline.db.base import utcnow
from escrowline.db.models import Contract, Job, Proposal, User
from escrowline.errors import ForbiddenError, InvalidTransitionError, ValidationError
from escrowline.types import ActorRole, ContractStatus, EvidenceAttachment, to_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CONFIRMABLE_STATUSES = {"accepted", "in_progress", "awaiting_confirmation"}
PRICE_EDITABLE_STATUSES = {"pending", "ready", "accepted"}
EXTENDABLE_STATUSES = {"accepted", "in_progress"}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class ContractLifecycleManager(Service):
    def _escrow(self) -> EscrowLedger:
        return EscrowLedger(self.session, settings=self.settings, outbox=self.outbox)

    def _load_for_update(self, contract: int | Contract) -> Contract:
        locked = self.repo.resolve_contract(contract, lock=True)
        if locked.status == "disputed":
            raise InvalidTransitionError("contract is frozen by an open dispute", contract_id=locked.id)
        return locked

    def _require_party(self, contract: Contract, actor: User, *, allow_admin: bool = False) -> ActorRole:
        role = contract.party_role(actor.id)
        if role is None:
            if allow_admin and actor.is_admin:
                return "admin"
            raise ForbiddenError("user is not a party to this contract", contract_id=contract.id)
        return role

    def _move(self, contract: Contract, target: ContractStatus) -> None:
        CONTRACT_TRANSITIONS.ensure(contract.status, target)
        logger.info("Contract %s status %s -> %s", contract.id, contract.status, target)
        contract.status = target

    def _reprice(self, contract: Contract, job: Job, new_payable: Decimal) -> Decimal:
        """Set a new payable amount, keep the job allocation in step, return the change in total price."""
        delta = new_payable - contract.payable_amount
        check_budget_increase(budget=Decimal(job.budget), allocated_total=Decimal(job.allocated_total), increase=delta)
        old_total = Decimal(contract.total_price)
        if contract.allocated_amount is not None:
            contract.allocated_amount = new_payable
        contract.price = new_payable
        contract.commission = compute_commission(new_payable, self.settings.commission_rate)
        contract.total_price = contract.price + contract.commission
        contract.percentage_of_budget = percentage_of(new_payable, Decimal(job.budget))
        job.allocated_total = Decimal(job.allocated_total) + delta
        return contract.total_price - old_total

    def _settle_escrow_change(self, contract: Contract, total_delta: Decimal, *, reason: str) -> None:
        """Charge or refund the client when a funded contract changes price."""
        if total_delta == ZERO:
            return
        payment = self.repo.primary_payment(contract.id, lock=True)
        if payment is None or payment.status not in FUNDED_PAYMENT_STATUSES:
            return
        ledger = BalanceLedger(self.session)
        if total_delta > ZERO:
            ledger.debit(
                contract.client_id,
                total_delta,
                tx_type="adjustment",
                description=f"Escrow top-up for contract #{contract.id}: {reason}",
                contract_id=contract.id,
                payment_id=payment.id,
            )
        else:
            ledger.credit(
                contract.client_id,
                -total_delta,
                tx_type="refund",
                description=f"Escrow reduction for contract #{contract.id}: {reason}",
                contract_id=contract.id,
                payment_id=payment.id,
            )
        payment.amount = Decimal(payment.amount) + total_delta
        payment.platform_fee = contract.commission

    # creation

    def create_contract(
        self,
        proposal: int | Proposal,
        *,
        allocated_amount: Decimal | None = None,
        end_date: datetime | None = None,
    ) -> Contract:
        """Turn an approved proposal into a pending contract.

        The job row is locked for the whole computation so concurrent approvals
        see each other's allocations.
        """
        with self.unit():
            resolved = self.repo.resolve_proposal(proposal, lock=True)
            if resolved.status != "approved":
                raise InvalidTransitionError("proposal must be approved first", proposal_id=resolved.id)
            job = self.repo.resolve_job(resolved.job_id, lock=True)
            contracts = self.repo.list_contracts_for_job(job.id)
            if any(contract.proposal_id == resolved.id for contract in contracts):
                raise InvalidTransitionError("proposal already has a contract", proposal_id=resolved.id)
            if job.status not in {"open", "in_progress"}:
                raise InvalidTransitionError(f"job is {job.status}", job_id=job.id)

            allocation = allocate(
                AllocationRequest(
                    budget=Decimal(job.budget),
                    allocated_total=Decimal(job.allocated_total),
                    max_workers=job.max_workers,
                    filled_slots=filled_slots(contracts),
                    proposed_price=to_money(resolved.proposed_price) if resolved.proposed_price is not None else None,
                    override_amount=to_money(allocated_amount) if allocated_amount is not None else None,
                )
            )
            amount = allocation.allocated_amount
            commission = compute_commission(amount, self.settings.commission_rate)
            contract = self.repo.add(
                Contract(
                    job_id=job.id,
                    proposal_id=resolved.id,
                    client_id=job.client_id,
                    worker_id=resolved.worker_id,
                    price=amount,
                    commission=commission,
                    total_price=amount + commission,
                    allocated_amount=amount if job.max_workers > 1 else None,
                    percentage_of_budget=allocation.percentage_of_budget,
                    status="pending",
                    payment_status="pending",
                    escrow_status="pending",
                    end_date=end_date,
                    original_end_date=end_date,
                    extension_history_json=[],
                    price_history_json=[],
                )
            )
            job.allocated_total = Decimal(job.allocated_total) + amount
            job.selected_workers_json = [*job.selected_workers, resolved.worker_id]
            if job.status == "open":
                JOB_TRANSITIONS.ensure(job.status, "in_progress")
                job.status = "in_progress"
            self.notify(
                contract.worker_id,
                "contract",
                "New contract",
                f"You were hired for '{job.title}' for {amount} {self.settings.currency}.",
            )
        logger.info(
            "Contract %s created job=%s worker=%s amount=%s commission=%s",
            contract.id,
            job.id,
            contract.worker_id,
            amount,
            commission,
        )
        return contract

    # reads

    def get(self, contract: int | Contract, actor: User) -> Contract:
        resolved = self.repo.resolve_contract(contract)
        self._require_party(resolved, actor, allow_admin=True)
        return resolved

    def list_for_user(self, user: User, *, status: str | None = None) -> list[Contract]:
        return self.repo.list_contracts_for_user(user.id, status=status)

    # progress

    def accept(self, contract: int | Contract, worker: User) -> Contract:
        with self.unit():
            locked = self._load_for_update(contract)
            if self._require_party(locked, worker) != "worker":
                raise ForbiddenError("only the worker can accept the contract", contract_id=locked.id)
            if locked.status == "pending":
                raise InvalidTransitionError("contract escrow is not funded yet", contract_id=locked.id)
            self._move(locked, "accepted")
            self.notify(locked.client_id, "contract", "Contract accepted", f"Contract #{locked.id} was accepted.")
        return locked

    def start(self, contract: int | Contract, actor: User) -> Contract:
        with self.unit():
            locked = self._load_for_update(contract)
            self._require_party(locked, actor)
            self._move(locked, "in_progress")
            locked.start_date = utcnow()
        return locked

    def confirm_completion(self, contract: int | Contract, actor: User) -> Contract:
        """Record one party's confirmation; the second one completes the contract.

        A repeat confirmation from the same party is a no-op while the contract is
        live. Confirmations are serialized on the contract row, so completion and
        escrow release happen exactly once.
        """
        with self.unit():
            locked = self._load_for_update(contract)
            role = self._require_party(locked, actor)
            if locked.status not in CONFIRMABLE_STATUSES:
                raise InvalidTransitionError(
                    f"contract cannot be confirmed while {locked.status}",
                    contract_id=locked.id,
                    current=locked.status,
                )

            now = utcnow()
            if role == "client":
                if locked.client_confirmed:
                    return locked
                locked.client_confirmed = True
                locked.client_confirmed_at = now
                counterpart = locked.worker_id
            else:
                if locked.doer_confirmed:
                    return locked
                locked.doer_confirmed = True
                locked.doer_confirmed_at = now
                counterpart = locked.client_id

            if locked.status != "awaiting_confirmation":
                self._move(locked, "awaiting_confirmation")

            if locked.client_confirmed and locked.doer_confirmed:
                self._move(locked, "completed")
                locked.completed_at = now
                self._escrow().release(locked)
                job = self.repo.resolve_job(locked.job_id, lock=True)
                sync_job_status(job, self.repo.list_contracts_for_job(job.id))
                for user_id in (locked.client_id, locked.worker_id):
                    self.notify(user_id, "contract", "Contract completed", f"Contract #{locked.id} is complete.")
            else:
                self.notify(
                    counterpart,
                    "contract",
                    "Completion confirmed",
                    f"The other party confirmed contract #{locked.id}; your confirmation is pending.",
                )
        logger.info("Contract %s confirmed by %s (%s)", locked.id, actor.id, role)
        return locked

    # extensions

    def request_extension(
        self,
        contract: int | Contract,
        client: User,
        *,
        days: int,
        amount: Decimal = ZERO,
        notes: str = "",
    ) -> Contract:
        if days < 1:
            raise ValidationError("extension must add at least one day", days=days)
        amount = to_money(amount)
        if amount < ZERO:
            raise ValidationError("extension amount cannot be negative")

        with self.unit():
            locked = self._load_for_update(contract)
            if self._require_party(locked, client) != "client":
                raise ForbiddenError("only the client can request an extension", contract_id=locked.id)
            if locked.status not in EXTENDABLE_STATUSES:
                raise InvalidTransitionError(f"contract cannot be extended while {locked.status}", contract_id=locked.id)
            if locked.has_been_extended:
                raise InvalidTransitionError("contract was already extended", contract_id=locked.id)
            if locked.extension_requested_by is not None:
                raise InvalidTransitionError("an extension request is already pending", contract_id=locked.id)
            if amount > ZERO:
                job = self.repo.resolve_job(locked.job_id)
                check_budget_increase(
                    budget=Decimal(job.budget),
                    allocated_total=Decimal(job.allocated_total),
                    increase=amount,
                )

            locked.extension_requested_by = client.id
            locked.extension_requested_at = utcnow()
            locked.extension_days = days
            locked.extension_amount = amount
            locked.extension_notes = notes
            self.notify(
                locked.worker_id,
                "contract",
                "Extension requested",
                f"An extension of {days} day(s) was requested for contract #{locked.id}.",
            )
        return locked

    def approve_extension(self, contract: int | Contract, actor: User) -> Contract:
        with self.unit():
            locked = self._load_for_update(contract)
            self._require_party(locked, actor)
            if locked.extension_requested_by is None:
                raise InvalidTransitionError("no pending extension request", contract_id=locked.id)
            if locked.extension_requested_by == actor.id:
                raise ForbiddenError("the requester cannot approve their own extension", contract_id=locked.id)
            if locked.status not in EXTENDABLE_STATUSES:
                raise InvalidTransitionError(f"contract cannot be extended while {locked.status}", contract_id=locked.id)

            days = locked.extension_days or 0
            amount = Decimal(locked.extension_amount or ZERO)
            now = utcnow()
            base_end = locked.end_date or now
            if locked.original_end_date is None:
                locked.original_end_date = locked.end_date or now
            locked.end_date = base_end + timedelta(days=days)

            if amount > ZERO:
                job = self.repo.resolve_job(locked.job_id, lock=True)
                total_delta = self._reprice(locked, job, locked.payable_amount + amount)
                self._settle_escrow_change(locked, total_delta, reason=f"extension of {days} day(s)")

            locked.has_been_extended = True
            locked.extension_approved_by = actor.id
            locked.extension_approved_at = now
            locked.extension_history_json = [
                *(locked.extension_history_json or []),
                {
                    "days": days,
                    "amount": str(amount),
                    "notes": locked.extension_notes,
                    "requestedBy": locked.extension_requested_by,
                    "requestedAt": _iso(locked.extension_requested_at),
                    "approvedBy": actor.id,
                    "approvedAt": now.isoformat(),
                    "newEndDate": _iso(locked.end_date),
                },
            ]
            locked.extension_requested_by = None
            locked.extension_requested_at = None
            self.notify(locked.client_id, "contract", "Extension approved", f"Contract #{locked.id} was extended.")
        logger.info("Contract %s extended by %s day(s), amount=%s", locked.id, days, amount)
        return locked

    def reject_extension(self, contract: int | Contract, actor: User, *, reason: str = "") -> Contract:
        with self.unit():
            locked = self._load_for_update(contract)
            self._require_party(locked, actor)
            if locked.extension_requested_by is None:
                raise InvalidTransitionError("no pending extension request", contract_id=locked.id)
            if locked.extension_requested_by == actor.id:
                raise ForbiddenError("the requester cannot reject their own extension", contract_id=locked.id)
            requester = locked.extension_requested_by
            locked.extension_history_json = [
                *(locked.extension_history_json or []),
                {
                    "days": locked.extension_days,
                    "amount": str(locked.extension_amount or ZERO),
                    "requestedBy": requester,
                    "rejectedBy": actor.id,
                    "rejectedAt": utcnow().isoformat(),
                    "reason": reason,
                },
            ]
            locked.extension_requested_by = None
            locked.extension_requested_at = None
            locked.extension_days = None
            locked.extension_amount = None
            locked.extension_notes = ""
            self.notify(requester, "contract", "Extension rejected", f"Extension for contract #{locked.id} was rejected.")
        return locked

    # price

    def modify_price(self, contract: int | Contract, client: User, *, new_price: Decimal, reason: str) -> Contract:
        new_price = to_money(new_price)
        if new_price <= ZERO:
            raise ValidationError("price must be positive", new_price=str(new_price))
        if not reason.strip():
            raise ValidationError("a reason is required to change the price")

        with self.unit():
            locked = self._load_for_update(contract)
            if self._require_party(locked, client) != "client":
                raise ForbiddenError("only the client can change the price", contract_id=locked.id)
            if locked.status not in PRICE_EDITABLE_STATUSES:
                raise InvalidTransitionError(f"price cannot change while {locked.status}", contract_id=locked.id)

            previous = locked.payable_amount
            if new_price == previous:
                return locked
            job = self.repo.resolve_job(locked.job_id, lock=True)
            total_delta = self._reprice(locked, job, new_price)
            self._settle_escrow_change(locked, total_delta, reason=reason.strip())
            locked.price_history_json = [
                *(locked.price_history_json or []),
                {
                    "previousPrice": str(previous),
                    "newPrice": str(new_price),
                    "reason": reason.strip(),
                    "changedBy": client.id,
                    "changedAt": utcnow().isoformat(),
                },
            ]
            self.notify(
                locked.worker_id,
                "contract",
                "Price changed",
                f"Contract #{locked.id} price changed from {previous} to {new_price}.",
            )
        logger.info("Contract %s price %s -> %s", locked.id, previous, new_price)
        return locked

    # cancellation

    def cancel(self, contract: int | Contract, actor: User, *, reason: str = "") -> Contract:
        with self.unit():
            locked = self._load_for_update(contract)
            self._require_party(locked, actor, allow_admin=True)
            self._move(locked, "cancelled")
            locked.cancellation_reason = reason

            payment = self.repo.primary_payment(locked.id, lock=True)
            if payment is not None and payment.status in FUNDED_PAYMENT_STATUSES:
                PAYMENT_TRANSITIONS.ensure(payment.status, "refunded")
                refund = Decimal(payment.amount)
                BalanceLedger(self.session).credit(
                    locked.client_id,
                    refund,
                    tx_type="refund",
                    description=f"Refund for cancelled contract #{locked.id}",
                    contract_id=locked.id,
                    payment_id=payment.id,
                )
                payment.status = "refunded"
                payment.refunded_amount = refund
                locked.escrow_status = "refunded"
                locked.payment_status = "refunded"

            job = self.repo.resolve_job(locked.job_id, lock=True)
            release_allocation(job, locked)
            sync_job_status(job, self.repo.list_contracts_for_job(job.id))
            counterpart = locked.worker_id if actor.id == locked.client_id else locked.client_id
            self.notify(counterpart, "contract", "Contract cancelled", f"Contract #{locked.id} was cancelled.")
        logger.info("Contract %s cancelled by %s", locked.id, actor.id)
        return locked

    # disputes

    def open_dispute(
        self,
        contract: int | Contract,
        actor: User,
        *,
        reason: str,
        description: str = "",
        category: str = "other",
        priority: str = "medium",
        evidence: list[EvidenceAttachment] | None = None,
    ) -> Contract:
        engine = DisputeEngine(self.session, settings=self.settings, outbox=self.outbox)
        with self.unit():
            dispute = engine.open_dispute(
                contract,
                actor,
                reason=reason,
                description=description,
                category=category,
                priority=priority,
                evidence=evidence,
            )
            resolved = self.repo.resolve_contract(dispute.contract_id)
        return resolved

