from __future__ import annotations

import logging
from decimal import Decimal

from escrowline.core.contracts import ContractLifecycleManager
from escrowline.core.jobs import filled_slots
from escrowline.core.service import Service
from escrowline.core.transitions import PROPOSAL_TRANSITIONS
from escrowline.db.models import Contract, Job, Proposal, User
from escrowline.errors import (
    CapacityExceededError,
    ForbiddenError,
    InvalidTransitionError,
    ValidationError,
)
from escrowline.types import to_money

logger = logging.getLogger(__name__)

PROPOSABLE_JOB_STATUSES = {"open", "in_progress"}


class ProposalDesk(Service):
    def _move(self, proposal: Proposal, target: str) -> None:
        PROPOSAL_TRANSITIONS.ensure(proposal.status, target)
        proposal.status = target

    def submit_proposal(
        self,
        job: int | Job,
        worker: User,
        *,
        proposed_price: Decimal | None = None,
        message: str = "",
    ) -> Proposal:
        if proposed_price is not None:
            proposed_price = to_money(proposed_price)
            if proposed_price <= 0:
                raise ValidationError("proposed price must be positive")

        with self.unit():
            resolved = self.repo.resolve_job(job)
            if resolved.client_id == worker.id:
                raise ForbiddenError("clients cannot propose on their own job", job_id=resolved.id)
            if resolved.status not in PROPOSABLE_JOB_STATUSES:
                raise InvalidTransitionError(f"job is {resolved.status}", job_id=resolved.id)
            if filled_slots(self.repo.list_contracts_for_job(resolved.id)) >= resolved.max_workers:
                raise CapacityExceededError("job is fully staffed", job_id=resolved.id)
            if self.repo.find_live_proposal(resolved.id, worker.id) is not None:
                raise InvalidTransitionError("worker already has a proposal on this job", job_id=resolved.id)

            proposal = self.repo.add(
                Proposal(
                    job_id=resolved.id,
                    worker_id=worker.id,
                    proposed_price=proposed_price,
                    message=message,
                    status="pending",
                )
            )
            self.notify(resolved.client_id, "proposal", "New proposal", f"New proposal on '{resolved.title}'.")
        logger.info("Proposal %s submitted job=%s worker=%s price=%s", proposal.id, resolved.id, worker.id, proposed_price)
        return proposal

    def get(self, proposal: int | Proposal) -> Proposal:
        return self.repo.resolve_proposal(proposal)

    def list_for_job(self, job: int | Job, *, status: str | None = None) -> list[Proposal]:
        resolved = self.repo.resolve_job(job)
        return self.repo.list_proposals(resolved.id, status=status)

    def approve_proposal(
        self,
        proposal: int | Proposal,
        client: User,
        *,
        allocated_amount: Decimal | None = None,
    ) -> Contract:
        """Approve a proposal and create its contract in one unit.

        If the contract cannot be created the proposal stays pending.
        """
        contracts = ContractLifecycleManager(self.session, settings=self.settings, outbox=self.outbox)
        with self.unit():
            locked = self.repo.resolve_proposal(proposal, lock=True)
            job = self.repo.resolve_job(locked.job_id, lock=True)
            if job.client_id != client.id and not client.is_admin:
                raise ForbiddenError("only the job owner can approve proposals", job_id=job.id)
            if filled_slots(self.repo.list_contracts_for_job(job.id)) >= job.max_workers:
                raise CapacityExceededError("job is fully staffed", job_id=job.id, max_workers=job.max_workers)
            self._move(locked, "approved")
            contract = contracts.create_contract(locked, allocated_amount=allocated_amount)

            if filled_slots(self.repo.list_contracts_for_job(job.id)) >= job.max_workers:
                for other in self.repo.list_proposals(job.id, status="pending"):
                    self._move(other, "rejected")
                    other.rejection_reason = "job fully staffed"
                    self.notify(other.worker_id, "proposal", "Proposal closed", f"'{job.title}' is fully staffed.")
        logger.info("Proposal %s approved, contract %s", locked.id, contract.id)
        return contract

    def reject_proposal(self, proposal: int | Proposal, client: User, *, reason: str = "") -> Proposal:
        with self.unit():
            locked = self.repo.resolve_proposal(proposal, lock=True)
            job = self.repo.resolve_job(locked.job_id)
            if job.client_id != client.id and not client.is_admin:
                raise ForbiddenError("only the job owner can reject proposals", job_id=job.id)
            self._move(locked, "rejected")
            locked.rejection_reason = reason
            self.notify(locked.worker_id, "proposal", "Proposal rejected", reason or f"Your proposal on '{job.title}' was rejected.")
        return locked

    def withdraw_proposal(self, proposal: int | Proposal, worker: User) -> Proposal:
        with self.unit():
            locked = self.repo.resolve_proposal(proposal, lock=True)
            if locked.worker_id != worker.id:
                raise ForbiddenError("only the proposing worker can withdraw", proposal_id=locked.id)
            self._move(locked, "withdrawn")
        return locked
