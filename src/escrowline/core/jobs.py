from __future__ import annotations

import logging
from decimal import Decimal

from escrowline.core.service import Service
from escrowline.core.transitions import ACTIVE_CONTRACT_STATUSES, JOB_TRANSITIONS
from escrowline.db.models import Contract, Job, User
from escrowline.errors import ForbiddenError, InvalidTransitionError, ValidationError
from escrowline.types import to_money

logger = logging.getLogger(__name__)


def filled_slots(contracts: list[Contract]) -> int:
    return sum(1 for contract in contracts if contract.status in ACTIVE_CONTRACT_STATUSES)


def derived_job_status(job: Job, contracts: list[Contract]) -> str:
    if not contracts:
        return job.status
    live = [contract for contract in contracts if contract.status != "cancelled"]
    if not live:
        return "open"
    if all(contract.status == "completed" for contract in live):
        return "completed"
    return "in_progress"


def sync_job_status(job: Job, contracts: list[Contract]) -> str:
    """Move the job to the status its contracts imply, when the job table allows it."""
    target = derived_job_status(job, contracts)
    if target != job.status and JOB_TRANSITIONS.can(job.status, target):
        logger.info("Job %s status %s -> %s", job.id, job.status, target)
        job.status = target
    return job.status


def release_allocation(job: Job, contract: Contract) -> None:
    job.allocated_total = max(Decimal(job.allocated_total) - contract.payable_amount, Decimal("0"))
    workers = job.selected_workers
    if contract.worker_id in workers:
        workers.remove(contract.worker_id)
    job.selected_workers_json = workers


class JobCatalog(Service):
    def create_job(
        self,
        client: int | User,
        *,
        title: str,
        budget: Decimal,
        max_workers: int = 1,
        description: str = "",
    ) -> Job:
        title = title.strip()
        if not title:
            raise ValidationError("job title is required")
        budget = to_money(budget)
        if budget <= 0:
            raise ValidationError("job budget must be positive", budget=str(budget))
        if max_workers < 1:
            raise ValidationError("max_workers must be at least 1", max_workers=max_workers)

        with self.unit():
            owner = self.repo.resolve_user(client)
            job = self.repo.add(
                Job(
                    client_id=owner.id,
                    title=title,
                    description=description,
                    budget=budget,
                    status="open",
                    max_workers=max_workers,
                    selected_workers_json=[],
                    allocated_total=Decimal("0"),
                )
            )
        logger.info("Job %s created by user %s budget=%s max_workers=%s", job.id, owner.id, budget, max_workers)
        return job

    def get_job(self, job: int | Job) -> Job:
        return self.repo.resolve_job(job)

    def list_jobs(self, *, status: str | None = None, client_id: int | None = None, limit: int = 50) -> list[Job]:
        return self.repo.list_jobs(status=status, client_id=client_id, limit=limit)

    def cancel_job(self, job: int | Job, actor: User) -> Job:
        with self.unit():
            locked = self.repo.resolve_job(job, lock=True)
            if locked.client_id != actor.id and not actor.is_admin:
                raise ForbiddenError("only the job owner can cancel it", job_id=locked.id)
            contracts = self.repo.list_contracts_for_job(locked.id)
            if any(contract.status != "cancelled" for contract in contracts):
                raise InvalidTransitionError("job has active contracts", job_id=locked.id)
            JOB_TRANSITIONS.ensure(locked.status, "cancelled")
            locked.status = "cancelled"
            for proposal in self.repo.list_proposals(locked.id, status="pending"):
                proposal.status = "rejected"
                proposal.rejection_reason = "job cancelled"
                self.notify(proposal.worker_id, "proposal", "Job cancelled", f"Job '{locked.title}' was cancelled.")
        logger.info("Job %s cancelled by user %s", locked.id, actor.id)
        return locked

