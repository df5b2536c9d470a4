from __future__ import annotations

import secrets
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from escrowline.db.models import (
    BalanceTransaction,
    Contract,
    Dispute,
    Job,
    Payment,
    PaymentProof,
    Proposal,
    User,
    WithdrawalRequest,
)
from escrowline.errors import NotFoundError

ModelT = TypeVar("ModelT")

OUTSTANDING_WITHDRAWAL_STATUSES = ("pending", "approved", "processing")
OPEN_DISPUTE_STATUSES = ("open", "in_review", "awaiting_info")


def generate_api_token() -> str:
    return f"esl_{secrets.token_hex(20)}"


class Repository:
    """Queries and row locks. Never commits; callers own the atomic unit."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, obj: ModelT) -> ModelT:
        self.session.add(obj)
        self.session.flush()
        return obj

    def _resolve(self, model: type[ModelT], ref: int | ModelT, *, lock: bool, label: str) -> ModelT:
        if isinstance(ref, model):
            if not lock:
                return ref
            ref = ref.id  # type: ignore[attr-defined]
        if lock:
            # Pending changes must reach the row before it is re-read.
            self.session.flush()
            statement = (
                select(model)
                .where(model.id == ref)  # type: ignore[attr-defined]
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            obj = self.session.scalar(statement)
        else:
            obj = self.session.get(model, ref)
        if obj is None:
            raise NotFoundError(f"{label} {ref} not found")
        return obj

    def resolve_user(self, ref: int | User, *, lock: bool = False) -> User:
        return self._resolve(User, ref, lock=lock, label="user")

    def resolve_job(self, ref: int | Job, *, lock: bool = False) -> Job:
        return self._resolve(Job, ref, lock=lock, label="job")

    def resolve_proposal(self, ref: int | Proposal, *, lock: bool = False) -> Proposal:
        return self._resolve(Proposal, ref, lock=lock, label="proposal")

    def resolve_contract(self, ref: int | Contract, *, lock: bool = False) -> Contract:
        return self._resolve(Contract, ref, lock=lock, label="contract")

    def resolve_payment(self, ref: int | Payment, *, lock: bool = False) -> Payment:
        return self._resolve(Payment, ref, lock=lock, label="payment")

    def resolve_proof(self, ref: int | PaymentProof, *, lock: bool = False) -> PaymentProof:
        return self._resolve(PaymentProof, ref, lock=lock, label="payment proof")

    def resolve_dispute(self, ref: int | Dispute, *, lock: bool = False) -> Dispute:
        return self._resolve(Dispute, ref, lock=lock, label="dispute")

    def resolve_withdrawal(self, ref: int | WithdrawalRequest, *, lock: bool = False) -> WithdrawalRequest:
        return self._resolve(WithdrawalRequest, ref, lock=lock, label="withdrawal request")

    # users

    def create_user(
        self,
        *,
        name: str,
        email: str,
        role: str = "user",
        api_token: str | None = None,
        dni: str = "",
        phone: str = "",
        address: dict[str, Any] | None = None,
        banking_info: dict[str, Any] | None = None,
    ) -> User:
        user = User(
            name=name,
            email=email,
            role=role,
            api_token=api_token or generate_api_token(),
            balance=Decimal("0"),
            dni=dni,
            phone=phone,
            address_json=address or {},
            banking_info_json=banking_info or {},
        )
        return self.add(user)

    def get_user_by_token(self, token: str) -> User | None:
        return self.session.scalar(select(User).where(User.api_token == token))

    # jobs & proposals

    def list_jobs(self, *, status: str | None = None, client_id: int | None = None, limit: int = 50) -> list[Job]:
        statement = select(Job).order_by(Job.created_at.desc()).limit(limit)
        if status:
            statement = statement.where(Job.status == status)
        if client_id is not None:
            statement = statement.where(Job.client_id == client_id)
        return list(self.session.scalars(statement).all())

    def find_live_proposal(self, job_id: int, worker_id: int) -> Proposal | None:
        statement = select(Proposal).where(
            and_(
                Proposal.job_id == job_id,
                Proposal.worker_id == worker_id,
                Proposal.status != "withdrawn",
            )
        )
        return self.session.scalar(statement)

    def list_proposals(self, job_id: int, *, status: str | None = None) -> list[Proposal]:
        statement = select(Proposal).where(Proposal.job_id == job_id).order_by(Proposal.id)
        if status:
            statement = statement.where(Proposal.status == status)
        return list(self.session.scalars(statement).all())

    # contracts

    def list_contracts_for_job(self, job_id: int) -> list[Contract]:
        statement = select(Contract).where(Contract.job_id == job_id).order_by(Contract.id)
        return list(self.session.scalars(statement).all())

    def list_contracts_for_user(self, user_id: int, *, status: str | None = None) -> list[Contract]:
        statement = (
            select(Contract)
            .where((Contract.client_id == user_id) | (Contract.worker_id == user_id))
            .order_by(Contract.id.desc())
        )
        if status:
            statement = statement.where(Contract.status == status)
        return list(self.session.scalars(statement).all())

    # payments & proofs

    def primary_payment(self, contract_id: int, *, lock: bool = False) -> Payment | None:
        statement = select(Payment).where(Payment.contract_id == contract_id).order_by(Payment.id.desc()).limit(1)
        if lock:
            self.session.flush()
            statement = statement.with_for_update().execution_options(populate_existing=True)
        return self.session.scalar(statement)

    def list_payments_for_contract(self, contract_id: int) -> list[Payment]:
        statement = select(Payment).where(Payment.contract_id == contract_id).order_by(Payment.id)
        return list(self.session.scalars(statement).all())

    def count_confirmed_for_payout(self, contract_id: int, *, exclude_payment_id: int | None = None) -> int:
        statement = select(func.count(Payment.id)).where(
            Payment.contract_id == contract_id,
            Payment.status == "confirmed_for_payout",
        )
        if exclude_payment_id is not None:
            statement = statement.where(Payment.id != exclude_payment_id)
        return int(self.session.scalar(statement) or 0)

    def list_proofs(self, payment_id: int, *, kind: str | None = None, active_only: bool = False) -> list[PaymentProof]:
        statement = select(PaymentProof).where(PaymentProof.payment_id == payment_id).order_by(PaymentProof.id)
        if kind:
            statement = statement.where(PaymentProof.kind == kind)
        if active_only:
            statement = statement.where(PaymentProof.is_active.is_(True))
        return list(self.session.scalars(statement).all())

    # ledger

    def latest_completed_transaction(self, user_id: int) -> BalanceTransaction | None:
        statement = (
            select(BalanceTransaction)
            .where(BalanceTransaction.user_id == user_id, BalanceTransaction.status == "completed")
            .order_by(BalanceTransaction.id.desc())
            .limit(1)
        )
        return self.session.scalar(statement)

    def find_payout_transaction(self, contract_id: int, user_id: int) -> BalanceTransaction | None:
        statement = select(BalanceTransaction).where(
            BalanceTransaction.related_contract_id == contract_id,
            BalanceTransaction.user_id == user_id,
            BalanceTransaction.type == "payment",
            BalanceTransaction.status == "completed",
        )
        return self.session.scalar(statement)

    def list_transactions(
        self,
        user_id: int,
        *,
        type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[BalanceTransaction], int]:
        conditions = [BalanceTransaction.user_id == user_id]
        if type:
            conditions.append(BalanceTransaction.type == type)
        statement = (
            select(BalanceTransaction)
            .where(*conditions)
            .order_by(BalanceTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        total = self.session.scalar(select(func.count(BalanceTransaction.id)).where(*conditions))
        return list(self.session.scalars(statement).all()), int(total or 0)

    def transaction_totals_by_type(self, user_id: int) -> dict[str, tuple[Decimal, int]]:
        statement = (
            select(BalanceTransaction.type, func.sum(BalanceTransaction.amount), func.count(BalanceTransaction.id))
            .where(BalanceTransaction.user_id == user_id, BalanceTransaction.status == "completed")
            .group_by(BalanceTransaction.type)
        )
        return {row[0]: (Decimal(str(row[1] or 0)), int(row[2])) for row in self.session.execute(statement)}

    # disputes

    def find_open_dispute(self, contract_id: int) -> Dispute | None:
        statement = select(Dispute).where(
            Dispute.contract_id == contract_id,
            Dispute.status.in_(OPEN_DISPUTE_STATUSES),
        )
        return self.session.scalar(statement)

    def list_disputes(self, *, user_id: int | None = None, status: str | None = None) -> list[Dispute]:
        statement = select(Dispute).order_by(Dispute.id.desc())
        if user_id is not None:
            statement = statement.where((Dispute.initiator_id == user_id) | (Dispute.defendant_id == user_id))
        if status:
            statement = statement.where(Dispute.status == status)
        return list(self.session.scalars(statement).all())

    # withdrawals

    def count_outstanding_withdrawals(self, user_id: int) -> int:
        statement = select(func.count(WithdrawalRequest.id)).where(
            WithdrawalRequest.user_id == user_id,
            WithdrawalRequest.status.in_(OUTSTANDING_WITHDRAWAL_STATUSES),
        )
        return int(self.session.scalar(statement) or 0)

    def list_withdrawals(
        self,
        *,
        user_id: int | None = None,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[WithdrawalRequest], int]:
        conditions = []
        if user_id is not None:
            conditions.append(WithdrawalRequest.user_id == user_id)
        if status:
            conditions.append(WithdrawalRequest.status == status)
        statement = (
            select(WithdrawalRequest)
            .where(*conditions)
            .order_by(WithdrawalRequest.id.desc())
            .limit(limit)
            .offset(offset)
        )
        total = self.session.scalar(select(func.count(WithdrawalRequest.id)).where(*conditions))
        return list(self.session.scalars(statement).all()), int(total or 0)

    def withdrawal_totals_by_status(self) -> dict[str, tuple[Decimal, int]]:
        statement = select(
            WithdrawalRequest.status,
            func.sum(WithdrawalRequest.amount),
            func.count(WithdrawalRequest.id),
        ).group_by(WithdrawalRequest.status)
        return {row[0]: (Decimal(str(row[1] or 0)), int(row[2])) for row in self.session.execute(statement)}

    # payout queue

    def payout_queue(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[tuple[Contract, Payment]]:
        """Completed contracts whose escrow is verified for payout and not yet paid."""
        statement = (
            select(Contract, Payment)
            .join(Payment, Payment.contract_id == Contract.id)
            .where(
                Payment.status == "confirmed_for_payout",
                Contract.status == "completed",
                Contract.client_confirmed.is_(True),
                Contract.doer_confirmed.is_(True),
                Contract.payment_status != "completed",
            )
            .order_by(Contract.completed_at, Contract.id)
        )
        if start is not None:
            statement = statement.where(Contract.completed_at >= start)
        if end is not None:
            statement = statement.where(Contract.completed_at <= end)
        return [(row[0], row[1]) for row in self.session.execute(statement).all()]
