from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from escrowline.db.base import Base, TimestampMixin
from escrowline.types import (
    ActorRole,
    ContractPaymentStatus,
    ContractStatus,
    DisputeCategory,
    DisputePriority,
    DisputeStatus,
    EscrowStatus,
    JobStatus,
    PaymentStatus,
    PaymentType,
    ProofKind,
    ProofStatus,
    ProposalStatus,
    TransactionStatus,
    TransactionType,
    UserRole,
    WithdrawalStatus,
)

Money = Numeric(12, 2)


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    role: Mapped[UserRole] = mapped_column(String(20), default="user", nullable=False)
    api_token: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    dni: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    phone: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    address_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    banking_info_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Job(TimestampMixin, Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    budget: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[JobStatus] = mapped_column(String(30), default="open", nullable=False, index=True)
    max_workers: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    selected_workers_json: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    allocated_total: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def remaining_budget(self) -> Decimal:
        return Decimal(self.budget) - Decimal(self.allocated_total)

    @property
    def selected_workers(self) -> list[int]:
        return list(self.selected_workers_json or [])


class Proposal(TimestampMixin, Base):
    __tablename__ = "proposals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), index=True)
    worker_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    proposed_price: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    status: Mapped[ProposalStatus] = mapped_column(String(20), default="pending", nullable=False)
    rejection_reason: Mapped[str] = mapped_column(String(500), default="", nullable=False)


class Contract(TimestampMixin, Base):
    __tablename__ = "contracts"
    __table_args__ = (Index("ix_contracts_status_completed_at", "status", "completed_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("jobs.id"), index=True)
    proposal_id: Mapped[int | None] = mapped_column(ForeignKey("proposals.id"), unique=True, nullable=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    worker_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)

    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    commission: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    allocated_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    percentage_of_budget: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)

    status: Mapped[ContractStatus] = mapped_column(String(30), default="pending", nullable=False, index=True)
    payment_status: Mapped[ContractPaymentStatus] = mapped_column(String(30), default="pending", nullable=False)
    escrow_status: Mapped[EscrowStatus] = mapped_column(String(30), default="pending", nullable=False)
    status_before_dispute: Mapped[str] = mapped_column(String(30), default="", nullable=False)

    client_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    client_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    doer_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    doer_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    original_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    has_been_extended: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    extension_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    extension_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    extension_notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    extension_requested_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    extension_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    extension_approved_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    extension_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    extension_history_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)

    price_history_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    cancellation_reason: Mapped[str] = mapped_column(Text, default="", nullable=False)

    payment_processed_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    payment_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_proof_url: Mapped[str] = mapped_column(String(1000), default="", nullable=False)
    payment_admin_notes: Mapped[str] = mapped_column(Text, default="", nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def payable_amount(self) -> Decimal:
        if self.allocated_amount is not None:
            return Decimal(self.allocated_amount)
        return Decimal(self.price)

    def party_role(self, user_id: int) -> ActorRole | None:
        if user_id == self.client_id:
            return "client"
        if user_id == self.worker_id:
            return "worker"
        return None


class Payment(TimestampMixin, Base):
    __tablename__ = "payments"
    __table_args__ = (Index("ix_payments_contract_status", "contract_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contract_id: Mapped[int] = mapped_column(ForeignKey("contracts.id"), index=True)
    payer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    worker_payment_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    refunded_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(String(30), default="pending", nullable=False, index=True)
    status_before_dispute: Mapped[str] = mapped_column(String(30), default="", nullable=False)
    payment_type: Mapped[PaymentType] = mapped_column(String(30), default="escrow_deposit", nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escrow_released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_for_payout_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    verified_for_payout_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    admin_notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def escrow_net(self) -> Decimal:
        return Decimal(self.amount) - Decimal(self.platform_fee)


class PaymentProof(TimestampMixin, Base):
    __tablename__ = "payment_proofs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id", ondelete="CASCADE"), index=True)
    kind: Mapped[ProofKind] = mapped_column(String(20), default="deposit", nullable=False)
    file_url: Mapped[str] = mapped_column(String(1000), nullable=False)
    status: Mapped[ProofStatus] = mapped_column(String(20), default="pending", nullable=False)
    uploaded_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    verified_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    admin_notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class BalanceTransaction(TimestampMixin, Base):
    __tablename__ = "balance_transactions"
    __table_args__ = (
        Index("ix_balance_transactions_user_created", "user_id", "created_at"),
        Index("ix_balance_transactions_user_type", "user_id", "type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    type: Mapped[TransactionType] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(String(20), default="completed", nullable=False, index=True)
    related_contract_id: Mapped[int | None] = mapped_column(ForeignKey("contracts.id"), nullable=True, index=True)
    related_payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)


class WithdrawalRequest(TimestampMixin, Base):
    __tablename__ = "withdrawal_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    destination_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[WithdrawalStatus] = mapped_column(String(20), default="pending", nullable=False, index=True)
    balance_before_withdrawal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    balance_after_withdrawal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    debit_transaction_id: Mapped[int | None] = mapped_column(ForeignKey("balance_transactions.id"), nullable=True)
    rejection_reason: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    admin_notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    processed_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    proof_url: Mapped[str] = mapped_column(String(1000), default="", nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class Dispute(TimestampMixin, Base):
    __tablename__ = "disputes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contract_id: Mapped[int] = mapped_column(ForeignKey("contracts.id"), index=True)
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), nullable=True)
    initiator_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    defendant_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    category: Mapped[DisputeCategory] = mapped_column(String(40), default="other", nullable=False)
    priority: Mapped[DisputePriority] = mapped_column(String(20), default="medium", nullable=False)
    reason: Mapped[str] = mapped_column(String(500), nullable=False)
    detailed_description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    evidence_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    messages_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    logs_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    status: Mapped[DisputeStatus] = mapped_column(String(30), default="open", nullable=False, index=True)
    assigned_to: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    resolution: Mapped[str] = mapped_column(Text, default="", nullable=False)
    resolution_type: Mapped[str] = mapped_column(String(30), default="", nullable=False)
    worker_ratio: Mapped[Decimal | None] = mapped_column(Numeric(5, 4), nullable=True)
    resolved_by: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status.startswith("resolved_") or self.status == "cancelled"
