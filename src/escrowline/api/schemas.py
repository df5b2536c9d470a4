from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from escrowline.types import (
    BankingInfo,
    ContractPaymentStatus,
    ContractStatus,
    Deductions,
    DisputeCategory,
    DisputePriority,
    DisputeStatus,
    EscrowStatus,
    EvidenceAttachment,
    JobStatus,
    PaymentStatus,
    PaymentType,
    ProofKind,
    ProofStatus,
    ProposalStatus,
    ResolutionOutcome,
    TransactionStatus,
    TransactionType,
    UserRole,
    WithdrawalStatus,
)


class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# requests


class UserCreateRequest(RequestModel):
    name: str
    email: str
    role: UserRole = "user"


class JobCreateRequest(RequestModel):
    title: str
    budget: Decimal
    max_workers: int = Field(default=1, alias="maxWorkers", ge=1)
    description: str = ""


class ProposalCreateRequest(RequestModel):
    proposed_price: Decimal | None = Field(default=None, alias="proposedPrice")
    message: str = ""


class ProposalApproveRequest(RequestModel):
    allocated_amount: Decimal | None = Field(default=None, alias="allocatedAmount")


class ReasonRequest(RequestModel):
    reason: str = ""


class ContractCreateRequest(RequestModel):
    proposal_id: int = Field(alias="proposalId")
    allocated_amount: Decimal | None = Field(default=None, alias="allocatedAmount")


class ExtensionCreateRequest(RequestModel):
    days: int = Field(ge=1)
    amount: Decimal = Decimal("0")
    notes: str = ""


class ModifyPriceRequest(RequestModel):
    new_price: Decimal = Field(alias="newPrice")
    reason: str


class DisputeOpenRequest(RequestModel):
    reason: str
    description: str = ""
    category: DisputeCategory = "other"
    priority: DisputePriority = "medium"
    evidence: list[EvidenceAttachment] = Field(default_factory=list)


class DepositProofRequest(RequestModel):
    file_url: str = Field(alias="fileUrl")


class DisputeMessageRequest(RequestModel):
    message: str
    attachments: list[EvidenceAttachment] = Field(default_factory=list)


class WithdrawRequest(RequestModel):
    amount: Decimal
    destination: BankingInfo


class WebhookPaymentRequest(RequestModel):
    contract_id: int = Field(alias="contractId")
    amount: Decimal
    status: Literal["confirmed", "approved"] = "confirmed"


class NotesRequest(RequestModel):
    notes: str = ""


class MarkPaidRequest(RequestModel):
    proof_of_payment: str = Field(alias="proofOfPayment")
    admin_notes: str = Field(default="", alias="adminNotes")
    deductions: Deductions = Field(default_factory=Deductions)


class DisputeAssignRequest(RequestModel):
    assignee_id: int | None = Field(default=None, alias="assigneeId")


class DisputeStatusRequest(RequestModel):
    status: Literal["in_review", "awaiting_info"]


class DisputePriorityRequest(RequestModel):
    priority: DisputePriority


class DisputeResolveRequest(RequestModel):
    outcome: ResolutionOutcome
    resolution: str
    worker_ratio: Decimal | None = Field(default=None, alias="workerRatio")


class WithdrawalCompleteRequest(RequestModel):
    proof_url: str = Field(default="", alias="proofUrl")


class AdjustmentRequest(RequestModel):
    amount: Decimal
    reason: str
    bonus: bool = False


class ProofReviewRequest(RequestModel):
    approve: bool
    notes: str = ""


# responses


class UserResponse(ORMModel):
    id: int
    name: str
    email: str
    role: UserRole
    balance: Decimal


class UserCreatedResponse(UserResponse):
    api_token: str


class JobResponse(ORMModel):
    id: int
    client_id: int
    title: str
    description: str
    budget: Decimal
    status: JobStatus
    max_workers: int
    selected_workers: list[int]
    allocated_total: Decimal
    remaining_budget: Decimal
    created_at: datetime


class ProposalResponse(ORMModel):
    id: int
    job_id: int
    worker_id: int
    proposed_price: Decimal | None
    message: str
    status: ProposalStatus
    rejection_reason: str
    created_at: datetime


class ContractResponse(ORMModel):
    id: int
    job_id: int
    proposal_id: int | None
    client_id: int
    worker_id: int
    price: Decimal
    commission: Decimal
    total_price: Decimal
    allocated_amount: Decimal | None
    percentage_of_budget: Decimal | None
    status: ContractStatus
    payment_status: ContractPaymentStatus
    escrow_status: EscrowStatus
    client_confirmed: bool
    client_confirmed_at: datetime | None
    doer_confirmed: bool
    doer_confirmed_at: datetime | None
    completed_at: datetime | None
    start_date: datetime | None
    end_date: datetime | None
    original_end_date: datetime | None
    has_been_extended: bool
    extension_days: int | None
    extension_amount: Decimal | None
    extension_notes: str
    extension_requested_by: int | None
    extension_history: list[dict[str, Any]] = Field(validation_alias="extension_history_json")
    price_history: list[dict[str, Any]] = Field(validation_alias="price_history_json")
    cancellation_reason: str
    payment_processed_by: int | None
    payment_processed_at: datetime | None
    payment_proof_url: str
    payment_admin_notes: str


class PaymentResponse(ORMModel):
    id: int
    contract_id: int
    payer_id: int
    amount: Decimal
    platform_fee: Decimal
    worker_payment_amount: Decimal | None
    refunded_amount: Decimal
    status: PaymentStatus
    payment_type: PaymentType
    paid_at: datetime | None
    escrow_released_at: datetime | None
    verified_for_payout_by: int | None
    verified_for_payout_at: datetime | None


class ProofResponse(ORMModel):
    id: int
    payment_id: int
    kind: ProofKind
    file_url: str
    status: ProofStatus
    uploaded_by: int | None
    uploaded_at: datetime
    verified_by: int | None
    verified_at: datetime | None
    is_active: bool


class TransactionResponse(ORMModel):
    id: int
    user_id: int
    type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str
    status: TransactionStatus
    related_contract_id: int | None
    related_payment_id: int | None
    metadata: dict[str, Any] = Field(validation_alias="metadata_json")
    created_at: datetime


class WithdrawalResponse(ORMModel):
    id: int
    user_id: int
    amount: Decimal
    destination: dict[str, Any] = Field(validation_alias="destination_json")
    status: WithdrawalStatus
    balance_before_withdrawal: Decimal
    balance_after_withdrawal: Decimal
    rejection_reason: str
    admin_notes: str
    processed_by: int | None
    processed_at: datetime | None
    completed_at: datetime | None
    proof_url: str
    created_at: datetime


class DisputeResponse(ORMModel):
    id: int
    contract_id: int
    payment_id: int | None
    initiator_id: int
    defendant_id: int
    category: DisputeCategory
    priority: DisputePriority
    reason: str
    detailed_description: str
    evidence: list[dict[str, Any]] = Field(validation_alias="evidence_json")
    messages: list[dict[str, Any]] = Field(validation_alias="messages_json")
    logs: list[dict[str, Any]] = Field(validation_alias="logs_json")
    status: DisputeStatus
    assigned_to: int | None
    resolution: str
    resolution_type: str
    worker_ratio: Decimal | None
    resolved_by: int | None
    resolved_at: datetime | None
    created_at: datetime


# envelopes


class Envelope(BaseModel):
    success: bool = True
    warnings: list[str] = Field(default_factory=list)


class JobEnvelope(Envelope):
    job: JobResponse


class ProposalEnvelope(Envelope):
    proposal: ProposalResponse


class ContractEnvelope(Envelope):
    contract: ContractResponse


class ContractDetailEnvelope(ContractEnvelope):
    payments: list[PaymentResponse]


class PaymentEnvelope(Envelope):
    payment: PaymentResponse


class ProofEnvelope(Envelope):
    proof: ProofResponse


class DisputeEnvelope(Envelope):
    dispute: DisputeResponse


class DisputeListEnvelope(Envelope):
    disputes: list[DisputeResponse]


class WithdrawalEnvelope(Envelope):
    withdrawal: WithdrawalResponse


class WithdrawalListEnvelope(Envelope):
    withdrawals: list[WithdrawalResponse]
    total: int


class TransactionEnvelope(Envelope):
    transaction: TransactionResponse


class TransactionListEnvelope(Envelope):
    transactions: list[TransactionResponse]
    total: int


class BalanceEnvelope(Envelope):
    balance: Decimal
    currency: str


class UserEnvelope(Envelope):
    user: UserResponse


class UserCreatedEnvelope(Envelope):
    user: UserCreatedResponse
