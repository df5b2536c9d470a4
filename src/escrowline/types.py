from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator

UserRole = Literal["user", "admin"]
ActorRole = Literal["client", "worker", "admin"]

JobStatus = Literal[
    "draft",
    "pending_payment",
    "pending_approval",
    "open",
    "in_progress",
    "completed",
    "cancelled",
    "paused",
    "suspended",
]
ProposalStatus = Literal["pending", "approved", "rejected", "withdrawn"]
ContractStatus = Literal[
    "pending",
    "ready",
    "accepted",
    "in_progress",
    "awaiting_confirmation",
    "completed",
    "cancelled",
    "disputed",
]
ContractPaymentStatus = Literal[
    "pending",
    "held",
    "held_escrow",
    "released",
    "refunded",
    "disputed",
    "completed",
]
EscrowStatus = Literal["pending", "held_escrow", "released", "refunded"]
PaymentStatus = Literal[
    "pending",
    "held_escrow",
    "confirmed_for_payout",
    "completed",
    "disputed",
    "refunded",
    "partially_refunded",
]
PaymentType = Literal["contract_payment", "escrow_deposit"]
ProofStatus = Literal["pending", "approved", "rejected"]
ProofKind = Literal["deposit", "payout"]
TransactionType = Literal["payment", "refund", "bonus", "adjustment", "withdrawal"]
TransactionStatus = Literal["pending", "completed", "failed"]
WithdrawalStatus = Literal["pending", "approved", "processing", "completed", "rejected", "cancelled"]
DisputeStatus = Literal[
    "open",
    "in_review",
    "awaiting_info",
    "resolved_released",
    "resolved_refunded",
    "resolved_partial",
    "cancelled",
]
DisputeCategory = Literal[
    "service_not_delivered",
    "incomplete_work",
    "quality_issues",
    "payment_issues",
    "breach_of_contract",
    "other",
]
DisputePriority = Literal["low", "medium", "high", "urgent"]
ResolutionOutcome = Literal["release_to_worker", "refund_to_client", "partial_split"]
ReportPeriod = Literal["daily", "weekly", "monthly", "custom", "all"]
ReportSortKey = Literal["completedAt", "amount", "clientName", "workerCount"]
PaymentMethodFilter = Literal["all", "bank_transfer", "mercadopago"]

CENT = Decimal("0.01")


def to_money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(CENT)


class Deductions(BaseModel):
    bank_fee: Decimal = Field(default=Decimal("0"), alias="bankFee")
    tax_amount: Decimal = Field(default=Decimal("0"), alias="taxAmount")
    other_deductions: Decimal = Field(default=Decimal("0"), alias="otherDeductions")
    notes: str = ""

    model_config = {"populate_by_name": True}

    @field_validator("bank_fee", "tax_amount", "other_deductions")
    @classmethod
    def validate_non_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("deductions cannot be negative")
        return to_money(value)

    @property
    def total(self) -> Decimal:
        return self.bank_fee + self.tax_amount + self.other_deductions

    def breakdown(self) -> dict[str, str]:
        return {
            "bankFee": str(self.bank_fee),
            "taxAmount": str(self.tax_amount),
            "otherDeductions": str(self.other_deductions),
            "total": str(self.total),
            "notes": self.notes,
        }


class BankingInfo(BaseModel):
    account_holder: str = Field(alias="accountHolder", min_length=1)
    bank_name: str = Field(alias="bankName", min_length=1)
    account_type: Literal["savings", "checking"] = Field(default="savings", alias="accountType")
    cbu: str
    alias: str = ""
    bank_type: str = Field(default="bank_transfer", alias="bankType")

    model_config = {"populate_by_name": True}

    @field_validator("account_holder", "bank_name")
    @classmethod
    def validate_required_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("banking field cannot be blank")
        return value

    @field_validator("alias")
    @classmethod
    def strip_alias(cls, value: str) -> str:
        return value.strip()

    @field_validator("cbu")
    @classmethod
    def validate_cbu(cls, value: str) -> str:
        value = value.strip()
        if len(value) != 22 or not value.isdigit():
            raise ValueError("cbu must be exactly 22 digits")
        return value

    @property
    def masked_cbu(self) -> str:
        return "*" * 18 + self.cbu[-4:]


class EvidenceAttachment(BaseModel):
    file_name: str = Field(alias="fileName")
    file_url: str = Field(alias="fileUrl")
    file_type: Literal["image", "video", "pdf", "other"] = Field(default="other", alias="fileType")
    file_size: int = Field(default=0, alias="fileSize")
    uploaded_at: datetime | None = Field(default=None, alias="uploadedAt")

    model_config = {"populate_by_name": True}
