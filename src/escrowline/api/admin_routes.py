from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import Response
from sqlalchemy.orm import Session

from escrowline.api.deps import blob_store_dependency, get_db, notifier_dependency, require_admin
from escrowline.api.schemas import (
    AdjustmentRequest,
    DisputeAssignRequest,
    DisputeEnvelope,
    DisputeListEnvelope,
    DisputeMessageRequest,
    DisputePriorityRequest,
    DisputeResolveRequest,
    DisputeResponse,
    DisputeStatusRequest,
    MarkPaidRequest,
    NotesRequest,
    PaymentEnvelope,
    PaymentResponse,
    ProofEnvelope,
    ProofResponse,
    ProofReviewRequest,
    ReasonRequest,
    TransactionEnvelope,
    TransactionResponse,
    UserCreatedEnvelope,
    UserCreatedResponse,
    UserCreateRequest,
    WithdrawalCompleteRequest,
    WithdrawalEnvelope,
    WithdrawalListEnvelope,
    WithdrawalResponse,
)
from escrowline.core.disputes import DisputeEngine
from escrowline.core.escrow import EscrowLedger
from escrowline.core.ledger import BalanceLedger
from escrowline.core.payouts import PayoutReporter
from escrowline.core.withdrawals import WithdrawalProcessor
from escrowline.db.models import User
from escrowline.db.repositories import Repository
from escrowline.db.session import atomic
from escrowline.integrations.notifications import Notifier
from escrowline.integrations.storage import BlobStore
from escrowline.types import PaymentMethodFilter, ReportPeriod, ReportSortKey

router = APIRouter(prefix="/admin", tags=["admin"])


# users


@router.post("/users", response_model=UserCreatedEnvelope)
def create_user(
    payload: UserCreateRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> UserCreatedEnvelope:
    with atomic(db):
        user = Repository(db).create_user(name=payload.name, email=payload.email, role=payload.role)
    return UserCreatedEnvelope(user=UserCreatedResponse.model_validate(user))


# payout reconciliation


@router.get("/pending-payments")
def pending_payments(
    period: ReportPeriod = Query(default="all"),
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    sort_by: ReportSortKey = Query(default="completedAt", alias="sortBy"),
    sort_order: str = Query(default="desc", alias="sortOrder", pattern="^(asc|desc)$"),
    payment_method: PaymentMethodFilter = Query(default="all", alias="paymentMethod"),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    report = PayoutReporter(db).pending_payments(
        period=period,
        start=start_date,
        end=end_date,
        sort_by=sort_by,
        sort_order=sort_order,
        payment_method=payment_method,
    )
    return {"success": True, **report}


@router.get("/pending-payments/export/csv")
def export_pending_payments(
    period: ReportPeriod = Query(default="all"),
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    sort_by: ReportSortKey = Query(default="completedAt", alias="sortBy"),
    sort_order: str = Query(default="desc", alias="sortOrder", pattern="^(asc|desc)$"),
    payment_method: PaymentMethodFilter = Query(default="all", alias="paymentMethod"),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Response:
    content = PayoutReporter(db).export_csv(
        period=period,
        start=start_date,
        end=end_date,
        sort_by=sort_by,
        sort_order=sort_order,
        payment_method=payment_method,
    )
    filename = f"pending-payments-{datetime.now().strftime('%Y%m%d')}.csv"
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/pending-payments/upload-proof")
async def upload_proof(
    file: UploadFile = File(...),
    admin: User = Depends(require_admin),
    store: BlobStore = Depends(blob_store_dependency),
) -> dict:
    content = await file.read()
    file_url = store.upload(file.filename or "proof", content, file.content_type or "application/octet-stream")
    return {"success": True, "fileUrl": file_url}


@router.get("/pending-payments/{contract_id}")
def pending_payment_detail(contract_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    return {"success": True, **PayoutReporter(db).payment_detail(contract_id)}


@router.post("/pending-payments/{contract_id}/mark-paid", response_model=TransactionEnvelope)
def mark_paid(
    contract_id: int,
    payload: MarkPaidRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> TransactionEnvelope:
    reporter = PayoutReporter(db, notifier=notifier)
    transaction = reporter.mark_paid(
        contract_id,
        proof_url=payload.proof_of_payment,
        deductions=payload.deductions,
        admin=admin,
        notes=payload.admin_notes,
    )
    return TransactionEnvelope(transaction=TransactionResponse.model_validate(transaction), warnings=reporter.warnings)


@router.post("/pending-payments/{contract_id}/fix-status")
def fix_status(contract_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    return {"success": True, **PayoutReporter(db).fix_status(contract_id, admin)}


@router.post("/payments/{payment_id}/verify-for-payout", response_model=PaymentEnvelope)
def verify_for_payout(
    payment_id: int,
    payload: NotesRequest | None = None,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> PaymentEnvelope:
    notes = payload.notes if payload else ""
    payment = EscrowLedger(db).verify_for_payout(payment_id, admin, notes=notes)
    return PaymentEnvelope(payment=PaymentResponse.model_validate(payment))


@router.post("/proofs/{proof_id}/review", response_model=ProofEnvelope)
def review_proof(
    proof_id: int,
    payload: ProofReviewRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ProofEnvelope:
    escrow = EscrowLedger(db, notifier=notifier)
    proof = escrow.review_proof(proof_id, admin, approve=payload.approve, notes=payload.notes)
    return ProofEnvelope(proof=ProofResponse.model_validate(proof), warnings=escrow.warnings)


# disputes


@router.get("/disputes", response_model=DisputeListEnvelope)
def list_disputes(
    status: str | None = Query(default=None),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> DisputeListEnvelope:
    disputes = DisputeEngine(db).list_all(admin, status=status)
    return DisputeListEnvelope(disputes=[DisputeResponse.model_validate(item) for item in disputes])


@router.post("/disputes/{dispute_id}/assign", response_model=DisputeEnvelope)
def assign_dispute(
    dispute_id: int,
    payload: DisputeAssignRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> DisputeEnvelope:
    assignee = Repository(db).resolve_user(payload.assignee_id) if payload.assignee_id else None
    dispute = DisputeEngine(db).assign(dispute_id, admin, assignee=assignee)
    return DisputeEnvelope(dispute=DisputeResponse.model_validate(dispute))


@router.post("/disputes/{dispute_id}/status", response_model=DisputeEnvelope)
def set_dispute_status(
    dispute_id: int,
    payload: DisputeStatusRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> DisputeEnvelope:
    engine = DisputeEngine(db, notifier=notifier)
    dispute = engine.set_status(dispute_id, admin, status=payload.status)
    return DisputeEnvelope(dispute=DisputeResponse.model_validate(dispute), warnings=engine.warnings)


@router.post("/disputes/{dispute_id}/priority", response_model=DisputeEnvelope)
def set_dispute_priority(
    dispute_id: int,
    payload: DisputePriorityRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> DisputeEnvelope:
    dispute = DisputeEngine(db).set_priority(dispute_id, admin, priority=payload.priority)
    return DisputeEnvelope(dispute=DisputeResponse.model_validate(dispute))


@router.post("/disputes/{dispute_id}/messages", response_model=DisputeEnvelope)
def post_admin_message(
    dispute_id: int,
    payload: DisputeMessageRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> DisputeEnvelope:
    engine = DisputeEngine(db, notifier=notifier)
    dispute = engine.post_message(dispute_id, admin, text=payload.message, attachments=payload.attachments)
    return DisputeEnvelope(dispute=DisputeResponse.model_validate(dispute), warnings=engine.warnings)


@router.post("/disputes/{dispute_id}/resolve", response_model=DisputeEnvelope)
def resolve_dispute(
    dispute_id: int,
    payload: DisputeResolveRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> DisputeEnvelope:
    engine = DisputeEngine(db, notifier=notifier)
    dispute = engine.resolve(
        dispute_id,
        admin,
        outcome=payload.outcome,
        resolution=payload.resolution,
        worker_ratio=payload.worker_ratio,
    )
    return DisputeEnvelope(dispute=DisputeResponse.model_validate(dispute), warnings=engine.warnings)


# withdrawals


@router.get("/withdrawals", response_model=WithdrawalListEnvelope)
def list_withdrawals(
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> WithdrawalListEnvelope:
    rows, total = WithdrawalProcessor(db).list_all(admin, status=status, limit=limit, offset=offset)
    return WithdrawalListEnvelope(withdrawals=[WithdrawalResponse.model_validate(row) for row in rows], total=total)


@router.get("/withdrawals/stats")
def withdrawal_stats(admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    return {"success": True, **WithdrawalProcessor(db).stats(admin)}


@router.post("/withdrawals/{withdrawal_id}/approve", response_model=WithdrawalEnvelope)
def approve_withdrawal(
    withdrawal_id: int,
    payload: NotesRequest | None = None,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> WithdrawalEnvelope:
    processor = WithdrawalProcessor(db, notifier=notifier)
    request = processor.approve(withdrawal_id, admin, notes=payload.notes if payload else "")
    return WithdrawalEnvelope(withdrawal=WithdrawalResponse.model_validate(request), warnings=processor.warnings)


@router.post("/withdrawals/{withdrawal_id}/process", response_model=WithdrawalEnvelope)
def process_withdrawal(withdrawal_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> WithdrawalEnvelope:
    request = WithdrawalProcessor(db).process(withdrawal_id, admin)
    return WithdrawalEnvelope(withdrawal=WithdrawalResponse.model_validate(request))


@router.post("/withdrawals/{withdrawal_id}/complete", response_model=WithdrawalEnvelope)
def complete_withdrawal(
    withdrawal_id: int,
    payload: WithdrawalCompleteRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> WithdrawalEnvelope:
    processor = WithdrawalProcessor(db, notifier=notifier)
    request = processor.complete(withdrawal_id, admin, proof_url=payload.proof_url)
    return WithdrawalEnvelope(withdrawal=WithdrawalResponse.model_validate(request), warnings=processor.warnings)


@router.post("/withdrawals/{withdrawal_id}/reject", response_model=WithdrawalEnvelope)
def reject_withdrawal(
    withdrawal_id: int,
    payload: ReasonRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> WithdrawalEnvelope:
    processor = WithdrawalProcessor(db, notifier=notifier)
    request = processor.reject(withdrawal_id, admin, reason=payload.reason)
    return WithdrawalEnvelope(withdrawal=WithdrawalResponse.model_validate(request), warnings=processor.warnings)


# ledger


@router.post("/users/{user_id}/adjustments", response_model=TransactionEnvelope)
def adjust_balance(
    user_id: int,
    payload: AdjustmentRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> TransactionEnvelope:
    transaction = BalanceLedger(db).adjust(user_id, amount=payload.amount, reason=payload.reason, admin=admin, bonus=payload.bonus)
    return TransactionEnvelope(transaction=TransactionResponse.model_validate(transaction))


@router.get("/users/{user_id}/ledger-audit")
def ledger_audit(user_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    return {"success": True, **BalanceLedger(db).audit_balance(user_id)}
