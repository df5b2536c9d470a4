from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from escrowline.api.deps import get_current_user, get_db, notifier_dependency, verify_webhook_secret
from escrowline.api.schemas import (
    BalanceEnvelope,
    ContractCreateRequest,
    ContractDetailEnvelope,
    ContractEnvelope,
    ContractResponse,
    DepositProofRequest,
    DisputeEnvelope,
    DisputeListEnvelope,
    DisputeMessageRequest,
    DisputeOpenRequest,
    DisputeResponse,
    ExtensionCreateRequest,
    JobCreateRequest,
    JobEnvelope,
    JobResponse,
    ModifyPriceRequest,
    PaymentEnvelope,
    PaymentResponse,
    ProofEnvelope,
    ProofResponse,
    ProposalApproveRequest,
    ProposalCreateRequest,
    ProposalEnvelope,
    ProposalResponse,
    ReasonRequest,
    TransactionListEnvelope,
    TransactionResponse,
    UserEnvelope,
    UserResponse,
    WebhookPaymentRequest,
    WithdrawalEnvelope,
    WithdrawalListEnvelope,
    WithdrawalResponse,
    WithdrawRequest,
)
from escrowline.config import get_settings
from escrowline.core.contracts import ContractLifecycleManager
from escrowline.core.disputes import DisputeEngine
from escrowline.core.escrow import EscrowLedger
from escrowline.core.jobs import JobCatalog
from escrowline.core.ledger import BalanceLedger
from escrowline.core.proposals import ProposalDesk
from escrowline.core.withdrawals import WithdrawalProcessor
from escrowline.db.models import Contract, User
from escrowline.db.repositories import Repository
from escrowline.integrations.notifications import Notifier

router = APIRouter(tags=["marketplace"])


def _contract(manager: ContractLifecycleManager, contract: Contract) -> ContractEnvelope:
    return ContractEnvelope(contract=ContractResponse.model_validate(contract), warnings=manager.warnings)


# jobs & proposals


@router.post("/jobs", response_model=JobEnvelope)
def create_job(
    payload: JobCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> JobEnvelope:
    catalog = JobCatalog(db, notifier=notifier)
    job = catalog.create_job(
        user,
        title=payload.title,
        budget=payload.budget,
        max_workers=payload.max_workers,
        description=payload.description,
    )
    return JobEnvelope(job=JobResponse.model_validate(job), warnings=catalog.warnings)


@router.get("/jobs", response_model=list[JobResponse])
def list_jobs(
    status: str | None = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[JobResponse]:
    return [JobResponse.model_validate(job) for job in JobCatalog(db).list_jobs(status=status)]


@router.get("/jobs/{job_id}", response_model=JobEnvelope)
def get_job(job_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> JobEnvelope:
    return JobEnvelope(job=JobResponse.model_validate(JobCatalog(db).get_job(job_id)))


@router.post("/jobs/{job_id}/cancel", response_model=JobEnvelope)
def cancel_job(
    job_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> JobEnvelope:
    catalog = JobCatalog(db, notifier=notifier)
    job = catalog.cancel_job(job_id, user)
    return JobEnvelope(job=JobResponse.model_validate(job), warnings=catalog.warnings)


@router.post("/jobs/{job_id}/proposals", response_model=ProposalEnvelope)
def submit_proposal(
    job_id: int,
    payload: ProposalCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ProposalEnvelope:
    desk = ProposalDesk(db, notifier=notifier)
    proposal = desk.submit_proposal(job_id, user, proposed_price=payload.proposed_price, message=payload.message)
    return ProposalEnvelope(proposal=ProposalResponse.model_validate(proposal), warnings=desk.warnings)


@router.get("/jobs/{job_id}/proposals", response_model=list[ProposalResponse])
def list_proposals(job_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> list[ProposalResponse]:
    return [ProposalResponse.model_validate(item) for item in ProposalDesk(db).list_for_job(job_id)]


@router.post("/proposals/{proposal_id}/approve", response_model=ContractEnvelope)
def approve_proposal(
    proposal_id: int,
    payload: ProposalApproveRequest | None = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ContractEnvelope:
    desk = ProposalDesk(db, notifier=notifier)
    amount = payload.allocated_amount if payload else None
    contract = desk.approve_proposal(proposal_id, user, allocated_amount=amount)
    return ContractEnvelope(contract=ContractResponse.model_validate(contract), warnings=desk.warnings)


@router.post("/proposals/{proposal_id}/reject", response_model=ProposalEnvelope)
def reject_proposal(
    proposal_id: int,
    payload: ReasonRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ProposalEnvelope:
    desk = ProposalDesk(db, notifier=notifier)
    proposal = desk.reject_proposal(proposal_id, user, reason=payload.reason)
    return ProposalEnvelope(proposal=ProposalResponse.model_validate(proposal), warnings=desk.warnings)


@router.post("/proposals/{proposal_id}/withdraw", response_model=ProposalEnvelope)
def withdraw_proposal(proposal_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> ProposalEnvelope:
    proposal = ProposalDesk(db).withdraw_proposal(proposal_id, user)
    return ProposalEnvelope(proposal=ProposalResponse.model_validate(proposal))


# contracts


@router.post("/contracts", response_model=ContractEnvelope)
def create_contract(
    payload: ContractCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ContractEnvelope:
    desk = ProposalDesk(db, notifier=notifier)
    contract = desk.approve_proposal(payload.proposal_id, user, allocated_amount=payload.allocated_amount)
    return ContractEnvelope(contract=ContractResponse.model_validate(contract), warnings=desk.warnings)


@router.get("/contracts", response_model=list[ContractResponse])
def list_contracts(
    status: str | None = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[ContractResponse]:
    return [ContractResponse.model_validate(item) for item in ContractLifecycleManager(db).list_for_user(user, status=status)]


@router.get("/contracts/{contract_id}", response_model=ContractDetailEnvelope)
def get_contract(contract_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> ContractDetailEnvelope:
    contract = ContractLifecycleManager(db).get(contract_id, user)
    payments = Repository(db).list_payments_for_contract(contract.id)
    return ContractDetailEnvelope(
        contract=ContractResponse.model_validate(contract),
        payments=[PaymentResponse.model_validate(item) for item in payments],
    )


@router.post("/contracts/{contract_id}/accept", response_model=ContractEnvelope)
def accept_contract(
    contract_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ContractEnvelope:
    manager = ContractLifecycleManager(db, notifier=notifier)
    return _contract(manager, manager.accept(contract_id, user))


@router.post("/contracts/{contract_id}/start", response_model=ContractEnvelope)
def start_contract(
    contract_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ContractEnvelope:
    manager = ContractLifecycleManager(db, notifier=notifier)
    return _contract(manager, manager.start(contract_id, user))


@router.post("/contracts/{contract_id}/confirm", response_model=ContractEnvelope)
def confirm_contract(
    contract_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ContractEnvelope:
    manager = ContractLifecycleManager(db, notifier=notifier)
    return _contract(manager, manager.confirm_completion(contract_id, user))


@router.post("/contracts/{contract_id}/cancel", response_model=ContractEnvelope)
def cancel_contract(
    contract_id: int,
    payload: ReasonRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ContractEnvelope:
    manager = ContractLifecycleManager(db, notifier=notifier)
    return _contract(manager, manager.cancel(contract_id, user, reason=payload.reason))


@router.post("/contracts/{contract_id}/request-extension", response_model=ContractEnvelope)
def request_extension(
    contract_id: int,
    payload: ExtensionCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ContractEnvelope:
    manager = ContractLifecycleManager(db, notifier=notifier)
    contract = manager.request_extension(contract_id, user, days=payload.days, amount=payload.amount, notes=payload.notes)
    return _contract(manager, contract)


@router.post("/contracts/{contract_id}/approve-extension", response_model=ContractEnvelope)
def approve_extension(
    contract_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ContractEnvelope:
    manager = ContractLifecycleManager(db, notifier=notifier)
    return _contract(manager, manager.approve_extension(contract_id, user))


@router.post("/contracts/{contract_id}/reject-extension", response_model=ContractEnvelope)
def reject_extension(
    contract_id: int,
    payload: ReasonRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ContractEnvelope:
    manager = ContractLifecycleManager(db, notifier=notifier)
    return _contract(manager, manager.reject_extension(contract_id, user, reason=payload.reason))


@router.put("/contracts/{contract_id}/modify-price", response_model=ContractEnvelope)
def modify_price(
    contract_id: int,
    payload: ModifyPriceRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ContractEnvelope:
    manager = ContractLifecycleManager(db, notifier=notifier)
    return _contract(manager, manager.modify_price(contract_id, user, new_price=payload.new_price, reason=payload.reason))


@router.post("/contracts/{contract_id}/dispute", response_model=ContractEnvelope)
def open_dispute(
    contract_id: int,
    payload: DisputeOpenRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> ContractEnvelope:
    manager = ContractLifecycleManager(db, notifier=notifier)
    contract = manager.open_dispute(
        contract_id,
        user,
        reason=payload.reason,
        description=payload.description,
        category=payload.category,
        priority=payload.priority,
        evidence=payload.evidence,
    )
    return _contract(manager, contract)


@router.post("/contracts/{contract_id}/deposit-proof", response_model=ProofEnvelope)
def submit_deposit_proof(
    contract_id: int,
    payload: DepositProofRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ProofEnvelope:
    proof = EscrowLedger(db).submit_deposit_proof(contract_id, file_url=payload.file_url, uploader=user)
    return ProofEnvelope(proof=ProofResponse.model_validate(proof))


# disputes


@router.get("/disputes", response_model=DisputeListEnvelope)
def list_disputes(
    status: str | None = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> DisputeListEnvelope:
    disputes = DisputeEngine(db).list_for_user(user, status=status)
    return DisputeListEnvelope(disputes=[DisputeResponse.model_validate(item) for item in disputes])


@router.get("/disputes/{dispute_id}", response_model=DisputeEnvelope)
def get_dispute(dispute_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> DisputeEnvelope:
    return DisputeEnvelope(dispute=DisputeResponse.model_validate(DisputeEngine(db).get(dispute_id, user)))


@router.post("/disputes/{dispute_id}/messages", response_model=DisputeEnvelope)
def post_dispute_message(
    dispute_id: int,
    payload: DisputeMessageRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> DisputeEnvelope:
    engine = DisputeEngine(db, notifier=notifier)
    dispute = engine.post_message(dispute_id, user, text=payload.message, attachments=payload.attachments)
    return DisputeEnvelope(dispute=DisputeResponse.model_validate(dispute), warnings=engine.warnings)


@router.post("/disputes/{dispute_id}/cancel", response_model=DisputeEnvelope)
def cancel_dispute(
    dispute_id: int,
    payload: ReasonRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> DisputeEnvelope:
    engine = DisputeEngine(db, notifier=notifier)
    dispute = engine.cancel(dispute_id, user, reason=payload.reason)
    return DisputeEnvelope(dispute=DisputeResponse.model_validate(dispute), warnings=engine.warnings)


# users


@router.get("/me", response_model=UserEnvelope)
def get_me(user: User = Depends(get_current_user)) -> UserEnvelope:
    return UserEnvelope(user=UserResponse.model_validate(user))


# balance


@router.get("/balance", response_model=BalanceEnvelope)
def get_balance(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> BalanceEnvelope:
    return BalanceEnvelope(balance=user.balance, currency=get_settings().currency)


@router.get("/balance/summary")
def balance_summary(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> dict:
    return {"success": True, **BalanceLedger(db).summary(user)}


@router.get("/balance/transactions", response_model=TransactionListEnvelope)
def list_transactions(
    type: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> TransactionListEnvelope:
    rows, total = Repository(db).list_transactions(user.id, type=type, limit=limit, offset=offset)
    return TransactionListEnvelope(transactions=[TransactionResponse.model_validate(row) for row in rows], total=total)


@router.post("/balance/withdraw", response_model=WithdrawalEnvelope)
def request_withdrawal(
    payload: WithdrawRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> WithdrawalEnvelope:
    processor = WithdrawalProcessor(db, notifier=notifier)
    request = processor.request_withdrawal(user, amount=payload.amount, destination=payload.destination)
    return WithdrawalEnvelope(withdrawal=WithdrawalResponse.model_validate(request), warnings=processor.warnings)


@router.get("/balance/withdrawals", response_model=WithdrawalListEnvelope)
def list_withdrawals(
    status: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> WithdrawalListEnvelope:
    rows, total = WithdrawalProcessor(db).list_for_user(user, status=status, limit=limit, offset=offset)
    return WithdrawalListEnvelope(withdrawals=[WithdrawalResponse.model_validate(row) for row in rows], total=total)


@router.post("/balance/withdrawals/{withdrawal_id}/cancel", response_model=WithdrawalEnvelope)
def cancel_withdrawal(
    withdrawal_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> WithdrawalEnvelope:
    request = WithdrawalProcessor(db).cancel(withdrawal_id, user)
    return WithdrawalEnvelope(withdrawal=WithdrawalResponse.model_validate(request))


# payment gateway


@router.post("/webhooks/payments", response_model=PaymentEnvelope, dependencies=[Depends(verify_webhook_secret)])
def payment_webhook(
    payload: WebhookPaymentRequest,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(notifier_dependency),
) -> PaymentEnvelope:
    escrow = EscrowLedger(db, notifier=notifier)
    payment = escrow.on_payment_confirmed(payload.contract_id, payload.amount)
    return PaymentEnvelope(payment=PaymentResponse.model_validate(payment), warnings=escrow.warnings)
