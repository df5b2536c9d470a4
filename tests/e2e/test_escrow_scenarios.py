from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from escrowline.core.disputes import DisputeEngine
from escrowline.core.ledger import BalanceLedger
from escrowline.core.payouts import PayoutReporter
from escrowline.core.proposals import ProposalDesk
from escrowline.core.withdrawals import WithdrawalProcessor
from escrowline.db.models import BalanceTransaction, Job, User
from escrowline.db.repositories import Repository
from escrowline.errors import CapacityExceededError, ValidationError
from escrowline.types import Deductions

PROOF_URL = "https://files.example.com/bank-transfer.pdf"
DESTINATION = {
    "accountHolder": "Walter Worker",
    "bankName": "Banco Nacion",
    "cbu": "0110599520000001234567",
}


def _assert_ledger_conserved(db) -> None:
    for user in db.scalars(select(User)).all():
        db.refresh(user)
        total = db.scalar(
            select(func.coalesce(func.sum(BalanceTransaction.amount), 0)).where(
                BalanceTransaction.user_id == user.id,
                BalanceTransaction.status == "completed",
            )
        )
        assert Decimal(str(total)) == Decimal(user.balance)
        assert BalanceLedger(db).audit_balance(user)["consistent"] is True


def test_two_workers_share_a_budget_and_get_paid(db, market, parties) -> None:
    job = market.job(budget="10000", max_workers=2, title="Renovate the office")
    desk = ProposalDesk(db)
    first = desk.submit_proposal(job, parties["worker"], proposed_price=Decimal("6000"))
    second = desk.submit_proposal(job, parties["worker2"])
    third = desk.submit_proposal(job, parties["worker3"])

    contract_a = desk.approve_proposal(first, parties["client"])
    contract_b = desk.approve_proposal(second, parties["client"])
    with pytest.raises(CapacityExceededError):
        desk.approve_proposal(third, parties["client"])

    assert contract_a.allocated_amount == Decimal("6000.00")
    assert contract_b.allocated_amount == Decimal("4000.00")
    assert contract_a.percentage_of_budget == Decimal("60.00")
    db.refresh(job)
    assert job.allocated_total == Decimal("10000.00")
    assert job.remaining_budget == Decimal("0.00")
    db.refresh(third)
    assert third.status == "rejected"
    assert third.rejection_reason == "job fully staffed"

    for contract, worker in ((contract_a, "worker"), (contract_b, "worker2")):
        market.fund(contract)
        market.complete(contract, worker)
        market.verify(contract)

    db.refresh(job)
    assert job.status == "completed"

    reporter = PayoutReporter(db)
    summary = reporter.pending_payments()["summary"]
    assert summary["totalJobs"] == 1
    assert summary["totalWorkers"] == 2
    assert Decimal(summary["totalAmount"]) == Decimal("10000")
    assert Decimal(summary["totalCommissionCollected"]) == Decimal("1000")
    assert Decimal(summary["totalAmountToPay"]) == Decimal("9000")

    for contract in (contract_a, contract_b):
        reporter.mark_paid(contract, proof_url=PROOF_URL, deductions=None, admin=parties["admin"])

    db.refresh(parties["worker"])
    db.refresh(parties["worker2"])
    assert parties["worker"].balance == Decimal("5400.00")
    assert parties["worker2"].balance == Decimal("3600.00")
    assert reporter.pending_payments()["summary"]["totalWorkers"] == 0
    _assert_ledger_conserved(db)


def test_single_worker_payout_with_deductions(db, market, parties) -> None:
    contract = market.completed_and_verified(budget="1000")
    assert contract.total_price == Decimal("1100.00")

    transaction = PayoutReporter(db).mark_paid(
        contract,
        proof_url=PROOF_URL,
        deductions=Deductions(bank_fee=Decimal("10"), tax_amount=Decimal("20")),
        admin=parties["admin"],
    )
    assert transaction.amount == Decimal("870.00")
    assert transaction.metadata_json["grossAmount"] == "1000.00"
    assert transaction.metadata_json["commission"] == "100.00"

    payment = Repository(db).primary_payment(contract.id)
    assert payment.amount == Decimal("1100.00")
    assert payment.worker_payment_amount == Decimal("870.00")

    with pytest.raises(ValidationError):
        WithdrawalProcessor(db).request_withdrawal(parties["worker"], amount=Decimal("870"), destination=DESTINATION)
    _assert_ledger_conserved(db)


def test_partial_split_settles_both_parties(db, market, parties) -> None:
    contract = market.funded_contract(budget="2000")
    market.accept(contract)
    payment = Repository(db).primary_payment(contract.id)
    assert payment.amount == Decimal("2200.00")
    assert payment.escrow_net == Decimal("2000.00")

    engine = DisputeEngine(db)
    dispute = engine.open_dispute(contract, parties["client"], reason="only half the tiles were laid", category="incomplete_work")
    engine.assign(dispute, parties["admin"])
    engine.resolve(
        dispute,
        parties["admin"],
        outcome="partial_split",
        resolution="Half of the work was delivered",
        worker_ratio=Decimal("0.5"),
    )

    assert dispute.status == "resolved_partial"
    assert contract.status == "completed"
    db.refresh(payment)
    assert payment.status == "partially_refunded"
    assert payment.refunded_amount == Decimal("1000.00")
    assert payment.worker_payment_amount == Decimal("1000.00")
    db.refresh(parties["worker"])
    db.refresh(parties["client"])
    assert parties["worker"].balance == Decimal("1000.00")
    assert parties["client"].balance == Decimal("1000.00")
    job = db.get(Job, contract.job_id)
    db.refresh(job)
    assert job.status == "completed"

    processor = WithdrawalProcessor(db)
    request = processor.request_withdrawal(parties["worker"], amount=Decimal("1000"), destination=DESTINATION)
    processor.approve(request, parties["admin"])
    db.refresh(parties["worker"])
    assert parties["worker"].balance == Decimal("0.00")
    _assert_ledger_conserved(db)
