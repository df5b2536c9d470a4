from __future__ import annotations

import csv
import io
from decimal import Decimal

import pytest

from escrowline.core.escrow import EscrowLedger
from escrowline.core.payouts import CSV_COLUMNS, PayoutReporter
from escrowline.db.repositories import Repository
from escrowline.db.session import atomic
from escrowline.errors import (
    ConcurrencyConflictError,
    ForbiddenError,
    InvalidTransitionError,
    ValidationError,
)
from escrowline.types import Deductions

PROOF_URL = "https://files.example.com/transfer-001.pdf"


def test_verify_requires_completed_contract(db, market, parties) -> None:
    contract = market.funded_contract()
    payment = Repository(db).primary_payment(contract.id)
    with pytest.raises(InvalidTransitionError):
        EscrowLedger(db).verify_for_payout(payment, parties["admin"])
    market.complete(contract)
    with pytest.raises(ForbiddenError):
        EscrowLedger(db).verify_for_payout(payment, parties["worker"])
    verified = EscrowLedger(db).verify_for_payout(payment, parties["admin"], notes="bank ok")
    assert verified.status == "confirmed_for_payout"
    assert verified.verified_for_payout_by == parties["admin"].id


def test_mark_paid_requires_verification(db, market, parties) -> None:
    contract = market.funded_contract()
    market.complete(contract)
    with pytest.raises(InvalidTransitionError):
        PayoutReporter(db).mark_paid(contract, proof_url=PROOF_URL, deductions=None, admin=parties["admin"])


def test_mark_paid_requires_proof(db, market, parties) -> None:
    contract = market.completed_and_verified()
    with pytest.raises(ValidationError):
        PayoutReporter(db).mark_paid(contract, proof_url="  ", deductions=None, admin=parties["admin"])


def test_pending_report_groups_and_totals(db, market, parties) -> None:
    first = market.completed_and_verified()
    second = market.completed_and_verified(budget="2500")

    report = PayoutReporter(db).pending_payments()
    summary = report["summary"]
    assert summary["totalJobs"] == 2
    assert summary["totalWorkers"] == 2
    assert summary["totalAmount"] == "3500.00"
    assert summary["totalCommissionCollected"] == "350.00"
    assert summary["totalAmountToPay"] == "3150.00"
    assert summary["averagePaymentPerWorker"] == "1575.00"
    assert summary["bankBreakdown"] == {"Banco Nacion": {"count": 2, "amount": "3150.00"}}

    contract_ids = {row["contractId"] for group in report["data"] for row in group["workers"]}
    assert contract_ids == {first.id, second.id}
    row = report["data"][0]["workers"][0]
    assert row["bankingInfo"]["cbu"] == "0110599520000001234567"
    assert row["address"] == "Av. Corrientes 1234, Buenos Aires, AR"

    by_amount = PayoutReporter(db).pending_payments(sort_by="amount", sort_order="asc")
    assert [group["totalAmountToPay"] for group in by_amount["data"]] == ["900.00", "2250.00"]

    assert PayoutReporter(db).pending_payments(payment_method="mercadopago")["summary"]["totalWorkers"] == 0
    with pytest.raises(ValidationError):
        PayoutReporter(db).pending_payments(sort_by="salary")


def test_csv_totals_match_summary(db, market) -> None:
    market.completed_and_verified()
    market.completed_and_verified(budget="1234.50")
    reporter = PayoutReporter(db)

    content = reporter.export_csv()
    assert content.startswith("\ufeff")
    rows = list(csv.reader(io.StringIO(content.lstrip("\ufeff"))))
    assert rows[0] == CSV_COLUMNS
    body = rows[1:]

    summary = reporter.pending_payments()["summary"]
    amount_index = CSV_COLUMNS.index("Amount")
    commission_index = CSV_COLUMNS.index("Commission")
    assert len(body) == summary["totalWorkers"]
    assert sum(Decimal(line[amount_index]) for line in body) == Decimal(summary["totalAmountToPay"])
    assert sum(Decimal(line[commission_index]) for line in body) == Decimal(summary["totalCommissionCollected"])


def test_payout_is_recorded_once(db, market, parties) -> None:
    contract = market.completed_and_verified(price="1000")
    reporter = PayoutReporter(db)

    transaction = reporter.mark_paid(
        contract,
        proof_url=PROOF_URL,
        deductions=Deductions(bank_fee=Decimal("10"), tax_amount=Decimal("20")),
        admin=parties["admin"],
        notes="paid by transfer",
    )
    assert transaction.amount == Decimal("870.00")
    assert transaction.type == "payment"
    assert transaction.metadata_json["deductions"]["total"] == "30.00"

    with pytest.raises(ConcurrencyConflictError):
        reporter.mark_paid(contract, proof_url=PROOF_URL, deductions=None, admin=parties["admin"])

    worker = parties["worker"]
    db.refresh(worker)
    assert worker.balance == Decimal("870.00")
    rows, total = Repository(db).list_transactions(worker.id)
    assert total == 1

    payment = Repository(db).primary_payment(contract.id)
    assert payment.status == "completed"
    assert payment.worker_payment_amount == Decimal("870.00")
    assert contract.payment_status == "completed"
    assert contract.payment_proof_url == PROOF_URL
    proofs = Repository(db).list_proofs(payment.id, kind="payout")
    assert [proof.is_active for proof in proofs] == [True]
    assert reporter.pending_payments()["summary"]["totalWorkers"] == 0


def test_fix_status_repairs_only_what_is_left_behind(db, market, parties) -> None:
    contract = market.completed_and_verified()
    reporter = PayoutReporter(db)
    reporter.mark_paid(contract, proof_url=PROOF_URL, deductions=None, admin=parties["admin"])

    repo = Repository(db)
    payment = repo.primary_payment(contract.id)
    with atomic(db):
        payment.status = "confirmed_for_payout"
        contract.payment_status = "released"
    proof_count = len(repo.list_proofs(payment.id))

    result = reporter.fix_status(contract, parties["admin"])
    assert result["fixedPaymentIds"] == [payment.id]
    assert result["contractUpdated"] is True
    assert result["payoutTransactionId"] is not None
    db.refresh(payment)
    assert payment.status == "completed"
    assert len(repo.list_proofs(payment.id)) == proof_count

    again = reporter.fix_status(contract, parties["admin"])
    assert again["fixedPaymentIds"] == []
    assert again["contractUpdated"] is False


def test_fix_status_leaves_disputed_payments_alone(db, market, parties) -> None:
    contract = market.completed_and_verified()
    reporter = PayoutReporter(db)
    reporter.mark_paid(contract, proof_url=PROOF_URL, deductions=None, admin=parties["admin"])

    payment = Repository(db).primary_payment(contract.id)
    with atomic(db):
        payment.status = "disputed"

    result = reporter.fix_status(contract, parties["admin"])
    assert result["fixedPaymentIds"] == []
    assert result["skippedPaymentIds"] == [payment.id]
    db.refresh(payment)
    assert payment.status == "disputed"


def test_fix_status_without_payout_changes_nothing(db, market, parties) -> None:
    contract = market.completed_and_verified()
    result = PayoutReporter(db).fix_status(contract, parties["admin"])
    assert result == {
        "contractId": contract.id,
        "fixedPaymentIds": [],
        "skippedPaymentIds": [],
        "contractUpdated": False,
        "payoutTransactionId": None,
    }
    assert Repository(db).primary_payment(contract.id).status == "confirmed_for_payout"


def test_deposit_proof_review_funds_escrow(db, market, parties, notifier) -> None:
    contract = market.hire(market.job())
    escrow = EscrowLedger(db, notifier=notifier)

    proof = escrow.submit_deposit_proof(contract, file_url="https://files.example.com/deposit.png", uploader=parties["client"])
    assert proof.status == "pending"
    with pytest.raises(ForbiddenError):
        escrow.submit_deposit_proof(contract, file_url="https://x/y.png", uploader=parties["worker"])

    reviewed = escrow.review_proof(proof, parties["admin"], approve=True, notes="matches bank statement")
    assert reviewed.status == "approved"
    assert contract.status == "ready"
    payment = Repository(db).primary_payment(contract.id)
    assert payment.status == "held_escrow"
    assert payment.amount == Decimal("1100.00")

    with pytest.raises(InvalidTransitionError):
        escrow.review_proof(proof, parties["admin"], approve=False)


def test_rejected_deposit_proof_notifies_client(db, market, parties, notifier) -> None:
    contract = market.hire(market.job())
    escrow = EscrowLedger(db, notifier=notifier)
    proof = escrow.submit_deposit_proof(contract, file_url="https://files.example.com/blurry.png", uploader=parties["client"])
    escrow.review_proof(proof, parties["admin"], approve=False, notes="unreadable")

    assert contract.status == "pending"
    assert notifier.sent[-1]["user_id"] == parties["client"].id
    assert notifier.sent[-1]["message"] == "unreadable"


def test_payment_detail_lists_proof_history(db, market, parties) -> None:
    contract = market.completed_and_verified()
    reporter = PayoutReporter(db)
    reporter.mark_paid(contract, proof_url=PROOF_URL, deductions=None, admin=parties["admin"])

    detail = reporter.payment_detail(contract.id)
    assert detail["contract"]["paymentStatus"] == "completed"
    assert detail["worker"]["workerId"] == parties["worker"].id
    proofs = detail["payments"][0]["proofs"]
    assert proofs[0]["kind"] == "payout"
    assert proofs[0]["fileUrl"] == PROOF_URL
