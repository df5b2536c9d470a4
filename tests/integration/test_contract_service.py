from __future__ import annotations

from decimal import Decimal

import pytest

from escrowline.core.contracts import ContractLifecycleManager
from escrowline.core.escrow import EscrowLedger
from escrowline.core.ledger import BalanceLedger
from escrowline.db.models import Job
from escrowline.db.repositories import Repository
from escrowline.db.session import atomic
from escrowline.errors import (
    BudgetExceededError,
    ForbiddenError,
    InvalidTransitionError,
    ValidationError,
)


def test_approved_proposal_creates_pending_contract_with_commission(db, market, parties) -> None:
    job = market.job(budget="1000")
    contract = market.hire(job)

    assert contract.status == "pending"
    assert contract.price == Decimal("1000.00")
    assert contract.commission == Decimal("100.00")
    assert contract.total_price == Decimal("1100.00")
    assert contract.allocated_amount is None
    assert contract.client_id == parties["client"].id
    db.refresh(job)
    assert job.status == "in_progress"
    assert job.selected_workers == [parties["worker"].id]
    proposal = Repository(db).resolve_proposal(contract.proposal_id)
    assert proposal.status == "approved"


def test_worker_cannot_accept_unfunded_contract(market) -> None:
    contract = market.hire(market.job())
    with pytest.raises(InvalidTransitionError):
        market.accept(contract)


def test_deposit_funds_escrow_and_repeat_is_a_no_op(db, market) -> None:
    contract = market.hire(market.job())
    payment = market.fund(contract)

    assert payment.status == "held_escrow"
    assert payment.platform_fee == Decimal("100.00")
    assert contract.status == "ready"
    assert contract.escrow_status == "held_escrow"

    again = EscrowLedger(db).deposit_to_escrow(contract, Decimal("1100"))
    assert again.id == payment.id
    assert len(Repository(db).list_payments_for_contract(contract.id)) == 1

    with pytest.raises(InvalidTransitionError):
        EscrowLedger(db).deposit_to_escrow(contract, Decimal("900"))


def test_deposit_must_cover_total_price(db, market) -> None:
    contract = market.hire(market.job())
    with pytest.raises(ValidationError):
        EscrowLedger(db).deposit_to_escrow(contract, Decimal("1000"))
    assert Repository(db).primary_payment(contract.id) is None


def test_bilateral_confirmation_completes_once(db, market, parties, notifier) -> None:
    contract = market.funded_contract()
    market.accept(contract)
    manager = ContractLifecycleManager(db, notifier=notifier)

    manager.confirm_completion(contract, parties["client"])
    assert contract.status == "awaiting_confirmation"
    assert contract.client_confirmed is True
    assert contract.doer_confirmed is False

    manager.confirm_completion(contract, parties["client"])
    assert contract.status == "awaiting_confirmation"

    manager.confirm_completion(contract, parties["worker"])
    assert contract.status == "completed"
    assert contract.client_confirmed and contract.doer_confirmed
    assert contract.completed_at is not None
    assert contract.escrow_status == "released"

    with pytest.raises(InvalidTransitionError) as excinfo:
        manager.confirm_completion(contract, parties["worker"])
    assert excinfo.value.details["current"] == "completed"
    assert contract.status == "completed"

    job = db.get(Job, contract.job_id)
    db.refresh(job)
    assert job.status == "completed"
    assert sum(1 for item in notifier.sent if item["title"] == "Contract completed") == 2


def test_outsider_cannot_confirm(market, parties, db) -> None:
    contract = market.funded_contract()
    market.accept(contract)
    with pytest.raises(ForbiddenError):
        ContractLifecycleManager(db).confirm_completion(contract, parties["worker2"])


def test_extension_with_amount_charges_the_client(db, market, parties) -> None:
    ledger = BalanceLedger(db)
    with atomic(db):
        ledger.credit(parties["client"], Decimal("500"), tx_type="bonus", description="Promo credit")

    contract = market.hire(market.job(budget="2000"), price="1000")
    market.fund(contract)
    market.accept(contract)
    manager = ContractLifecycleManager(db)

    manager.request_extension(contract, parties["client"], days=5, amount=Decimal("100"), notes="more rooms")
    assert contract.extension_requested_by == parties["client"].id

    with pytest.raises(ForbiddenError):
        manager.approve_extension(contract, parties["client"])

    manager.approve_extension(contract, parties["worker"])
    assert contract.has_been_extended is True
    assert contract.price == Decimal("1100.00")
    assert contract.commission == Decimal("110.00")
    assert contract.total_price == Decimal("1210.00")
    assert len(contract.extension_history_json) == 1
    assert contract.extension_history_json[0]["days"] == 5

    payment = Repository(db).primary_payment(contract.id)
    assert payment.amount == Decimal("1210.00")
    db.refresh(parties["client"])
    assert parties["client"].balance == Decimal("390.00")
    assert ledger.audit_balance(parties["client"])["consistent"] is True

    with pytest.raises(InvalidTransitionError):
        manager.request_extension(contract, parties["client"], days=2)


def test_extension_beyond_budget_is_rejected(db, market, parties) -> None:
    contract = market.funded_contract(budget="1000")
    market.accept(contract)
    with pytest.raises(BudgetExceededError):
        ContractLifecycleManager(db).request_extension(contract, parties["client"], days=3, amount=Decimal("50"))


def test_rejected_extension_is_kept_in_history(db, market, parties) -> None:
    contract = market.funded_contract()
    market.accept(contract)
    manager = ContractLifecycleManager(db)
    manager.request_extension(contract, parties["client"], days=2)
    manager.reject_extension(contract, parties["worker"], reason="busy")

    assert contract.extension_requested_by is None
    assert contract.has_been_extended is False
    assert contract.extension_history_json[-1]["rejectedBy"] == parties["worker"].id


def test_price_reduction_refunds_funded_client(db, market, parties) -> None:
    contract = market.funded_contract()
    manager = ContractLifecycleManager(db)

    with pytest.raises(ForbiddenError):
        manager.modify_price(contract, parties["worker"], new_price=Decimal("800"), reason="scope")

    manager.modify_price(contract, parties["client"], new_price=Decimal("800"), reason="smaller scope")
    assert contract.price == Decimal("800.00")
    assert contract.total_price == Decimal("880.00")
    assert contract.price_history_json[0]["previousPrice"] == "1000.00"

    db.refresh(parties["client"])
    assert parties["client"].balance == Decimal("220.00")
    job = db.get(Job, contract.job_id)
    db.refresh(job)
    assert job.allocated_total == Decimal("800.00")


def test_cancel_refunds_and_frees_the_slot(db, market, parties) -> None:
    contract = market.funded_contract()
    ContractLifecycleManager(db).cancel(contract, parties["client"], reason="changed plans")

    assert contract.status == "cancelled"
    assert contract.escrow_status == "refunded"
    payment = Repository(db).primary_payment(contract.id)
    assert payment.status == "refunded"
    assert payment.refunded_amount == Decimal("1100.00")
    db.refresh(parties["client"])
    assert parties["client"].balance == Decimal("1100.00")

    job = db.get(Job, contract.job_id)
    db.refresh(job)
    assert job.status == "open"
    assert job.allocated_total == Decimal("0.00")
    assert job.selected_workers == []


def test_dispute_freezes_confirmation_and_price(db, market, parties) -> None:
    contract = market.funded_contract()
    market.accept(contract)
    manager = ContractLifecycleManager(db)
    manager.open_dispute(contract, parties["worker"], reason="client unreachable", category="payment_issues")

    assert contract.status == "disputed"
    assert contract.payment_status == "disputed"
    with pytest.raises(InvalidTransitionError):
        manager.confirm_completion(contract, parties["client"])
    with pytest.raises(InvalidTransitionError):
        manager.modify_price(contract, parties["client"], new_price=Decimal("900"), reason="discount")
    with pytest.raises(InvalidTransitionError):
        manager.cancel(contract, parties["client"])
    assert contract.price == Decimal("1000.00")
