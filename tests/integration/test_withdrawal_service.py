from __future__ import annotations

from decimal import Decimal

import pytest

from escrowline.core.ledger import BalanceLedger
from escrowline.core.withdrawals import WithdrawalProcessor
from escrowline.errors import (
    ForbiddenError,
    InsufficientBalanceError,
    InvalidTransitionError,
    ValidationError,
)

DESTINATION = {
    "accountHolder": "Rita Rich",
    "bankName": "Banco Galicia",
    "accountType": "checking",
    "cbu": "0070999030004001234561",
}


@pytest.fixture()
def rita(make_user):
    return make_user("Rita Rich", balance=Decimal("5000"))


def test_request_respects_minimum_and_balance(db, rita) -> None:
    processor = WithdrawalProcessor(db)
    with pytest.raises(ValidationError):
        processor.request_withdrawal(rita, amount=Decimal("999.99"), destination=DESTINATION)
    with pytest.raises(InsufficientBalanceError):
        processor.request_withdrawal(rita, amount=Decimal("6000"), destination=DESTINATION)
    with pytest.raises(ValidationError):
        processor.request_withdrawal(rita, amount=Decimal("1000"), destination={**DESTINATION, "cbu": "123"})


def test_happy_path_debits_on_approval(db, rita, parties, notifier) -> None:
    processor = WithdrawalProcessor(db, notifier=notifier)
    request = processor.request_withdrawal(rita, amount=Decimal("2000"), destination=DESTINATION)
    assert request.status == "pending"
    assert request.destination_json["bankName"] == "Banco Galicia"
    db.refresh(rita)
    assert rita.balance == Decimal("5000.00")

    with pytest.raises(ForbiddenError):
        processor.approve(request, rita)

    processor.approve(request, parties["admin"], notes="looks fine")
    assert request.status == "approved"
    assert request.debit_transaction_id is not None
    assert request.balance_before_withdrawal == Decimal("5000.00")
    assert request.balance_after_withdrawal == Decimal("3000.00")
    db.refresh(rita)
    assert rita.balance == Decimal("3000.00")

    processor.process(request, parties["admin"])
    assert request.status == "processing"
    with pytest.raises(InvalidTransitionError):
        processor.cancel(request, rita)

    processor.complete(request, parties["admin"], proof_url="https://files.example.com/wd-1.pdf")
    assert request.status == "completed"
    assert request.proof_url == "https://files.example.com/wd-1.pdf"
    db.refresh(rita)
    assert rita.balance == Decimal("3000.00")
    assert [item["title"] for item in notifier.sent] == ["Withdrawal approved", "Withdrawal sent"]
    assert BalanceLedger(db).audit_balance(rita)["consistent"] is True


def test_approval_rechecks_balance(db, rita, parties) -> None:
    processor = WithdrawalProcessor(db)
    request = processor.request_withdrawal(rita, amount=Decimal("4000"), destination=DESTINATION)
    BalanceLedger(db).adjust(rita, amount=Decimal("-2000"), reason="chargeback", admin=parties["admin"])

    with pytest.raises(InsufficientBalanceError):
        processor.approve(request, parties["admin"])
    db.refresh(request)
    db.refresh(rita)
    assert request.status == "pending"
    assert request.debit_transaction_id is None
    assert rita.balance == Decimal("3000.00")


def test_only_one_outstanding_request(db, rita) -> None:
    processor = WithdrawalProcessor(db)
    first = processor.request_withdrawal(rita, amount=Decimal("1500"), destination=DESTINATION)
    with pytest.raises(InvalidTransitionError):
        processor.request_withdrawal(rita, amount=Decimal("1000"), destination=DESTINATION)

    processor.cancel(first, rita)
    assert first.status == "cancelled"
    second = processor.request_withdrawal(rita, amount=Decimal("1000"), destination=DESTINATION)
    assert second.status == "pending"


def test_reject_after_approval_returns_the_money(db, rita, parties) -> None:
    processor = WithdrawalProcessor(db)
    request = processor.request_withdrawal(rita, amount=Decimal("2000"), destination=DESTINATION)
    processor.approve(request, parties["admin"])

    with pytest.raises(ValidationError):
        processor.reject(request, parties["admin"], reason="  ")

    processor.reject(request, parties["admin"], reason="account closed")
    assert request.status == "rejected"
    assert request.rejection_reason == "account closed"
    db.refresh(rita)
    assert rita.balance == Decimal("5000.00")
    audit = BalanceLedger(db).audit_balance(rita)
    assert audit["consistent"] is True
    assert Decimal(audit["latestBalanceAfter"]) == Decimal("5000")


def test_cancel_is_limited_to_the_owner(db, rita, parties) -> None:
    processor = WithdrawalProcessor(db)
    request = processor.request_withdrawal(rita, amount=Decimal("1200"), destination=DESTINATION)
    with pytest.raises(ForbiddenError):
        processor.cancel(request, parties["worker"])

    processor.cancel(request, rita)
    db.refresh(rita)
    assert rita.balance == Decimal("5000.00")
    with pytest.raises(InvalidTransitionError):
        processor.approve(request, parties["admin"])


def test_stats_and_listing(db, rita, make_user, parties) -> None:
    other = make_user("Omar Other", balance=Decimal("3000"))
    processor = WithdrawalProcessor(db)
    admin = parties["admin"]

    paid = processor.request_withdrawal(rita, amount=Decimal("1000"), destination=DESTINATION)
    processor.approve(paid, admin)
    processor.process(paid, admin)
    processor.complete(paid, admin)
    rejected = processor.request_withdrawal(other, amount=Decimal("2500"), destination=DESTINATION)
    processor.reject(rejected, admin, reason="name mismatch")
    processor.request_withdrawal(rita, amount=Decimal("1500"), destination=DESTINATION)

    stats = processor.stats(admin)
    assert stats["totalRequests"] == 3
    assert stats["byStatus"]["completed"]["count"] == 1
    assert Decimal(stats["totalPaidOut"]) == Decimal("1000")
    assert stats["byStatus"]["rejected"]["count"] == 1
    assert stats["byStatus"]["pending"]["count"] == 1
    assert stats["byStatus"]["cancelled"]["count"] == 0
    with pytest.raises(ForbiddenError):
        processor.stats(rita)

    mine, total = processor.list_for_user(rita)
    assert total == 2
    assert {item.user_id for item in mine} == {rita.id}
    pending, pending_total = processor.list_all(admin, status="pending")
    assert pending_total == 1
    assert pending[0].amount == Decimal("1500.00")


class _CrashingNotifier:
    def notify(self, user_id: int, category: str, title: str, message: str) -> None:
        raise ConnectionResetError("peer went away")


def test_approval_survives_a_crashing_notifier(db, rita, parties) -> None:
    processor = WithdrawalProcessor(db, notifier=_CrashingNotifier())
    request = processor.request_withdrawal(rita, amount=Decimal("1500"), destination=DESTINATION)

    approved = processor.approve(request, parties["admin"])
    assert approved.status == "approved"
    assert processor.warnings == [f"notification to user {rita.id} failed"]
    db.refresh(rita)
    assert rita.balance == Decimal("3500.00")
