"""Single writer for user balances.

Every balance change appends a BalanceTransaction in the same unit of work as
the balance update, so the latest completed transaction's ``balance_after``
always equals the user's balance.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from escrowline.db.models import BalanceTransaction, User
from escrowline.db.repositories import Repository
from escrowline.db.session import atomic
from escrowline.errors import InsufficientBalanceError, ValidationError
from escrowline.types import to_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CREDIT_TYPES = {"payment", "refund", "bonus"}


def _check_sign(tx_type: str, amount: Decimal) -> None:
    if tx_type in CREDIT_TYPES and amount <= ZERO:
        raise ValidationError(f"{tx_type} transactions must be positive", amount=str(amount))
    if tx_type == "withdrawal" and amount >= ZERO:
        raise ValidationError("withdrawal transactions must be negative", amount=str(amount))
    if tx_type == "adjustment" and amount == ZERO:
        raise ValidationError("adjustment cannot be zero")
    if tx_type not in CREDIT_TYPES | {"withdrawal", "adjustment"}:
        raise ValidationError(f"unknown transaction type '{tx_type}'")


class BalanceLedger:
    def __init__(self, session: Session):
        self.session = session
        self.repo = Repository(session)

    def post(
        self,
        user: int | User,
        *,
        tx_type: str,
        amount: Decimal,
        description: str,
        contract_id: int | None = None,
        payment_id: int | None = None,
        metadata: dict[str, Any] | None = None,
        allow_negative: bool = False,
    ) -> BalanceTransaction:
        """Append a completed transaction and move the balance by ``amount``.

        The user row is re-read under lock so ``balance_before`` is never a
        cached value. Must run inside the caller's atomic unit.
        """
        amount = to_money(amount)
        _check_sign(tx_type, amount)

        locked = self.repo.resolve_user(user, lock=True)
        before = Decimal(locked.balance)
        after = before + amount
        if after < ZERO and not allow_negative:
            raise InsufficientBalanceError(
                "balance does not cover this operation",
                balance=str(before),
                requested=str(-amount),
            )

        transaction = self.repo.add(
            BalanceTransaction(
                user_id=locked.id,
                type=tx_type,
                amount=amount,
                balance_before=before,
                balance_after=after,
                description=description,
                status="completed",
                related_contract_id=contract_id,
                related_payment_id=payment_id,
                metadata_json=metadata or {},
            )
        )
        locked.balance = after
        self.session.flush()
        logger.info(
            "Ledger %s user=%s amount=%s balance %s -> %s tx=%s",
            tx_type,
            locked.id,
            amount,
            before,
            after,
            transaction.id,
        )
        return transaction

    def credit(self, user: int | User, amount: Decimal, *, tx_type: str = "payment", **kwargs: Any) -> BalanceTransaction:
        return self.post(user, tx_type=tx_type, amount=to_money(amount), **kwargs)

    def debit(
        self,
        user: int | User,
        amount: Decimal,
        *,
        tx_type: str = "adjustment",
        **kwargs: Any,
    ) -> BalanceTransaction:
        return self.post(user, tx_type=tx_type, amount=-to_money(amount), **kwargs)

    def adjust(
        self,
        user: int | User,
        *,
        amount: Decimal,
        reason: str,
        admin: User,
        bonus: bool = False,
    ) -> BalanceTransaction:
        """Admin-issued bonus or signed adjustment."""
        if not reason.strip():
            raise ValidationError("a reason is required for manual adjustments")
        with atomic(self.session):
            return self.post(
                user,
                tx_type="bonus" if bonus else "adjustment",
                amount=amount,
                description=reason.strip(),
                metadata={"processedBy": admin.id},
            )

    def audit_balance(self, user: int | User) -> dict[str, Any]:
        resolved = self.repo.resolve_user(user)
        latest = self.repo.latest_completed_transaction(resolved.id)
        balance = Decimal(resolved.balance)
        expected = Decimal(latest.balance_after) if latest is not None else ZERO
        return {
            "userId": resolved.id,
            "balance": str(balance),
            "latestBalanceAfter": str(expected),
            "latestTransactionId": latest.id if latest is not None else None,
            "consistent": balance == expected,
        }

    def summary(self, user: int | User) -> dict[str, Any]:
        resolved = self.repo.resolve_user(user)
        totals = self.repo.transaction_totals_by_type(resolved.id)
        by_type = {
            tx_type: {"total": str(total), "count": count} for tx_type, (total, count) in sorted(totals.items())
        }
        return {
            "userId": resolved.id,
            "balance": str(Decimal(resolved.balance)),
            "totalsByType": by_type,
            "pendingWithdrawals": self.repo.count_outstanding_withdrawals(resolved.id),
        }
