from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from escrowline.core.ledger import BalanceLedger
from escrowline.core.service import Service
from escrowline.core.transitions import WITHDRAWAL_TRANSITIONS
from escrowline.db.base import utcnow
from escrowline.db.models import User, WithdrawalRequest
from escrowline.errors import (
    ForbiddenError,
    InsufficientBalanceError,
    InvalidTransitionError,
    ValidationError,
)
from escrowline.types import BankingInfo, to_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class WithdrawalProcessor(Service):
    def _move(self, request: WithdrawalRequest, target: str) -> None:
        WITHDRAWAL_TRANSITIONS.ensure(request.status, target)
        logger.info("Withdrawal %s status %s -> %s", request.id, request.status, target)
        request.status = target

    def _compensate(self, request: WithdrawalRequest, reason: str) -> None:
        """Return an approved (already debited) withdrawal to the user's balance."""
        if request.debit_transaction_id is None:
            return
        BalanceLedger(self.session).credit(
            request.user_id,
            Decimal(request.amount),
            tx_type="adjustment",
            description=f"Withdrawal #{request.id} reversed: {reason}",
            metadata={"withdrawalId": request.id, "reversedTransactionId": request.debit_transaction_id},
        )

    def request_withdrawal(
        self,
        user: int | User,
        *,
        amount: Decimal,
        destination: BankingInfo | dict[str, Any],
    ) -> WithdrawalRequest:
        """Create a pending request; the balance is only debited on approval."""
        amount = to_money(amount)
        if amount < self.settings.min_withdrawal:
            raise ValidationError(
                f"minimum withdrawal is {self.settings.min_withdrawal} {self.settings.currency}",
                amount=str(amount),
            )
        if not isinstance(destination, BankingInfo):
            try:
                destination = BankingInfo.model_validate(destination)
            except ValueError as exc:
                raise ValidationError(f"invalid destination account: {exc}") from exc

        with self.unit():
            owner = self.repo.resolve_user(user, lock=True)
            balance = Decimal(owner.balance)
            if amount > balance:
                raise InsufficientBalanceError(
                    "withdrawal exceeds available balance",
                    balance=str(balance),
                    requested=str(amount),
                )
            if self.repo.count_outstanding_withdrawals(owner.id):
                raise InvalidTransitionError("a withdrawal request is already in progress", user_id=owner.id)
            request = self.repo.add(
                WithdrawalRequest(
                    user_id=owner.id,
                    amount=amount,
                    destination_json=destination.model_dump(mode="json", by_alias=True),
                    status="pending",
                    balance_before_withdrawal=balance,
                    balance_after_withdrawal=balance - amount,
                )
            )
        logger.info("Withdrawal %s requested user=%s amount=%s", request.id, owner.id, amount)
        return request

    def approve(self, request: int | WithdrawalRequest, admin: User, *, notes: str = "") -> WithdrawalRequest:
        """Debit the balance; re-checks it at approval time."""
        self.require_admin(admin)
        with self.unit():
            locked = self.repo.resolve_withdrawal(request, lock=True)
            self._move(locked, "approved")
            transaction = BalanceLedger(self.session).debit(
                locked.user_id,
                Decimal(locked.amount),
                tx_type="withdrawal",
                description=f"Withdrawal #{locked.id}",
                metadata={"withdrawalId": locked.id, "processedBy": admin.id},
            )
            locked.debit_transaction_id = transaction.id
            locked.balance_before_withdrawal = transaction.balance_before
            locked.balance_after_withdrawal = transaction.balance_after
            locked.processed_by = admin.id
            locked.processed_at = utcnow()
            if notes:
                locked.admin_notes = notes
            self.notify(locked.user_id, "withdrawal", "Withdrawal approved", f"Withdrawal #{locked.id} was approved.")
        return locked

    def process(self, request: int | WithdrawalRequest, admin: User) -> WithdrawalRequest:
        self.require_admin(admin)
        with self.unit():
            locked = self.repo.resolve_withdrawal(request, lock=True)
            self._move(locked, "processing")
            locked.processed_by = admin.id
        return locked

    def complete(self, request: int | WithdrawalRequest, admin: User, *, proof_url: str = "") -> WithdrawalRequest:
        self.require_admin(admin)
        with self.unit():
            locked = self.repo.resolve_withdrawal(request, lock=True)
            self._move(locked, "completed")
            locked.completed_at = utcnow()
            locked.proof_url = proof_url
            self.notify(locked.user_id, "withdrawal", "Withdrawal sent", f"Withdrawal #{locked.id} was transferred.")
        return locked

    def reject(self, request: int | WithdrawalRequest, admin: User, *, reason: str) -> WithdrawalRequest:
        if not reason.strip():
            raise ValidationError("a rejection reason is required")
        self.require_admin(admin)
        with self.unit():
            locked = self.repo.resolve_withdrawal(request, lock=True)
            self._move(locked, "rejected")
            self._compensate(locked, reason.strip())
            locked.rejection_reason = reason.strip()
            locked.processed_by = admin.id
            locked.processed_at = utcnow()
            self.notify(locked.user_id, "withdrawal", "Withdrawal rejected", reason.strip())
        return locked

    def cancel(self, request: int | WithdrawalRequest, owner: User) -> WithdrawalRequest:
        with self.unit():
            locked = self.repo.resolve_withdrawal(request, lock=True)
            if locked.user_id != owner.id:
                raise ForbiddenError("only the requester can cancel a withdrawal", withdrawal_id=locked.id)
            self._move(locked, "cancelled")
            self._compensate(locked, "cancelled by user")
        return locked

    def list_for_user(
        self,
        user: User,
        *,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[WithdrawalRequest], int]:
        return self.repo.list_withdrawals(user_id=user.id, status=status, limit=limit, offset=offset)

    def list_all(
        self,
        admin: User,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WithdrawalRequest], int]:
        self.require_admin(admin)
        return self.repo.list_withdrawals(status=status, limit=limit, offset=offset)

    def stats(self, admin: User) -> dict[str, Any]:
        self.require_admin(admin)
        totals = self.repo.withdrawal_totals_by_status()
        by_status = {
            status: {"count": totals.get(status, (ZERO, 0))[1], "amount": str(totals.get(status, (ZERO, 0))[0])}
            for status in ("pending", "approved", "processing", "completed", "rejected", "cancelled")
        }
        return {
            "byStatus": by_status,
            "totalRequests": sum(count for _, count in totals.values()),
            "totalPaidOut": by_status["completed"]["amount"],
        }
