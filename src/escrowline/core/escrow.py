"""Payments held in escrow and their path to a worker payout."""

from __future__ import annotations

import logging
from decimal import Decimal

from escrowline.core.ledger import BalanceLedger
from escrowline.core.service import Service
from escrowline.core.transitions import CONTRACT_TRANSITIONS, PAYMENT_TRANSITIONS
from escrowline.db.base import utcnow
from escrowline.db.models import BalanceTransaction, Contract, Payment, PaymentProof, User
from escrowline.errors import (
    ConcurrencyConflictError,
    ForbiddenError,
    InvalidTransitionError,
    ValidationError,
)
from escrowline.types import Deductions, to_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
FUNDED_PAYMENT_STATUSES = {"held_escrow", "confirmed_for_payout"}
FUNDABLE_CONTRACT_STATUSES = {"pending", "ready"}


class EscrowLedger(Service):
    def _move(self, payment: Payment, target: str) -> None:
        PAYMENT_TRANSITIONS.ensure(payment.status, target)
        logger.info("Payment %s status %s -> %s", payment.id, payment.status, target)
        payment.status = target

    # funding

    def deposit_to_escrow(self, contract: int | Contract, amount: Decimal, *, payment_type: str = "escrow_deposit") -> Payment:
        """Hold the client's confirmed payment for a contract.

        A repeated confirmation with the same amount for an already-held payment
        returns the existing payment unchanged.
        """
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError("deposit amount must be positive", amount=str(amount))

        with self.unit():
            locked = self.repo.resolve_contract(contract, lock=True)
            payment = self.repo.primary_payment(locked.id, lock=True)
            if payment is not None and payment.status in FUNDED_PAYMENT_STATUSES:
                if Decimal(payment.amount) == amount:
                    logger.info("Payment %s already held for contract %s, ignoring repeat", payment.id, locked.id)
                    return payment
                raise InvalidTransitionError(
                    "escrow is already funded with a different amount",
                    contract_id=locked.id,
                    held=str(payment.amount),
                    received=str(amount),
                )
            if locked.status not in FUNDABLE_CONTRACT_STATUSES:
                raise InvalidTransitionError(f"contract cannot be funded while {locked.status}", contract_id=locked.id)
            if amount < Decimal(locked.total_price):
                raise ValidationError(
                    "deposit does not cover the contract total",
                    amount=str(amount),
                    total_price=str(locked.total_price),
                )

            if payment is None or payment.status != "pending":
                payment = self.repo.add(
                    Payment(
                        contract_id=locked.id,
                        payer_id=locked.client_id,
                        amount=amount,
                        platform_fee=locked.commission,
                        status="pending",
                        payment_type=payment_type,
                    )
                )
            else:
                payment.amount = amount
                payment.platform_fee = locked.commission
                payment.payment_type = payment_type
            self._move(payment, "held_escrow")
            payment.paid_at = utcnow()

            locked.escrow_status = "held_escrow"
            locked.payment_status = "held_escrow"
            if locked.status == "pending":
                CONTRACT_TRANSITIONS.ensure(locked.status, "ready")
                logger.info("Contract %s status pending -> ready", locked.id)
                locked.status = "ready"
            self.session.flush()
            self.notify(locked.worker_id, "payment", "Contract funded", f"Escrow for contract #{locked.id} is funded.")
            self.notify(locked.client_id, "payment", "Payment received", f"We received {amount} for contract #{locked.id}.")
        logger.info("Escrow funded contract=%s payment=%s amount=%s", locked.id, payment.id, amount)
        return payment

    def on_payment_confirmed(self, contract_id: int, amount: Decimal) -> Payment:
        """Entry point for the payment gateway's confirmation event."""
        return self.deposit_to_escrow(contract_id, amount)

    def release(self, contract: Contract) -> Payment | None:
        """Mark the held escrow as released after bilateral completion.

        Runs inside the caller's unit. The payment stays held until an admin
        verifies it for payout.
        """
        payment = self.repo.primary_payment(contract.id, lock=True)
        if payment is None or contract.escrow_status != "held_escrow":
            logger.warning("Contract %s completed without held escrow", contract.id)
            return None
        now = utcnow()
        contract.escrow_status = "released"
        contract.payment_status = "released"
        payment.escrow_released_at = now
        logger.info("Escrow released contract=%s payment=%s", contract.id, payment.id)
        return payment

    # payout

    def verify_for_payout(self, payment: int | Payment, admin: User, *, notes: str = "") -> Payment:
        self.require_admin(admin)
        with self.unit():
            locked = self.repo.resolve_payment(payment, lock=True)
            contract = self.repo.resolve_contract(locked.contract_id)
            if contract.status == "disputed" or locked.status == "disputed":
                raise InvalidTransitionError("payment is frozen by an open dispute", payment_id=locked.id)
            if contract.status != "completed":
                raise InvalidTransitionError("contract is not completed yet", contract_id=contract.id)
            if self.repo.count_confirmed_for_payout(locked.contract_id, exclude_payment_id=locked.id):
                raise ConcurrencyConflictError(
                    "another payment of this contract is already confirmed for payout",
                    contract_id=locked.contract_id,
                )
            self._move(locked, "confirmed_for_payout")
            locked.verified_for_payout_by = admin.id
            locked.verified_for_payout_at = utcnow()
            if notes:
                locked.admin_notes = notes
        logger.info("Payment %s verified for payout by admin %s", locked.id, admin.id)
        return locked

    def record_payout(
        self,
        contract: int | Contract,
        *,
        proof_url: str,
        deductions: Deductions | None = None,
        admin: User,
        notes: str = "",
    ) -> BalanceTransaction:
        """Credit the worker's net payout and close the payment.

        A second call for the same contract raises ``ConcurrencyConflictError``
        instead of crediting twice.
        """
        self.require_admin(admin)
        deductions = deductions or Deductions()
        proof_url = proof_url.strip()
        if not proof_url:
            raise ValidationError("proof of payment is required")

        with self.unit():
            locked = self.repo.resolve_contract(contract, lock=True)
            payment = self.repo.primary_payment(locked.id, lock=True)
            if payment is None:
                raise InvalidTransitionError("contract has no payment", contract_id=locked.id)
            if payment.status == "completed" or self.repo.find_payout_transaction(locked.id, locked.worker_id):
                raise ConcurrencyConflictError("payout was already recorded", contract_id=locked.id)
            if locked.status != "completed" or not (locked.client_confirmed and locked.doer_confirmed):
                raise InvalidTransitionError("contract is not completed by both parties", contract_id=locked.id)
            if payment.status != "confirmed_for_payout":
                raise InvalidTransitionError(
                    "payment must be verified for payout first",
                    payment_id=payment.id,
                    current=payment.status,
                )

            gross = locked.payable_amount
            commission = Decimal(locked.commission)
            net = gross - commission - deductions.total
            if net <= ZERO:
                raise ValidationError("deductions leave nothing to pay", net_amount=str(net))

            now = utcnow()
            transaction = BalanceLedger(self.session).credit(
                locked.worker_id,
                net,
                tx_type="payment",
                description=f"Payout for contract #{locked.id}",
                contract_id=locked.id,
                payment_id=payment.id,
                metadata={
                    "grossAmount": str(gross),
                    "commission": str(commission),
                    "deductions": deductions.breakdown(),
                    "netAmount": str(net),
                    "processedBy": admin.id,
                    "processedAt": now.isoformat(),
                    "proofUrl": proof_url,
                },
            )

            self._move(payment, "completed")
            payment.worker_payment_amount = net
            if notes:
                payment.admin_notes = notes
            locked.payment_status = "completed"
            locked.payment_processed_by = admin.id
            locked.payment_processed_at = now
            locked.payment_proof_url = proof_url
            locked.payment_admin_notes = notes

            for proof in self.repo.list_proofs(payment.id, kind="payout", active_only=True):
                proof.is_active = False
            self.repo.add(
                PaymentProof(
                    payment_id=payment.id,
                    kind="payout",
                    file_url=proof_url,
                    status="approved",
                    uploaded_by=admin.id,
                    uploaded_at=now,
                    verified_by=admin.id,
                    verified_at=now,
                    admin_notes=notes,
                    is_active=True,
                )
            )
            self.notify(locked.worker_id, "payment", "Payout sent", f"{net} was credited for contract #{locked.id}.")
        logger.info(
            "Payout recorded contract=%s worker=%s gross=%s net=%s tx=%s",
            locked.id,
            locked.worker_id,
            gross,
            net,
            transaction.id,
        )
        return transaction

    # deposit proofs

    def submit_deposit_proof(self, contract: int | Contract, *, file_url: str, uploader: User) -> PaymentProof:
        """Attach a client's transfer receipt; an approved receipt funds the escrow."""
        if not file_url.strip():
            raise ValidationError("file url is required")
        with self.unit():
            locked = self.repo.resolve_contract(contract, lock=True)
            if locked.client_id != uploader.id and not uploader.is_admin:
                raise ForbiddenError("only the client can submit a deposit proof", contract_id=locked.id)
            if locked.status not in FUNDABLE_CONTRACT_STATUSES:
                raise InvalidTransitionError(f"contract cannot be funded while {locked.status}", contract_id=locked.id)
            payment = self.repo.primary_payment(locked.id, lock=True)
            if payment is None:
                payment = self.repo.add(
                    Payment(
                        contract_id=locked.id,
                        payer_id=locked.client_id,
                        amount=locked.total_price,
                        platform_fee=locked.commission,
                        status="pending",
                        payment_type="contract_payment",
                    )
                )
            elif payment.status != "pending":
                raise InvalidTransitionError("payment is no longer awaiting a deposit", payment_id=payment.id)
            proof = self.repo.add(
                PaymentProof(
                    payment_id=payment.id,
                    kind="deposit",
                    file_url=file_url.strip(),
                    status="pending",
                    uploaded_by=uploader.id,
                    uploaded_at=utcnow(),
                    is_active=True,
                )
            )
        logger.info("Deposit proof %s submitted for contract %s", proof.id, locked.id)
        return proof

    def review_proof(self, proof: int | PaymentProof, admin: User, *, approve: bool, notes: str = "") -> PaymentProof:
        self.require_admin(admin)
        with self.unit():
            locked = self.repo.resolve_proof(proof, lock=True)
            if locked.status != "pending":
                raise InvalidTransitionError(f"proof was already {locked.status}", proof_id=locked.id)
            locked.status = "approved" if approve else "rejected"
            locked.verified_by = admin.id
            locked.verified_at = utcnow()
            locked.admin_notes = notes
            payment = self.repo.resolve_payment(locked.payment_id)
            if approve and locked.kind == "deposit" and payment.status == "pending":
                self.deposit_to_escrow(payment.contract_id, Decimal(payment.amount), payment_type=payment.payment_type)
            elif not approve:
                contract = self.repo.resolve_contract(payment.contract_id)
                self.notify(contract.client_id, "payment", "Proof rejected", notes or "Your payment proof was rejected.")
        logger.info("Proof %s %s by admin %s", locked.id, locked.status, admin.id)
        return locked
