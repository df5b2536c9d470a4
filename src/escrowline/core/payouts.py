"""Admin payout queue: what is owed to workers, CSV export, and repairs."""

from __future__ import annotations

import csv
import io
import logging
from collections import OrderedDict
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from escrowline.core.escrow import EscrowLedger
from escrowline.core.ledger import BalanceLedger
from escrowline.core.service import Service
from escrowline.core.transitions import PAYMENT_TRANSITIONS
from escrowline.db.base import utcnow
from escrowline.db.models import BalanceTransaction, Contract, Payment, User
from escrowline.errors import ValidationError
from escrowline.types import Deductions

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CSV_COLUMNS = [
    "Contract #",
    "Job",
    "Client",
    "Worker",
    "DNI",
    "Phone",
    "Address",
    "Bank",
    "CBU",
    "Alias",
    "Amount",
    "Commission",
    "Total",
    "Date",
]
TERMINAL_PAYMENT_STATUSES = {"completed", "refunded", "partially_refunded"}
SORT_KEYS = {"completedAt", "amount", "clientName", "workerCount"}


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def report_window(
    period: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    now: datetime | None = None,
) -> tuple[datetime | None, datetime | None]:
    now = now or utcnow()
    if period == "all":
        return None, None
    if period == "daily":
        return now.replace(hour=0, minute=0, second=0, microsecond=0), now
    if period == "weekly":
        return now - timedelta(days=7), now
    if period == "monthly":
        return now - timedelta(days=30), now
    if period == "custom":
        if start is None and end is None:
            raise ValidationError("custom period needs a start or end date")
        start, end = _as_utc(start), _as_utc(end)
        if start is not None and end is not None and start > end:
            raise ValidationError("start date must be before end date")
        return start, end
    raise ValidationError(f"unknown period '{period}'")


def format_address(address: dict[str, Any]) -> str:
    parts = [address.get(key, "") for key in ("street", "city", "state", "postalCode", "country")]
    return ", ".join(str(part) for part in parts if part)


def _money(value: Decimal) -> str:
    return f"{value:.2f}"


class PayoutReporter(Service):
    def _worker_row(self, contract: Contract, payment: Payment, worker: User) -> dict[str, Any]:
        payable = contract.payable_amount
        commission = Decimal(contract.commission)
        banking = worker.banking_info_json or {}
        return {
            "contractId": contract.id,
            "paymentId": payment.id,
            "workerId": worker.id,
            "name": worker.name,
            "email": worker.email,
            "dni": worker.dni,
            "phone": worker.phone,
            "address": format_address(worker.address_json or {}),
            "bankingInfo": {
                "accountHolder": banking.get("accountHolder", ""),
                "bankName": banking.get("bankName", ""),
                "accountType": banking.get("accountType", ""),
                "cbu": banking.get("cbu", ""),
                "alias": banking.get("alias", ""),
                "bankType": banking.get("bankType", "bank_transfer"),
            },
            "amountToPay": _money(payable - commission),
            "commission": _money(commission),
            "total": _money(payable),
            "completedAt": contract.completed_at.isoformat() if contract.completed_at else None,
            "paymentStatus": payment.status,
        }

    def pending_payments(
        self,
        *,
        period: str = "all",
        start: datetime | None = None,
        end: datetime | None = None,
        sort_by: str = "completedAt",
        sort_order: str = "desc",
        payment_method: str = "all",
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Group verified, unpaid contracts by job with per-worker rows and report totals."""
        if sort_by not in SORT_KEYS:
            raise ValidationError(f"unknown sort key '{sort_by}'")
        if sort_order not in {"asc", "desc"}:
            raise ValidationError("sort order must be asc or desc")
        window_start, window_end = report_window(period, start=start, end=end, now=now)

        groups: OrderedDict[int, dict[str, Any]] = OrderedDict()
        for contract, payment in self.repo.payout_queue(start=window_start, end=window_end):
            worker = self.repo.resolve_user(contract.worker_id)
            row = self._worker_row(contract, payment, worker)
            if payment_method != "all" and row["bankingInfo"]["bankType"] != payment_method:
                continue
            group = groups.get(contract.job_id)
            if group is None:
                job = self.repo.resolve_job(contract.job_id)
                client = self.repo.resolve_user(contract.client_id)
                group = {
                    "jobId": job.id,
                    "jobTitle": job.title,
                    "client": {"id": client.id, "name": client.name, "email": client.email},
                    "completedAt": row["completedAt"],
                    "workers": [],
                }
                groups[contract.job_id] = group
            group["workers"].append(row)
            if row["completedAt"] and (group["completedAt"] is None or row["completedAt"] > group["completedAt"]):
                group["completedAt"] = row["completedAt"]

        data = []
        total_to_pay = ZERO
        total_commission = ZERO
        total_amount = ZERO
        bank_breakdown: dict[str, dict[str, Any]] = {}
        worker_count = 0
        for group in groups.values():
            to_pay = sum((Decimal(row["amountToPay"]) for row in group["workers"]), ZERO)
            commission = sum((Decimal(row["commission"]) for row in group["workers"]), ZERO)
            amount = sum((Decimal(row["total"]) for row in group["workers"]), ZERO)
            group["workerCount"] = len(group["workers"])
            group["totalAmountToPay"] = _money(to_pay)
            group["totalCommission"] = _money(commission)
            group["totalAmount"] = _money(amount)
            data.append(group)

            total_to_pay += to_pay
            total_commission += commission
            total_amount += amount
            worker_count += len(group["workers"])
            for row in group["workers"]:
                bank = row["bankingInfo"]["bankName"] or "Unknown"
                entry = bank_breakdown.setdefault(bank, {"count": 0, "amount": ZERO})
                entry["count"] += 1
                entry["amount"] += Decimal(row["amountToPay"])

        sort_fields = {
            "completedAt": lambda item: item["completedAt"] or "",
            "amount": lambda item: Decimal(item["totalAmountToPay"]),
            "clientName": lambda item: item["client"]["name"].lower(),
            "workerCount": lambda item: item["workerCount"],
        }
        data.sort(key=sort_fields[sort_by], reverse=sort_order == "desc")

        average = (total_to_pay / worker_count) if worker_count else ZERO
        return {
            "summary": {
                "period": period,
                "startDate": window_start.isoformat() if window_start else None,
                "endDate": window_end.isoformat() if window_end else None,
                "totalJobs": len(data),
                "totalWorkers": worker_count,
                "totalAmountToPay": _money(total_to_pay),
                "totalCommissionCollected": _money(total_commission),
                "totalAmount": _money(total_amount),
                "averagePaymentPerWorker": _money(average),
                "bankBreakdown": {
                    bank: {"count": entry["count"], "amount": _money(entry["amount"])}
                    for bank, entry in sorted(bank_breakdown.items())
                },
            },
            "data": data,
        }

    def export_csv(self, **filters: Any) -> str:
        """One line per worker payment, from the same rows as the report."""
        report = self.pending_payments(**filters)
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_COLUMNS)
        for group in report["data"]:
            for row in group["workers"]:
                banking = row["bankingInfo"]
                writer.writerow(
                    [
                        row["contractId"],
                        group["jobTitle"],
                        group["client"]["name"],
                        row["name"],
                        row["dni"],
                        row["phone"],
                        row["address"],
                        banking["bankName"],
                        banking["cbu"],
                        banking["alias"],
                        row["amountToPay"],
                        row["commission"],
                        row["total"],
                        (row["completedAt"] or "")[:10],
                    ]
                )
        return "\ufeff" + buffer.getvalue()

    def payment_detail(self, contract: int | Contract) -> dict[str, Any]:
        resolved = self.repo.resolve_contract(contract)
        job = self.repo.resolve_job(resolved.job_id)
        client = self.repo.resolve_user(resolved.client_id)
        worker = self.repo.resolve_user(resolved.worker_id)
        payments = self.repo.list_payments_for_contract(resolved.id)
        primary = payments[-1] if payments else None
        return {
            "contract": {
                "id": resolved.id,
                "status": resolved.status,
                "paymentStatus": resolved.payment_status,
                "escrowStatus": resolved.escrow_status,
                "price": _money(Decimal(resolved.price)),
                "commission": _money(Decimal(resolved.commission)),
                "totalPrice": _money(Decimal(resolved.total_price)),
                "allocatedAmount": _money(Decimal(resolved.allocated_amount)) if resolved.allocated_amount is not None else None,
                "completedAt": resolved.completed_at.isoformat() if resolved.completed_at else None,
                "paymentProcessedAt": resolved.payment_processed_at.isoformat() if resolved.payment_processed_at else None,
                "paymentProofUrl": resolved.payment_proof_url,
            },
            "job": {"id": job.id, "title": job.title, "budget": _money(Decimal(job.budget))},
            "client": {"id": client.id, "name": client.name, "email": client.email},
            "worker": self._worker_row(resolved, primary, worker) if primary is not None else {"workerId": worker.id},
            "payments": [
                {
                    "id": payment.id,
                    "amount": _money(Decimal(payment.amount)),
                    "platformFee": _money(Decimal(payment.platform_fee)),
                    "status": payment.status,
                    "paymentType": payment.payment_type,
                    "proofs": [
                        {
                            "id": proof.id,
                            "kind": proof.kind,
                            "fileUrl": proof.file_url,
                            "status": proof.status,
                            "isActive": proof.is_active,
                            "uploadedAt": proof.uploaded_at.isoformat(),
                        }
                        for proof in self.repo.list_proofs(payment.id)
                    ],
                }
                for payment in payments
            ],
        }

    def mark_paid(
        self,
        contract: int | Contract,
        *,
        proof_url: str,
        deductions: Deductions | None,
        admin: User,
        notes: str = "",
    ) -> BalanceTransaction:
        escrow = EscrowLedger(self.session, settings=self.settings, outbox=self.outbox)
        transaction = escrow.record_payout(contract, proof_url=proof_url, deductions=deductions, admin=admin, notes=notes)
        self.warnings = escrow.warnings
        return transaction

    def fix_status(self, contract: int | Contract, admin: User) -> dict[str, Any]:
        """Reconcile payment rows left non-terminal after a payout was already credited.

        Only payments with a repair edge to completed are moved; disputed or
        unfunded ones are reported as skipped. Proof history is never touched.
        Re-running it is a no-op.
        """
        self.require_admin(admin)
        with self.unit():
            locked = self.repo.resolve_contract(contract, lock=True)
            payout = self.repo.find_payout_transaction(locked.id, locked.worker_id)
            fixed_payments: list[int] = []
            skipped_payments: list[int] = []
            contract_fixed = False
            if payout is not None:
                for payment in self.repo.list_payments_for_contract(locked.id):
                    if payment.status in TERMINAL_PAYMENT_STATUSES:
                        continue
                    if not PAYMENT_TRANSITIONS.can_repair(payment.status, "completed"):
                        skipped_payments.append(payment.id)
                        continue
                    payment.status = "completed"
                    if payment.worker_payment_amount is None:
                        payment.worker_payment_amount = Decimal(payout.amount)
                    fixed_payments.append(payment.id)
                if locked.payment_status != "completed":
                    locked.payment_status = "completed"
                    contract_fixed = True
                if locked.payment_processed_at is None:
                    locked.payment_processed_at = payout.created_at
                    locked.payment_processed_by = payout.metadata_json.get("processedBy")
                    contract_fixed = True
        if fixed_payments or contract_fixed:
            logger.info("Fixed payout status contract=%s payments=%s", locked.id, fixed_payments)
        return {
            "contractId": locked.id,
            "fixedPaymentIds": fixed_payments,
            "skippedPaymentIds": skipped_payments,
            "contractUpdated": contract_fixed,
            "payoutTransactionId": payout.id if payout is not None else None,
        }

    def audit_balance(self, user: int | User) -> dict[str, Any]:
        return BalanceLedger(self.session).audit_balance(user)
