from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import NoReturn

import typer
import uvicorn

from escrowline.api.app import create_app
from escrowline.config import get_settings
from escrowline.core.jobs import JobCatalog
from escrowline.core.ledger import BalanceLedger
from escrowline.core.payouts import PayoutReporter
from escrowline.db.init import init_database
from escrowline.db.models import User
from escrowline.db.repositories import Repository
from escrowline.db.session import SessionLocal, atomic
from escrowline.errors import EscrowlineError, NotFoundError
from escrowline.logging_config import configure_logging

app = typer.Typer(help="Escrowline CLI")
users_app = typer.Typer(help="Manage marketplace users")
jobs_app = typer.Typer(help="Job commands")
payouts_app = typer.Typer(help="Worker payout reconciliation")
ledger_app = typer.Typer(help="Balance ledger checks")

app.add_typer(users_app, name="users")
app.add_typer(jobs_app, name="jobs")
app.add_typer(payouts_app, name="payouts")
app.add_typer(ledger_app, name="ledger")

_INITIALIZED = False


def ensure_initialized() -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return
    init_database()
    _INITIALIZED = True


def _echo(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _fail(exc: EscrowlineError) -> NoReturn:
    _echo(exc.to_payload())
    raise typer.Exit(code=1)


def _admin(repo: Repository, admin_id: int) -> User:
    try:
        admin = repo.resolve_user(admin_id)
    except NotFoundError as exc:
        raise typer.BadParameter(exc.message) from exc
    if not admin.is_admin:
        raise typer.BadParameter(f"user {admin_id} is not an admin")
    return admin


@app.command("init")
def init_cmd() -> None:
    """Initialize database and data directories."""
    configure_logging()
    result = init_database()
    _echo({"ok": True, **result})


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
) -> None:
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    app_instance = create_app()
    uvicorn.run(app_instance, host=host or settings.app_host, port=port or settings.app_port)


@users_app.command("create")
def users_create(
    name: str = typer.Option(..., "--name"),
    email: str = typer.Option(..., "--email"),
    role: str = typer.Option("user", "--role"),
    banking_file: Path | None = typer.Option(None, "--banking-file", exists=True, readable=True),
) -> None:
    """Create a user and print its API token."""
    configure_logging()
    ensure_initialized()
    if role not in {"user", "admin"}:
        raise typer.BadParameter("role must be user or admin")
    banking = json.loads(banking_file.read_text(encoding="utf-8")) if banking_file else None
    with SessionLocal() as db:
        repo = Repository(db)
        with atomic(db):
            user = repo.create_user(name=name, email=email, role=role, banking_info=banking)
        _echo({"id": user.id, "name": user.name, "role": user.role, "apiToken": user.api_token})


@users_app.command("adjust")
def users_adjust(
    user_id: int = typer.Option(..., "--user-id"),
    amount: str = typer.Option(..., "--amount"),
    reason: str = typer.Option(..., "--reason"),
    admin_id: int = typer.Option(..., "--admin-id"),
    bonus: bool = typer.Option(False, "--bonus"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        repo = Repository(db)
        admin = _admin(repo, admin_id)
        try:
            transaction = BalanceLedger(db).adjust(user_id, amount=Decimal(amount), reason=reason, admin=admin, bonus=bonus)
        except EscrowlineError as exc:
            _fail(exc)
        _echo(
            {
                "transactionId": transaction.id,
                "type": transaction.type,
                "amount": str(transaction.amount),
                "balanceAfter": str(transaction.balance_after),
            }
        )


@jobs_app.command("create")
def jobs_create(
    client_id: int = typer.Option(..., "--client-id"),
    title: str = typer.Option(..., "--title"),
    budget: str = typer.Option(..., "--budget"),
    max_workers: int = typer.Option(1, "--max-workers"),
    description: str = typer.Option("", "--description"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        try:
            job = JobCatalog(db).create_job(
                client_id,
                title=title,
                budget=Decimal(budget),
                max_workers=max_workers,
                description=description,
            )
        except EscrowlineError as exc:
            _fail(exc)
        _echo({"id": job.id, "title": job.title, "budget": str(job.budget), "maxWorkers": job.max_workers})


def _report_filters(
    period: str,
    start_date: datetime | None,
    end_date: datetime | None,
    sort_by: str,
    sort_order: str,
    payment_method: str,
) -> dict[str, object]:
    return {
        "period": period,
        "start": start_date,
        "end": end_date,
        "sort_by": sort_by,
        "sort_order": sort_order,
        "payment_method": payment_method,
    }


@payouts_app.command("report")
def payouts_report(
    period: str = typer.Option("all", "--period"),
    start_date: datetime | None = typer.Option(None, "--start-date"),
    end_date: datetime | None = typer.Option(None, "--end-date"),
    sort_by: str = typer.Option("completedAt", "--sort-by"),
    sort_order: str = typer.Option("desc", "--sort-order"),
    payment_method: str = typer.Option("all", "--payment-method"),
) -> None:
    """Print the pending worker payouts grouped by job."""
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        try:
            report = PayoutReporter(db).pending_payments(
                **_report_filters(period, start_date, end_date, sort_by, sort_order, payment_method)
            )
        except EscrowlineError as exc:
            _fail(exc)
        _echo(report)


@payouts_app.command("export-csv")
def payouts_export_csv(
    output: Path = typer.Option(..., "--output"),
    period: str = typer.Option("all", "--period"),
    start_date: datetime | None = typer.Option(None, "--start-date"),
    end_date: datetime | None = typer.Option(None, "--end-date"),
    sort_by: str = typer.Option("completedAt", "--sort-by"),
    sort_order: str = typer.Option("desc", "--sort-order"),
    payment_method: str = typer.Option("all", "--payment-method"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        try:
            content = PayoutReporter(db).export_csv(
                **_report_filters(period, start_date, end_date, sort_by, sort_order, payment_method)
            )
        except EscrowlineError as exc:
            _fail(exc)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(content, encoding="utf-8")
    _echo({"ok": True, "path": str(output), "rows": max(len(content.splitlines()) - 1, 0)})


@payouts_app.command("fix-status")
def payouts_fix_status(
    contract_id: int = typer.Option(..., "--contract-id"),
    admin_id: int = typer.Option(..., "--admin-id"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        admin = _admin(Repository(db), admin_id)
        try:
            result = PayoutReporter(db).fix_status(contract_id, admin)
        except EscrowlineError as exc:
            _fail(exc)
        _echo(result)


@ledger_app.command("audit")
def ledger_audit(user_id: int = typer.Option(..., "--user-id")) -> None:
    """Compare a user's balance with the latest completed transaction."""
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        try:
            result = BalanceLedger(db).audit_balance(user_id)
        except EscrowlineError as exc:
            _fail(exc)
        _echo(result)
        if not result["consistent"]:
            raise typer.Exit(code=2)


if __name__ == "__main__":
    app()
