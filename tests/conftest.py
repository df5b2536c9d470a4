from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from decimal import Decimal
from pathlib import Path

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="escrowline-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'escrowline_test.db'}"
os.environ["DATA_DIR"] = str(_TEST_ROOT)
os.environ["UPLOAD_DIR"] = str(_TEST_ROOT / "uploads")
os.environ["APP_ENV"] = "test"
os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["NOTIFICATION_URL"] = ""
os.environ["BLOB_STORAGE_URL"] = ""

import pytest  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from escrowline.core.contracts import ContractLifecycleManager  # noqa: E402
from escrowline.core.escrow import EscrowLedger  # noqa: E402
from escrowline.core.jobs import JobCatalog  # noqa: E402
from escrowline.core.ledger import BalanceLedger  # noqa: E402
from escrowline.core.proposals import ProposalDesk  # noqa: E402
from escrowline.db.base import Base  # noqa: E402
from escrowline.db.models import Contract, Job, Payment, User  # noqa: E402
from escrowline.db.repositories import Repository  # noqa: E402
from escrowline.db.session import SessionLocal, atomic, engine  # noqa: E402
from escrowline.errors import ExternalDependencyError  # noqa: E402


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[dict[str, object]] = []

    def notify(self, user_id: int, category: str, title: str, message: str) -> None:
        self.sent.append({"user_id": user_id, "category": category, "title": title, "message": message})


class FailingNotifier:
    def notify(self, user_id: int, category: str, title: str, message: str) -> None:
        raise ExternalDependencyError("notification service unavailable", user_id=user_id)


class MemoryBlobStore:
    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}

    def upload(self, filename: str, content: bytes, content_type: str) -> str:
        url = f"memory://{len(self.files) + 1}/{filename}"
        self.files[url] = content
        return url


@pytest.fixture(autouse=True)
def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def db() -> Iterator[Session]:
    with SessionLocal() as session:
        yield session


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def failing_notifier() -> FailingNotifier:
    return FailingNotifier()


@pytest.fixture()
def blob_store() -> MemoryBlobStore:
    return MemoryBlobStore()


def _make_user(
    session: Session,
    name: str,
    *,
    role: str = "user",
    balance: Decimal | None = None,
    banking: dict[str, str] | None = None,
) -> User:
    with atomic(session):
        user = Repository(session).create_user(
            name=name,
            email=f"{name.lower().replace(' ', '.')}@example.com",
            role=role,
            api_token=f"token-{name.lower().replace(' ', '-')}",
            dni="30111222",
            phone="+54 11 5555-0000",
            address={"street": "Av. Corrientes 1234", "city": "Buenos Aires", "country": "AR"},
            banking_info=banking
            or {
                "accountHolder": name,
                "bankName": "Banco Nacion",
                "accountType": "savings",
                "cbu": "0110599520000001234567",
                "alias": f"{name.lower().replace(' ', '.')}.pago",
                "bankType": "bank_transfer",
            },
        )
        if balance is not None:
            BalanceLedger(session).credit(user, balance, tx_type="bonus", description="Opening balance")
    return user


@pytest.fixture()
def parties(db: Session) -> dict[str, User]:
    return {
        "client": _make_user(db, "Clara Client"),
        "worker": _make_user(db, "Walter Worker"),
        "worker2": _make_user(db, "Wanda Worker"),
        "worker3": _make_user(db, "Wes Worker"),
        "admin": _make_user(db, "Ada Admin", role="admin"),
    }


@pytest.fixture()
def make_user(db: Session):
    def _factory(name: str, **kwargs: object) -> User:
        return _make_user(db, name, **kwargs)  # type: ignore[arg-type]

    return _factory


class Market:
    """Drives contracts through the lifecycle services for multi-step tests."""

    def __init__(self, session: Session, parties: dict[str, User], notifier: RecordingNotifier):
        self.session = session
        self.parties = parties
        self.notifier = notifier

    def job(self, *, budget: str = "1000", max_workers: int = 1, title: str = "Paint the house") -> Job:
        return JobCatalog(self.session, notifier=self.notifier).create_job(
            self.parties["client"],
            title=title,
            budget=Decimal(budget),
            max_workers=max_workers,
        )

    def hire(self, job: Job, worker: str = "worker", *, price: str | None = None) -> Contract:
        desk = ProposalDesk(self.session, notifier=self.notifier)
        proposal = desk.submit_proposal(
            job,
            self.parties[worker],
            proposed_price=Decimal(price) if price is not None else None,
        )
        return desk.approve_proposal(proposal, self.parties["client"])

    def fund(self, contract: Contract) -> Payment:
        return EscrowLedger(self.session, notifier=self.notifier).deposit_to_escrow(contract, Decimal(contract.total_price))

    def funded_contract(self, *, budget: str = "1000", price: str | None = None) -> Contract:
        contract = self.hire(self.job(budget=budget), price=price)
        self.fund(contract)
        return contract

    def accept(self, contract: Contract, worker: str = "worker") -> Contract:
        return ContractLifecycleManager(self.session, notifier=self.notifier).accept(contract, self.parties[worker])

    def complete(self, contract: Contract, worker: str = "worker") -> Contract:
        manager = ContractLifecycleManager(self.session, notifier=self.notifier)
        if contract.status == "ready":
            manager.accept(contract, self.parties[worker])
        manager.confirm_completion(contract, self.parties["client"])
        return manager.confirm_completion(contract, self.parties[worker])

    def verify(self, contract: Contract) -> Payment:
        payment = Repository(self.session).primary_payment(contract.id)
        assert payment is not None
        return EscrowLedger(self.session, notifier=self.notifier).verify_for_payout(payment, self.parties["admin"])

    def completed_and_verified(self, *, budget: str = "1000", price: str | None = None) -> Contract:
        contract = self.funded_contract(budget=budget, price=price)
        self.complete(contract)
        self.verify(contract)
        return contract


@pytest.fixture()
def market(db: Session, parties: dict[str, User], notifier: RecordingNotifier) -> Market:
    return Market(db, parties, notifier)
