from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from escrowline.config import Settings, get_settings
from escrowline.core.runtime import get_notifier
from escrowline.db.models import User
from escrowline.db.repositories import Repository
from escrowline.db.session import atomic
from escrowline.errors import ForbiddenError
from escrowline.integrations.notifications import NotificationOutbox, Notifier


class Service:
    """Shared wiring for the lifecycle services.

    Services composed inside another service's unit share its outbox, so
    notifications go out once, after the outermost commit.
    """

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        notifier: Notifier | None = None,
        outbox: NotificationOutbox | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.repo = Repository(session)
        self.outbox = outbox or NotificationOutbox(notifier or get_notifier())
        self.warnings: list[str] = []

    @contextmanager
    def unit(self) -> Iterator[Session]:
        outermost = not self.session.info.get("atomic_depth")
        try:
            with atomic(self.session):
                yield self.session
        except Exception:
            if outermost:
                self.outbox.discard()
            raise
        if outermost:
            self.warnings = self.outbox.flush()

    def notify(self, user_id: int, category: str, title: str, message: str) -> None:
        self.outbox.add(user_id, category, title, message)

    @staticmethod
    def require_admin(actor: User) -> None:
        if not actor.is_admin:
            raise ForbiddenError("admin privileges required", user_id=actor.id)
