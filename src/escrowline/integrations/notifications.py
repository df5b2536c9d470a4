from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import requests

from escrowline.config import Settings
from escrowline.errors import ExternalDependencyError

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, user_id: int, category: str, title: str, message: str) -> None: ...


class LoggingNotifier:
    def notify(self, user_id: int, category: str, title: str, message: str) -> None:
        logger.info("Notification user=%s category=%s title=%s", user_id, category, title)


class HttpNotifier:
    def __init__(self, url: str, *, token: str = "", timeout_sec: int = 10):
        self.url = url
        self.token = token
        self.timeout_sec = timeout_sec

    def notify(self, user_id: int, category: str, title: str, message: str) -> None:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        payload = {"userId": user_id, "category": category, "title": title, "message": message}
        try:
            response = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout_sec)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ExternalDependencyError(f"notification dispatch failed: {exc}", user_id=user_id) from exc


@dataclass(slots=True)
class PendingNotification:
    user_id: int
    category: str
    title: str
    message: str


@dataclass
class NotificationOutbox:
    """Collects notifications during an atomic unit and sends them after commit."""

    notifier: Notifier
    pending: list[PendingNotification] = field(default_factory=list)

    def add(self, user_id: int, category: str, title: str, message: str) -> None:
        self.pending.append(PendingNotification(user_id, category, title, message))

    def flush(self) -> list[str]:
        warnings: list[str] = []
        queued, self.pending = self.pending, []
        for item in queued:
            try:
                self.notifier.notify(item.user_id, item.category, item.title, item.message)
            except ExternalDependencyError as exc:
                logger.warning("Notification to user %s failed: %s", item.user_id, exc.message)
                warnings.append(exc.message)
            except Exception:
                logger.exception("Notifier raised unexpectedly for user %s", item.user_id)
                warnings.append(f"notification to user {item.user_id} failed")
        return warnings

    def discard(self) -> None:
        self.pending = []


def build_notifier(settings: Settings) -> Notifier:
    if settings.notification_url:
        return HttpNotifier(
            settings.notification_url,
            token=settings.notification_token,
            timeout_sec=settings.notification_timeout_sec,
        )
    return LoggingNotifier()
