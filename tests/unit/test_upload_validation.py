from __future__ import annotations

from pathlib import Path

import pytest

from escrowline.errors import ValidationError
from escrowline.integrations.notifications import NotificationOutbox
from escrowline.integrations.storage import MAX_UPLOAD_BYTES, LocalBlobStore, validate_upload


def test_validate_upload_rules() -> None:
    validate_upload("proof.pdf", b"%PDF", "application/pdf")
    with pytest.raises(ValidationError):
        validate_upload("proof.pdf", b"", "application/pdf")
    with pytest.raises(ValidationError):
        validate_upload("proof.exe", b"MZ", "application/octet-stream")
    with pytest.raises(ValidationError):
        validate_upload("big.png", b"0" * (MAX_UPLOAD_BYTES + 1), "image/png")


def test_local_blob_store_writes_file(tmp_path: Path) -> None:
    store = LocalBlobStore(tmp_path)
    url = store.upload("transfer receipt.png", b"\x89PNG", "image/png")
    assert url.startswith("/uploads/")
    assert url.endswith("transfer_receipt.png")
    stored = list(tmp_path.iterdir())
    assert len(stored) == 1
    assert stored[0].read_bytes() == b"\x89PNG"


def test_outbox_collects_failures_as_warnings(notifier, failing_notifier) -> None:
    outbox = NotificationOutbox(failing_notifier)
    outbox.add(1, "payment", "Paid", "done")
    warnings = outbox.flush()
    assert warnings == ["notification service unavailable"]
    assert outbox.pending == []

    recording = NotificationOutbox(notifier)
    recording.add(2, "contract", "Hi", "hello")
    recording.discard()
    assert recording.flush() == []
    assert notifier.sent == []


class _BrokenNotifier:
    def notify(self, user_id: int, category: str, title: str, message: str) -> None:
        raise RuntimeError("socket closed")


def test_outbox_turns_unexpected_notifier_errors_into_warnings() -> None:
    outbox = NotificationOutbox(_BrokenNotifier())
    outbox.add(7, "withdrawal", "Withdrawal approved", "on its way")
    outbox.add(8, "withdrawal", "Withdrawal approved", "on its way")
    assert outbox.flush() == ["notification to user 7 failed", "notification to user 8 failed"]
    assert outbox.pending == []
