from __future__ import annotations

from escrowline.config import get_settings
from escrowline.integrations.notifications import Notifier, build_notifier
from escrowline.integrations.storage import BlobStore, build_blob_store

_NOTIFIER: Notifier | None = None
_BLOB_STORE: BlobStore | None = None


def get_notifier() -> Notifier:
    global _NOTIFIER
    if _NOTIFIER is None:
        _NOTIFIER = build_notifier(get_settings())
    return _NOTIFIER


def get_blob_store() -> BlobStore:
    global _BLOB_STORE
    if _BLOB_STORE is None:
        _BLOB_STORE = build_blob_store(get_settings())
    return _BLOB_STORE
