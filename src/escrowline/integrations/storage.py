from __future__ import annotations

import logging
import re
import uuid
from pathlib import Path
from typing import Protocol

import requests

from escrowline.config import Settings
from escrowline.errors import ExternalDependencyError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {
    "image/jpeg",
    "image/png",
    "image/webp",
    "application/pdf",
}
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class BlobStore(Protocol):
    def upload(self, filename: str, content: bytes, content_type: str) -> str: ...


def _safe_name(filename: str) -> str:
    stem = Path(filename or "upload").name
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", stem).strip("._") or "upload"
    return f"{uuid.uuid4().hex[:12]}_{cleaned}"


def validate_upload(filename: str, content: bytes, content_type: str) -> None:
    if not content:
        raise ValidationError("uploaded file is empty", filename=filename)
    if len(content) > MAX_UPLOAD_BYTES:
        raise ValidationError("uploaded file is too large", filename=filename, max_bytes=MAX_UPLOAD_BYTES)
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise ValidationError("unsupported file type", content_type=content_type)


class LocalBlobStore:
    def __init__(self, root: Path, *, public_prefix: str = "/uploads"):
        self.root = root
        self.public_prefix = public_prefix.rstrip("/")

    def upload(self, filename: str, content: bytes, content_type: str) -> str:
        validate_upload(filename, content, content_type)
        name = _safe_name(filename)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            (self.root / name).write_bytes(content)
        except OSError as exc:
            raise ExternalDependencyError(f"could not store upload: {exc}") from exc
        logger.info("Stored upload %s (%s bytes)", name, len(content))
        return f"{self.public_prefix}/{name}"


class HttpBlobStore:
    def __init__(self, url: str, *, token: str = "", timeout_sec: int = 30):
        self.url = url
        self.token = token
        self.timeout_sec = timeout_sec

    def upload(self, filename: str, content: bytes, content_type: str) -> str:
        validate_upload(filename, content, content_type)
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        files = {"file": (_safe_name(filename), content, content_type)}
        try:
            response = requests.post(self.url, files=files, headers=headers, timeout=self.timeout_sec)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ExternalDependencyError(f"blob upload failed: {exc}") from exc

        file_url = payload.get("url") or payload.get("fileUrl")
        if not file_url:
            raise ExternalDependencyError("blob store response did not include a url")
        return str(file_url)


def build_blob_store(settings: Settings) -> BlobStore:
    if settings.blob_storage_url:
        return HttpBlobStore(
            settings.blob_storage_url,
            token=settings.blob_storage_token,
            timeout_sec=settings.blob_storage_timeout_sec,
        )
    return LocalBlobStore(settings.upload_dir)
