"""Document object storage.

The default store writes under ``DOCUMENT_STORAGE_DIR``; any other
``DocumentStore`` can be swapped in with ``set_document_store``.
"""

from __future__ import annotations

import base64
import binascii
import mimetypes
import os
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Optional

from config import settings
from services.session_token import create_document_token

DOCUMENT_TYPES = ("front_document", "back_document", "face_image", "best_frame")


class DocumentStore(ABC):
    @abstractmethod
    def put_bytes(self, key: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def read_bytes(self, key: str) -> bytes:
        """Return the stored object; raises ``FileNotFoundError`` when absent."""
        raise NotImplementedError


class LocalDocumentStore(DocumentStore):
    """Filesystem-backed store keyed by relative object paths."""

    def __init__(self, root: Optional[str] = None):
        self._root = root

    @property
    def root(self) -> Path:
        return Path(self._root or settings.DOCUMENT_STORAGE_DIR)

    def _resolve(self, key: str) -> Path:
        target = (self.root / key).resolve()
        if not str(target).startswith(str(self.root.resolve())):
            raise ValueError(f"Invalid object key: {key}")
        return target

    def put_bytes(self, key: str, data: bytes, content_type: str) -> str:
        target = self._resolve(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_suffix(target.suffix + ".part")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, target)
        return key

    def read_bytes(self, key: str) -> bytes:
        return self._resolve(key).read_bytes()


_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    global _store
    if _store is None:
        _store = LocalDocumentStore()
    return _store


def set_document_store(store: Optional[DocumentStore]) -> None:
    global _store
    _store = store


def _decode_image(encoded: str) -> bytes:
    value = encoded.strip()
    if value.startswith("data:") and "," in value:
        value = value.split(",", 1)[1]
    try:
        return base64.b64decode(value, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Image is not valid base64") from exc


def upload_session_document(client_id: str, session_id: str, document_type: str, encoded_image: str) -> str:
    """Persist one base64 image from a provider payload and return its key."""
    if document_type not in DOCUMENT_TYPES:
        raise ValueError(f"Unknown document type: {document_type}")
    data = _decode_image(encoded_image)
    if not data:
        raise ValueError(f"Empty {document_type} image")
    key = f"sessions/{client_id}/{session_id}/{document_type}.jpg"
    return get_document_store().put_bytes(key, data, "image/jpeg")


def document_url(key: Optional[str]) -> Optional[str]:
    """Time-limited download link for a stored document, or None when unset."""
    if not key:
        return None
    grant = create_document_token(key, filename=PurePosixPath(key).name)
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/documents/{grant['token']}"


def media_type_for(key: str) -> str:
    media_type, _ = mimetypes.guess_type(key)
    return media_type or "application/octet-stream"
