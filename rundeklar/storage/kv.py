from __future__ import annotations

import base64
import hashlib
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from rundeklar.logging import get_logger

logger = get_logger(__name__)


class StorageUnavailable(Exception):
    """Raised by a backend that cannot read or write its durable medium."""


class KeyValueBackend(Protocol):
    """Synchronous per-origin string store (the browser's localStorage contract)."""

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local backend for tests and hosts without durable storage."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._items)


class FileKeyValueStore:
    """JSON file backend shared by every client pointed at the same directory.

    Each write re-reads the file first so that concurrent processes sharing
    the directory see each other's slots; last write wins per key. When an
    encryption key is configured the whole document is sealed with Fernet.
    """

    FILENAME = "session_store.json"

    def __init__(self, root: str | Path, *, encryption_key: str | None = None) -> None:
        self.root = Path(root).expanduser()
        self.path = self.root / self.FILENAME
        self._cipher = self._build_cipher(encryption_key) if encryption_key else None
        self._lock = threading.Lock()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str) -> Fernet:
        try:
            return Fernet(self._derive_cipher_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize storage cipher") from exc

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_bytes()
        except OSError as exc:
            raise StorageUnavailable(f"cannot read {self.path}") from exc
        if not raw:
            return {}
        if self._cipher is not None:
            try:
                raw = self._cipher.decrypt(raw)
            except InvalidToken as exc:
                raise StorageUnavailable("stored session data cannot be decrypted") from exc
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StorageUnavailable("stored session data is corrupt") from exc
        if not isinstance(data, dict):
            raise StorageUnavailable("stored session data is not an object")
        return {str(k): str(v) for k, v in data.items() if v is not None}

    def _write(self, data: Dict[str, str]) -> None:
        payload = json.dumps(data, sort_keys=True).encode("utf-8")
        if self._cipher is not None:
            payload = self._cipher.encrypt(payload)
        tmp_path: Optional[str] = None
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            # Atomic write: temp file in the same directory, then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.root), prefix=".session_store_", suffix=".tmp"
            )
            try:
                os.write(fd, payload)
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, str(self.path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise StorageUnavailable(f"cannot write {self.path}") from exc

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def _read_for_update(self) -> Dict[str, str]:
        try:
            return self._read()
        except StorageUnavailable as exc:
            # Unreadable contents are replaced rather than blocking every later write
            logger.warning("session_store_reset", path=str(self.path), error=str(exc))
            return {}

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read_for_update()
            data[key] = value
            self._write(data)

    def remove_item(self, key: str) -> None:
        with self._lock:
            data = self._read_for_update()
            if key not in data:
                return
            del data[key]
            self._write(data)


__all__ = [
    "FileKeyValueStore",
    "KeyValueBackend",
    "MemoryKeyValueStore",
    "StorageUnavailable",
]
