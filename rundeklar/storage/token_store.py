from __future__ import annotations

from typing import Optional

from rundeklar.logging import get_logger
from rundeklar.service.signals import Signal
from rundeklar.storage.kv import KeyValueBackend

logger = get_logger(__name__)

ACCESS_TOKEN_KEY = "auth_access_token"
REFRESH_TOKEN_KEY = "auth_refresh_token"
ISOLATION_ID_KEY = "rundeklar_isolation_id"


class TokenStore:
    """Named credential slots over a durable key-value backend.

    Writes are best-effort: if the backend fails (read-only disk, private
    mode, quota) the write is dropped and logged, and reads return None.
    ``changed`` fires with the slot name after every write or clear that
    reached this object, whether or not the backend accepted it.
    """

    def __init__(self, backend: KeyValueBackend) -> None:
        self.backend = backend
        self.changed: Signal[str] = Signal("token_store_changed")

    def _get(self, key: str) -> Optional[str]:
        try:
            value = self.backend.get_item(key)
        except Exception as exc:
            logger.warning("token_store_read_failed", slot=key, error=str(exc))
            return None
        return value or None

    def _set(self, key: str, value: str) -> None:
        try:
            self.backend.set_item(key, value)
        except Exception as exc:
            logger.warning("token_store_write_failed", slot=key, error=str(exc))

    def _remove(self, key: str) -> None:
        try:
            self.backend.remove_item(key)
        except Exception as exc:
            logger.warning("token_store_clear_failed", slot=key, error=str(exc))

    def get_access(self) -> Optional[str]:
        return self._get(ACCESS_TOKEN_KEY)

    def get_refresh(self) -> Optional[str]:
        return self._get(REFRESH_TOKEN_KEY)

    def set_pair(self, access: str, refresh: str) -> None:
        self._set(ACCESS_TOKEN_KEY, access)
        self._set(REFRESH_TOKEN_KEY, refresh)
        self.changed.emit(ACCESS_TOKEN_KEY)

    def set_access(self, access: str) -> None:
        self._set(ACCESS_TOKEN_KEY, access)
        self.changed.emit(ACCESS_TOKEN_KEY)

    def clear_refresh(self) -> None:
        self._remove(REFRESH_TOKEN_KEY)
        self.changed.emit(REFRESH_TOKEN_KEY)

    def clear_pair(self) -> None:
        self._remove(ACCESS_TOKEN_KEY)
        self._remove(REFRESH_TOKEN_KEY)
        self.changed.emit(ACCESS_TOKEN_KEY)

    def has_pair(self) -> bool:
        return self.get_access() is not None and self.get_refresh() is not None

    def get_isolation(self) -> Optional[str]:
        return self._get(ISOLATION_ID_KEY)

    def set_isolation(self, value: str) -> None:
        self._set(ISOLATION_ID_KEY, value)
        self.changed.emit(ISOLATION_ID_KEY)

    def clear_isolation(self) -> None:
        self._remove(ISOLATION_ID_KEY)
        self.changed.emit(ISOLATION_ID_KEY)
