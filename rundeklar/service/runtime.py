from __future__ import annotations

import asyncio
import threading
from typing import Optional

import httpx

from rundeklar.config import Settings, get_settings, reset_settings_cache
from rundeklar.logging import configure_for_settings, get_logger
from rundeklar.service.authority import AuthorityClient
from rundeklar.service.http import AuthenticatedClient
from rundeklar.service.refresh import RefreshCoordinator
from rundeklar.service.scheduler import RefreshScheduler
from rundeklar.service.session import SessionManager
from rundeklar.service.tenant import EphemeralSlot, TenantBinding, lift_flow_token
from rundeklar.storage.kv import FileKeyValueStore, KeyValueBackend, MemoryKeyValueStore
from rundeklar.storage.models import Principal
from rundeklar.storage.token_store import TokenStore

logger = get_logger(__name__)


class Runtime:
    """Owns one wired-up session stack for the host application.

    ``http`` may be supplied by the host (or a test with a mock
    transport); a client created here is closed by :meth:`aclose`.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        http: Optional[httpx.AsyncClient] = None,
        backend: Optional[KeyValueBackend] = None,
        url: Optional[str] = None,
    ) -> None:
        self.settings = settings or get_settings()
        configure_for_settings(self.settings.development_mode)
        logger.info(
            "runtime_init_started",
            authority_base_url=self.settings.authority_base_url,
            development_mode=self.settings.development_mode,
            use_memory_storage=self.settings.use_memory_storage,
        )

        if backend is None:
            backend = (
                MemoryKeyValueStore()
                if self.settings.use_memory_storage
                else FileKeyValueStore(
                    self.settings.storage_dir,
                    encryption_key=self.settings.storage_encryption_key,
                )
            )
        self.store = TokenStore(backend)

        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.request_timeout_seconds, connect=10.0)
        )
        self.authority = AuthorityClient(self.settings.authority_base_url, self.http)
        self.coordinator = RefreshCoordinator(
            self.store,
            self.authority,
            retain_refresh_on_rotation=self.settings.retain_refresh_on_rotation,
            development_mode=self.settings.development_mode,
        )
        self.scheduler = RefreshScheduler(
            self.coordinator,
            self.store,
            self.settings.scheduler_timings(),
            development_mode=self.settings.development_mode,
        )
        self.fetch = AuthenticatedClient(self.http, self.store, self.coordinator)

        app_url = url or self.settings.default_url
        self.binding = TenantBinding(self.store, app_url)
        self.flow_tokens = EphemeralSlot(self.settings.flow_token_ttl_seconds)
        lift_flow_token(app_url, self.flow_tokens)

        self.session = SessionManager(
            store=self.store,
            authority=self.authority,
            fetch=self.fetch,
            coordinator=self.coordinator,
            scheduler=self.scheduler,
            binding=self.binding,
            development_mode=self.settings.development_mode,
        )
        logger.info("runtime_init_completed", tenant_id=self.binding.tenant_id)

    async def start(self) -> Optional[Principal]:
        """Run the startup self-query; the scheduler is armed only after it settles."""
        return await self.session.who_am_i()

    async def aclose(self) -> None:
        await self.session.aclose()
        self.binding.close()
        if self._owns_http:
            await self.http.aclose()
        logger.info("runtime_closed")


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Discard the singleton and build a fresh one from the current environment."""
    global runtime

    with _runtime_lock:
        previous = runtime
        if previous is not None and previous._owns_http:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(previous.http.aclose())
            else:
                loop.create_task(previous.http.aclose())
        reset_settings_cache()
        runtime = Runtime()
        return runtime
