"""Triggers that keep an authenticated session's access token fresh.

Three triggers run while a principal is signed in, and every one of them
goes through ``RefreshCoordinator.refresh()``:

- periodic: a refresh every ``timings.periodic`` seconds, regardless of expiry
- activity: user input arms a trailing-edge debounced refresh, at most once
  per ``timings.activity_threshold``
- proactive: every ``timings.proactive`` seconds, refresh if the access token
  expires within ``timings.expiry_threshold`` (or cannot be parsed)
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Callable, List, Optional

from rundeklar.config import SchedulerTimings
from rundeklar.logging import get_logger
from rundeklar.service.credentials import Clock, expires_within, seconds_until_expiry, utc_now
from rundeklar.service.refresh import RefreshCoordinator, RefreshOutcome
from rundeklar.storage.models import Principal
from rundeklar.storage.token_store import TokenStore

logger = get_logger(__name__)


class ActivityKind(str, Enum):
    POINTER_DOWN = "pointer_down"
    KEY_DOWN = "key_down"
    TOUCH_START = "touch_start"
    SCROLL = "scroll"


class RefreshScheduler:
    def __init__(
        self,
        coordinator: RefreshCoordinator,
        store: TokenStore,
        timings: SchedulerTimings,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Clock = utc_now,
        development_mode: bool = False,
    ) -> None:
        self.coordinator = coordinator
        self.store = store
        self.timings = timings
        self.development_mode = development_mode
        self._clock = clock
        self._wall_clock = wall_clock
        self._tasks: List[asyncio.Task] = []
        self._debounce_task: Optional[asyncio.Task] = None
        self._last_activity_refresh: float = 0.0
        self._principal_id: Optional[str] = None

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self, principal: Principal) -> None:
        """Arm the periodic and proactive triggers and accept activity input."""
        if self.running:
            logger.debug("refresh_scheduler_already_running", principal_id=principal.id)
            return
        self._principal_id = principal.id
        self._last_activity_refresh = self._clock()
        self._tasks = [
            asyncio.ensure_future(self._periodic_loop()),
            asyncio.ensure_future(self._proactive_loop()),
        ]
        logger.info(
            "refresh_scheduler_started",
            principal_id=principal.id,
            periodic_seconds=self.timings.periodic,
            proactive_seconds=self.timings.proactive,
        )

    def stop(self) -> None:
        """Tear down every trigger synchronously.

        A refresh already on the wire is not cancelled; it belongs to the
        coordinator and finishes on its own.
        """
        if not self.running and self._debounce_task is None:
            return
        for task in self._pending_tasks():
            task.cancel()
        self._tasks = []
        self._debounce_task = None
        logger.info("refresh_scheduler_stopped", principal_id=self._principal_id)
        self._principal_id = None

    async def aclose(self) -> None:
        tasks = self._pending_tasks()
        self.stop()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _pending_tasks(self) -> List[asyncio.Task]:
        tasks = list(self._tasks)
        if self._debounce_task is not None:
            tasks.append(self._debounce_task)
        return [task for task in tasks if not task.done()]

    def record_activity(self, kind: ActivityKind = ActivityKind.POINTER_DOWN) -> bool:
        """Note a user-input event. Returns True if a debounced refresh was (re)armed.

        Never blocks and never touches the network directly.
        """
        if not self.running:
            return False
        now = self._clock()
        if now - self._last_activity_refresh < self.timings.activity_threshold:
            return False
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        if self.development_mode:
            logger.debug(
                "refresh_activity_debounced",
                kind=ActivityKind(kind).value,
                debounce_seconds=self.timings.debounce,
            )
        self._debounce_task = asyncio.ensure_future(self._debounced_refresh())
        return True

    async def _debounced_refresh(self) -> None:
        await asyncio.sleep(self.timings.debounce)
        self._last_activity_refresh = self._clock()
        await self._trigger("activity")

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.timings.periodic)
            await self._trigger("periodic")

    async def _proactive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.timings.proactive)
            token = self.store.get_access()
            if not token:
                continue
            now = self._wall_clock()
            if not expires_within(token, self.timings.expiry_threshold, now=now):
                continue
            if self.development_mode:
                remaining = seconds_until_expiry(token, now=now)
                logger.debug(
                    "refresh_proactive_due",
                    minutes_left=None if remaining is None else round(remaining / 60),
                )
            await self._trigger("proactive")

    async def _trigger(self, source: str) -> Optional[RefreshOutcome]:
        try:
            outcome = await self.coordinator.refresh()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "refresh_trigger_failed",
                source=source,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        if self.development_mode:
            logger.debug("refresh_trigger_result", source=source, outcome=outcome.value)
        return outcome
