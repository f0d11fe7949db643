"""Single-flight credential refresh with bounded backoff.

Concurrent callers share one in-flight refresh. Transport failures and
401s are retried up to ``len(retry_delays)`` times; after the budget a
401 ends the session (credentials cleared, ``invalidated`` fires) while a
transport failure leaves credentials in place for the next trigger.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence, Set

from rundeklar.logging import get_logger
from rundeklar.service.authority import AuthorityClient
from rundeklar.service.errors import (
    AuthError,
    AuthenticationRejected,
    ServerError,
    TransportFailure,
)
from rundeklar.service.signals import Signal
from rundeklar.storage.token_store import TokenStore

logger = get_logger(__name__)

DEFAULT_RETRY_DELAYS = (1.0, 2.0, 4.0)


class RefreshOutcome(str, Enum):
    SUCCESS = "success"
    # Credentials kept; a later trigger may succeed
    RECOVERABLE_FAILURE = "recoverable_failure"
    # Session is over (or this refresh was superseded by logout/login)
    PERMANENT_FAILURE = "permanent_failure"

    @property
    def ok(self) -> bool:
        return self is RefreshOutcome.SUCCESS


@dataclass(frozen=True)
class RefreshEvent:
    phase: str
    outcome: Optional[RefreshOutcome] = None


class _Failure(str, Enum):
    TRANSPORT = "transport"
    REJECTED = "rejected"


class RefreshCoordinator:
    def __init__(
        self,
        store: TokenStore,
        authority: AuthorityClient,
        *,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        retain_refresh_on_rotation: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        development_mode: bool = False,
    ) -> None:
        self.store = store
        self.authority = authority
        self.retry_delays = tuple(retry_delays)
        self.retain_refresh_on_rotation = retain_refresh_on_rotation
        self.development_mode = development_mode
        self._sleep = sleep
        self._in_flight: Optional[asyncio.Task] = None
        self._in_flight_epoch = 0
        # Refreshes from an earlier session, left to drain on their own
        self._superseded: Set[asyncio.Task] = set()
        self._epoch = 0
        self.events: Signal[RefreshEvent] = Signal("refresh_events")
        self.invalidated: Signal[str] = Signal("session_invalidated")

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def reset(self) -> None:
        """Mark any running refresh as stale; called on login and logout.

        The running task keeps its current awaiters and its result is
        discarded when it lands. Callers arriving after the reset start a
        fresh refresh instead of joining it.
        """
        self._epoch += 1

    async def refresh(self) -> RefreshOutcome:
        task = self._in_flight
        if task is not None and not task.done() and self._in_flight_epoch != self._epoch:
            self._superseded.add(task)
            task.add_done_callback(self._superseded.discard)
            self._in_flight = None
            task = None
            logger.info("auth_refresh_superseded")
        if task is None or task.done():
            epoch = self._epoch
            task = asyncio.ensure_future(self._run(epoch))
            self._in_flight = task
            self._in_flight_epoch = epoch
            task.add_done_callback(lambda done: self._on_done(done, epoch))
            self.events.emit(RefreshEvent("started"))
        # Shield: a caller giving up must not cancel the shared refresh
        return await asyncio.shield(task)

    def _on_done(self, task: "asyncio.Task[RefreshOutcome]", epoch: int) -> None:
        if self._in_flight is task:
            self._in_flight = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("auth_refresh_crashed", error_type=type(exc).__name__, error=str(exc))
            return
        # A stale finish must not flip the state of the session that replaced it
        if self._is_stale(epoch):
            return
        self.events.emit(RefreshEvent("finished", task.result()))

    def _is_stale(self, epoch: int) -> bool:
        return epoch != self._epoch

    async def _run(self, epoch: int) -> RefreshOutcome:
        attempt = 0
        last_failure: Optional[_Failure] = None

        while True:
            refresh_token = self.store.get_refresh()
            if not refresh_token:
                logger.warning("auth_refresh_no_token")
                self._invalidate(epoch, reason="missing_refresh_token")
                return RefreshOutcome.PERMANENT_FAILURE

            if self.development_mode and attempt == 0:
                logger.debug("auth_refresh_attempt")

            try:
                result = await self.authority.refresh(refresh_token)
            except AuthenticationRejected as exc:
                last_failure = _Failure.REJECTED
                logger.warning(
                    "auth_refresh_rejected",
                    attempt=attempt + 1,
                    status_code=exc.status_code,
                )
            except TransportFailure as exc:
                last_failure = _Failure.TRANSPORT
                logger.warning("auth_refresh_transport_error", attempt=attempt + 1, error=str(exc))
            except ServerError as exc:
                if exc.status_code is not None and 200 <= exc.status_code < 300:
                    # Success status with an unusable body
                    last_failure = _Failure.TRANSPORT
                    logger.warning("auth_refresh_malformed", attempt=attempt + 1, error=str(exc))
                else:
                    logger.error(
                        "auth_refresh_failed", status_code=exc.status_code, error=str(exc)
                    )
                    return RefreshOutcome.RECOVERABLE_FAILURE
            except AuthError as exc:
                logger.error(
                    "auth_refresh_failed",
                    status_code=exc.status_code,
                    error_code=exc.error_code,
                    error=str(exc),
                )
                return RefreshOutcome.RECOVERABLE_FAILURE
            else:
                if self._is_stale(epoch):
                    logger.info("auth_refresh_discarded", reason="session_changed")
                    return RefreshOutcome.PERMANENT_FAILURE
                if not result.refresh_token and not self.retain_refresh_on_rotation:
                    # The old refresh token was spent and no successor came back
                    logger.warning("auth_refresh_token_not_rotated")
                    self._invalidate(epoch, reason="refresh_not_rotated")
                    return RefreshOutcome.PERMANENT_FAILURE
                self._store_result(result.access_token, result.refresh_token)
                logger.info(
                    "auth_refresh_succeeded",
                    rotated=bool(result.refresh_token),
                    retries=attempt,
                )
                return RefreshOutcome.SUCCESS

            if attempt >= len(self.retry_delays):
                break
            delay = self.retry_delays[attempt]
            attempt += 1
            logger.info(
                "auth_refresh_backoff",
                attempt=attempt,
                max_retries=len(self.retry_delays),
                delay_seconds=delay,
                failure=last_failure.value,
            )
            await self._sleep(delay)
            if self._is_stale(epoch):
                logger.info("auth_refresh_discarded", reason="session_changed")
                return RefreshOutcome.PERMANENT_FAILURE

        if last_failure is _Failure.REJECTED:
            logger.error("auth_refresh_permanently_failed", attempts=attempt + 1)
            self._invalidate(epoch, reason="refresh_rejected")
            return RefreshOutcome.PERMANENT_FAILURE

        logger.error("auth_refresh_retries_exhausted", attempts=attempt + 1)
        return RefreshOutcome.RECOVERABLE_FAILURE

    def _store_result(self, access_token: str, refresh_token: Optional[str]) -> None:
        if refresh_token:
            self.store.set_pair(access_token, refresh_token)
        else:
            self.store.set_access(access_token)

    def _invalidate(self, epoch: int, *, reason: str) -> None:
        if self._is_stale(epoch):
            return
        self.store.clear_pair()
        self.invalidated.emit(reason)

    async def aclose(self) -> None:
        self._epoch += 1
        tasks = [t for t in (self._in_flight, *self._superseded) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
