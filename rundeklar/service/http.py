from __future__ import annotations

from typing import Any, Optional

import httpx

from rundeklar.logging import get_logger
from rundeklar.service.authority import correlation_headers
from rundeklar.service.errors import TransportFailure
from rundeklar.service.refresh import RefreshCoordinator
from rundeklar.storage.token_store import TokenStore

logger = get_logger(__name__)


class AuthenticatedClient:
    """Bearer-attaching request wrapper with one refresh-and-retry on 401.

    Tenant-agnostic: callers put the tenant into request bodies themselves.
    Request arguments must be replayable (``json=``/``data=``/``params=``,
    not a one-shot stream) because a 401 re-issues the same call once.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        store: TokenStore,
        coordinator: RefreshCoordinator,
    ) -> None:
        self.http = http
        self.store = store
        self.coordinator = coordinator

    async def _send(
        self, method: str, url: str, token: Optional[str], kwargs: dict[str, Any]
    ) -> httpx.Response:
        headers = httpx.Headers(kwargs.get("headers") or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        for name, value in correlation_headers().items():
            headers.setdefault(name, value)
        call_kwargs = {**kwargs, "headers": headers}
        try:
            return await self.http.request(method, url, **call_kwargs)
        except httpx.TransportError as exc:
            logger.warning(
                "authenticated_fetch_transport_error",
                method=method,
                url=url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise TransportFailure(f"Could not reach {url}: {type(exc).__name__}") from exc

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        token = self.store.get_access()
        response = await self._send(method, url, token, kwargs)

        # Without a credential there is nothing a refresh could fix
        if response.status_code != 401 or not token:
            return response

        logger.debug("authenticated_fetch_unauthorized", method=method, url=url)
        outcome = await self.coordinator.refresh()
        if not outcome.ok:
            logger.warning(
                "authenticated_fetch_refresh_failed",
                method=method,
                url=url,
                outcome=outcome.value,
            )
            return response

        new_token = self.store.get_access()
        if not new_token:
            logger.warning("authenticated_fetch_token_missing_after_refresh", url=url)
            return response

        retry = await self._send(method, url, new_token, kwargs)
        logger.debug(
            "authenticated_fetch_retried",
            method=method,
            url=url,
            status_code=retry.status_code,
        )
        return retry

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)
