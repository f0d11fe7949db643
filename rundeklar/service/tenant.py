"""Tenant resolution, demo isolation identifiers and auth-flow token lifting."""

from __future__ import annotations

import ipaddress
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from rundeklar.logging import get_logger
from rundeklar.service.signals import Signal
from rundeklar.storage.models import DEFAULT_TENANT, DEMO_TENANT, MARKETING_TENANT
from rundeklar.storage.token_store import ISOLATION_ID_KEY, TokenStore

logger = get_logger(__name__)

# First path segments that are application routes, not tenants
KNOWN_ROUTES = frozenset({"coach", "check-in", "match-program", "players", "statistics"})

FLOW_KINDS = ("verify-email", "reset-password", "reset-pin")

_LOCAL_HOSTS = frozenset({"localhost"})


def _split_segments(path: str) -> List[str]:
    return [part for part in path.split("/") if part]


def _is_demo_label(label: str) -> bool:
    return label == DEMO_TENANT or label.startswith("demo-") or label.endswith("-demo")


def _tenant_from_host(hostname: Optional[str]) -> Optional[str]:
    if not hostname or hostname in _LOCAL_HOSTS:
        return None
    try:
        ipaddress.ip_address(hostname)
        return None
    except ValueError:
        pass
    labels = hostname.split(".")
    if any(_is_demo_label(label) for label in labels):
        return DEMO_TENANT
    # Apex (club.dk) and www.club.dk carry no tenant
    if len(labels) < 3 or labels[0] == "www":
        return None
    return labels[0]


def _fragment_parts(fragment: str) -> Tuple[str, str]:
    """Split a hash-router fragment (``/demo/reset-pin?token=x``) into path and query."""
    path, _, query = fragment.partition("?")
    return path, query


def tenant_from_path(path: str) -> str:
    segments = _split_segments(path)
    if not segments:
        return DEFAULT_TENANT
    first = segments[0]
    if first in KNOWN_ROUTES or first in FLOW_KINDS:
        return DEFAULT_TENANT
    return first


def resolve_tenant_id(url: str) -> str:
    """Resolve the active tenant from a full application URL.

    Order: hostname (a ``demo`` label always wins, otherwise the leftmost
    label when it is not ``www`` and the host is not an apex), then the
    hash-router fragment path, then the pathname, then ``default``.
    """
    parts = urlsplit(url)
    from_host = _tenant_from_host(parts.hostname)
    if from_host:
        return from_host
    fragment_path, _ = _fragment_parts(parts.fragment)
    if fragment_path.startswith("/"):
        return tenant_from_path(fragment_path)
    return tenant_from_path(parts.path)


def build_tenant_path(tenant_id: str, path: str) -> str:
    clean = path.lstrip("/")
    if tenant_id == DEFAULT_TENANT:
        return f"/{clean}"
    return f"/{tenant_id}/{clean}"


class TenantBinding:
    """The active tenant plus the demo isolation identifier.

    ``invalidated`` fires (with a reason string) whenever keyed caches must
    be dropped: the resolved tenant changed, or the isolation identifier
    differs from the last one the tracker saw. Listeners run before the
    new tenant becomes visible through ``tenant_id``.
    """

    def __init__(self, store: TokenStore, url: str) -> None:
        self.store = store
        self.url = url
        self._tenant_id = resolve_tenant_id(url)
        self.invalidated: Signal[str] = Signal("tenant_invalidated")
        self._last_isolation = self.peek()
        self._unsubscribe = store.changed.subscribe(self._on_store_changed)
        logger.info("tenant_resolved", tenant_id=self._tenant_id)

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def is_demo(self) -> bool:
        return self._tenant_id == DEMO_TENANT

    @property
    def is_marketing(self) -> bool:
        return self._tenant_id == MARKETING_TENANT

    def path(self, path: str) -> str:
        return build_tenant_path(self._tenant_id, path)

    def rebind(self, url_or_tenant: str) -> bool:
        """Re-resolve from a URL (or take a bare tenant id). Returns True on change."""
        if "/" in url_or_tenant or ":" in url_or_tenant:
            self.url = url_or_tenant
            new_tenant = resolve_tenant_id(url_or_tenant)
        else:
            new_tenant = url_or_tenant or DEFAULT_TENANT
        if new_tenant == self._tenant_id:
            return False
        previous = self._tenant_id
        self.invalidated.emit("tenant_changed")
        self._tenant_id = new_tenant
        self._last_isolation = self.peek()
        logger.info("tenant_changed", previous=previous, tenant_id=new_tenant)
        return True

    def get_or_create(self) -> Optional[str]:
        if not self.is_demo:
            return None
        existing = self.store.get_isolation()
        if existing:
            return existing
        isolation_id = str(uuid.uuid4())
        self.store.set_isolation(isolation_id)
        logger.info("isolation_id_created", tenant_id=self._tenant_id)
        return isolation_id

    def peek(self) -> Optional[str]:
        if not self.is_demo:
            return None
        return self.store.get_isolation()

    def clear(self) -> None:
        # The slot is shared with demo contexts on the same store
        if not self.is_demo:
            return
        self.store.clear_isolation()
        logger.info("isolation_id_cleared", tenant_id=self._tenant_id)

    def isolation_params(self) -> Dict[str, str]:
        """Scope fields for data calls: ``tenantId`` always, ``isolationId`` on demo."""
        params = {"tenantId": self._tenant_id}
        isolation_id = self.get_or_create()
        if isolation_id:
            params["isolationId"] = isolation_id
        return params

    def check_isolation(self) -> bool:
        """Compare the stored isolation id with the last one seen; fire on change."""
        current = self.peek()
        if current == self._last_isolation:
            return False
        self._last_isolation = current
        self.invalidated.emit("isolation_changed")
        return True

    def _on_store_changed(self, slot: str) -> None:
        if slot == ISOLATION_ID_KEY:
            self.check_isolation()

    def close(self) -> None:
        self._unsubscribe()


@dataclass(frozen=True)
class FlowToken:
    kind: str
    token: str
    tenant_id: Optional[str]
    stored_at: float


class EphemeralSlot:
    """In-memory holder for one auth-flow token; never written to disk."""

    def __init__(self, ttl_seconds: float = 15 * 60, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entry: Optional[FlowToken] = None

    def put(self, kind: str, token: str, tenant_id: Optional[str] = None) -> FlowToken:
        self._entry = FlowToken(kind=kind, token=token, tenant_id=tenant_id, stored_at=self._clock())
        return self._entry

    def _live(self) -> Optional[FlowToken]:
        entry = self._entry
        if entry is None:
            return None
        if self._clock() - entry.stored_at > self.ttl_seconds:
            logger.info("flow_token_expired", kind=entry.kind)
            self._entry = None
            return None
        return entry

    def peek(self) -> Optional[FlowToken]:
        return self._live()

    def take(self) -> Optional[FlowToken]:
        entry = self._live()
        self._entry = None
        return entry


def _flow_kind(segments: List[str]) -> Tuple[Optional[str], Optional[str]]:
    for index, segment in enumerate(segments):
        if segment in FLOW_KINDS:
            tenant = segments[index - 1] if index > 0 else None
            return segment, tenant
    return None, None


def lift_flow_token(url: str, slot: EphemeralSlot) -> Optional[FlowToken]:
    """Move a ``token`` query parameter from an auth-flow link into ``slot``.

    The fragment (``#/demo/reset-pin?token=...``) is searched before the
    pathname and its query string.
    """
    parts = urlsplit(url)
    fragment_path, fragment_query = _fragment_parts(parts.fragment)

    kind, tenant = _flow_kind(_split_segments(fragment_path))
    if kind is None:
        kind, tenant = _flow_kind(_split_segments(parts.path))
    if kind is None:
        return None

    token = None
    for query in (fragment_query, parts.query):
        values = parse_qs(query).get("token")
        if values and values[0]:
            token = values[0]
            break
    if token is None:
        logger.warning("flow_token_missing", kind=kind)
        return None

    entry = slot.put(kind, token, tenant)
    logger.info("flow_token_lifted", kind=kind, tenant_id=tenant)
    return entry
