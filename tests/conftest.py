import asyncio
import base64
import inspect
import json
import os
import sys
import tempfile
import time
from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

# Keep tests away from the user's real session store before any imports read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="rundeklar_test_")
os.environ.setdefault("RUNDEKLAR_STORAGE_DIR", _test_tmp_dir)
os.environ.setdefault("RUNDEKLAR_MEMORY_STORAGE", "true")
os.environ.setdefault("RUNDEKLAR_AUTHORITY_URL", "http://authority.test/api")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from rundeklar.config import SchedulerTimings, reset_settings_cache  # noqa: E402
from rundeklar.service.authority import AuthorityClient  # noqa: E402
from rundeklar.service.http import AuthenticatedClient  # noqa: E402
from rundeklar.service.refresh import RefreshCoordinator  # noqa: E402
from rundeklar.service.scheduler import RefreshScheduler  # noqa: E402
from rundeklar.service.session import SessionManager  # noqa: E402
from rundeklar.service.tenant import TenantBinding  # noqa: E402
from rundeklar.storage.kv import MemoryKeyValueStore  # noqa: E402
from rundeklar.storage.token_store import TokenStore  # noqa: E402

BASE_URL = "http://authority.test/api"
_PREFIX = "/api"

# Long enough that no trigger fires during a test unless the test asks for it
IDLE_TIMINGS = SchedulerTimings(periodic=3600, activity_threshold=3600, debounce=3600, proactive=3600)

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


def make_jwt(exp: Optional[float] = None, *, payload: Optional[Dict[str, Any]] = None) -> str:
    """Unsigned three-segment token whose payload carries ``exp``."""

    def _segment(data: Dict[str, Any]) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    body = dict(payload or {})
    if exp is not None:
        body["exp"] = exp
    return f"{_segment({'alg': 'HS256', 'typ': 'JWT'})}.{_segment(body)}.signature"


def club_payload(**overrides: Any) -> Dict[str, Any]:
    club = {
        "id": "club-1",
        "email": "a@x",
        "role": "admin",
        "tenantId": "default",
        "emailVerified": True,
        "twoFactorEnabled": False,
    }
    club.update(overrides)
    return club


class FakeAuthority:
    """Scripted authority behind ``httpx.MockTransport``.

    Queued responders are consumed first (one per request), then the
    route's standing responder, then 404.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self._queues: Dict[Tuple[str, str], Deque[Responder]] = defaultdict(deque)
        self._standing: Dict[Tuple[str, str], Responder] = {}
        self.latency: Dict[str, float] = {}

    def queue(self, method: str, path: str, *responders: Responder) -> None:
        self._queues[(method, path)].extend(responders)

    def always(self, method: str, path: str, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self._standing[(method, path)] = responder

    def fail_transport(self, method: str, path: str, times: int = 1) -> None:
        def _raise(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        self.queue(method, path, *([_raise] * times))

    def calls(self, path: str) -> List[httpx.Request]:
        return [req for req in self.requests if req.url.path == _PREFIX + path]

    def count(self, path: str) -> int:
        return len(self.calls(path))

    def last_body(self, path: str) -> Dict[str, Any]:
        return json.loads(self.calls(path)[-1].content)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.startswith(_PREFIX):
            path = path[len(_PREFIX):]
        delay = self.latency.get(path)
        if delay:
            await asyncio.sleep(delay)
        key = (request.method, path)
        if self._queues[key]:
            responder = self._queues[key].popleft()
        elif key in self._standing:
            responder = self._standing[key]
        else:
            return httpx.Response(404, json={"error": "Not found"})
        if isinstance(responder, httpx.Response):
            return responder
        return responder(request)


def bearer_of(request: httpx.Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    return header[len("Bearer "):] if header.startswith("Bearer ") else None


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def authority():
    return FakeAuthority()


@pytest.fixture
def http_client(authority):
    return httpx.AsyncClient(transport=httpx.MockTransport(authority.handler))


@pytest.fixture
def backend():
    return MemoryKeyValueStore()


@pytest.fixture
def store(backend):
    return TokenStore(backend)


@pytest.fixture
def authority_client(http_client):
    return AuthorityClient(BASE_URL, http_client)


@pytest.fixture
def sleeps():
    """Delays requested by the coordinator; the sleep itself only yields."""
    return []


@pytest.fixture
def coordinator(store, authority_client, sleeps):
    async def _record_sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)

    return RefreshCoordinator(store, authority_client, sleep=_record_sleep)


@pytest.fixture
def fetch(http_client, store, coordinator):
    return AuthenticatedClient(http_client, store, coordinator)


@pytest.fixture
def binding(store):
    return TenantBinding(store, "http://localhost/")


@pytest.fixture
def scheduler(coordinator, store):
    return RefreshScheduler(coordinator, store, IDLE_TIMINGS, clock=time.monotonic)


@pytest.fixture
def session(store, authority_client, fetch, coordinator, scheduler, binding):
    return SessionManager(
        store=store,
        authority=authority_client,
        fetch=fetch,
        coordinator=coordinator,
        scheduler=scheduler,
        binding=binding,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def make_token():
    return make_jwt


@pytest.fixture
def club():
    return club_payload


@pytest.fixture
def bearer():
    return bearer_of
