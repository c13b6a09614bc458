import asyncio
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from vidtube.auth_storage import MemoryTokenStore, StoredSession
from vidtube.data_models import User
from vidtube.session import SessionManager
from vidtube.transport import ApiRequest, ApiResponse

Responder = Union[ApiResponse, Exception, Callable[[ApiRequest], Any]]


def envelope(data: Any, status: int = 200, message: str = "ok") -> ApiResponse:
    return ApiResponse(status, {"statusCode": status, "data": data, "message": message, "success": status < 400})


def failure(status: int, message: str = "") -> ApiResponse:
    payload = {"statusCode": status, "message": message, "success": False} if message else None
    return ApiResponse(status, payload)


class FakeTransport:
    """Scripted transport.

    Routes are ``(method, path)`` keys mapped to a list of responders, used
    in order (the last one repeats). A responder may be an ``ApiResponse``,
    an exception to raise, or a callable taking the request.
    """

    def __init__(self):
        self.routes: Dict[tuple, List[Responder]] = {}
        self.sent: List[ApiRequest] = []
        self.gates: Dict[tuple, asyncio.Event] = {}

    def add(self, method: str, path: str, *responders: Responder) -> None:
        self.routes.setdefault((method, path), []).extend(responders)

    def gate(self, method: str, path: str) -> asyncio.Event:
        """Hold requests to this route until the returned event is set."""
        event = asyncio.Event()
        self.gates[(method, path)] = event
        return event

    def calls(self, method: str, path: str) -> List[ApiRequest]:
        return [r for r in self.sent if r.method == method and r.path == path]

    async def send(self, request: ApiRequest) -> ApiResponse:
        self.sent.append(request)
        key = (request.method, request.path)
        await asyncio.sleep(0)
        if key in self.gates:
            await self.gates[key].wait()
        queue = self.routes.get(key)
        if not queue:
            raise AssertionError(f"unexpected request {key}")
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(responder, Exception):
            raise responder
        if callable(responder):
            return responder(request)
        return responder


def bearer(request: ApiRequest) -> Optional[str]:
    return request.headers.get("Authorization")


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def user() -> User:
    return User(id="u1", username="alice", full_name="Alice Doe", email="alice@example.com")


@pytest.fixture
def store(user) -> MemoryTokenStore:
    return MemoryTokenStore(StoredSession("access-1", "refresh-1", user))


@pytest.fixture
def session(transport, store) -> SessionManager:
    manager = SessionManager(transport, store)
    manager.restore()
    return manager
