import asyncio

import pytest

from vidtube.api_interface import VideoTubeAPI
from vidtube.auth_storage import MemoryTokenStore
from vidtube.errors import (
    NetworkError,
    NotFoundError,
    ServerError,
    SessionTerminatedError,
    UnauthorizedError,
)
from vidtube.session import REFRESH_PATH, SessionManager, SessionState
from vidtube.transport import ApiRequest, ApiResponse

from .conftest import bearer, envelope, failure


def only_token(token):
    """Accept requests carrying ``token``; 401 for anything else."""

    def respond(request):
        if bearer(request) == f"Bearer {token}":
            return envelope({"ok": True, "path": request.path})
        return failure(401, "jwt expired")

    return respond


def refreshed(access="access-2", refresh="refresh-2"):
    data = {"accessToken": access}
    if refresh:
        data["refreshToken"] = refresh
    return envelope(data)


# --- credentials ---


@pytest.mark.asyncio
async def test_authenticated_request_carries_bearer(session, transport):
    transport.add("GET", "/videos", envelope({"docs": []}))
    await session.issue(ApiRequest("GET", "/videos"))
    assert bearer(transport.sent[0]) == "Bearer access-1"


@pytest.mark.asyncio
async def test_unauthenticated_request_never_carries_bearer(session, transport):
    transport.add("POST", "/users/login", failure(400, "bad"))
    with pytest.raises(Exception):
        await session.issue(ApiRequest("POST", "/users/login", json={}, authenticated=False))
    assert bearer(transport.sent[0]) is None


@pytest.mark.asyncio
async def test_response_envelope_is_unwrapped(session, transport):
    transport.add("GET", "/videos/v1", envelope({"_id": "v1", "title": "Hello"}))
    data = await session.issue(ApiRequest("GET", "/videos/v1"))
    assert data == {"_id": "v1", "title": "Hello"}


# --- refresh ---


@pytest.mark.asyncio
async def test_concurrent_401s_share_one_refresh(session, transport, store):
    transport.add("GET", "/videos", only_token("access-2"))
    transport.add("POST", REFRESH_PATH, refreshed())

    results = await asyncio.gather(*(session.issue(ApiRequest("GET", "/videos")) for _ in range(5)))

    assert all(r["ok"] for r in results)
    assert len(transport.calls("POST", REFRESH_PATH)) == 1
    retried = [r for r in transport.calls("GET", "/videos") if r.retries == 1]
    assert len(retried) == 5
    assert all(bearer(r) == "Bearer access-2" for r in retried)
    assert session.state is SessionState.AUTHENTICATED
    assert store.stored.access_token == "access-2"
    assert store.stored.refresh_token == "refresh-2"


@pytest.mark.asyncio
async def test_refresh_sends_stored_refresh_token_without_bearer(session, transport):
    transport.add("GET", "/videos", only_token("access-2"))
    transport.add("POST", REFRESH_PATH, refreshed())

    await session.issue(ApiRequest("GET", "/videos"))

    refresh_call = transport.calls("POST", REFRESH_PATH)[0]
    assert refresh_call.json == {"refreshToken": "refresh-1"}
    assert bearer(refresh_call) is None


@pytest.mark.asyncio
async def test_missing_rotated_refresh_token_keeps_current_one(session, transport, store):
    transport.add("GET", "/videos", only_token("access-2"))
    transport.add("POST", REFRESH_PATH, refreshed(refresh=None))

    await session.issue(ApiRequest("GET", "/videos"))

    assert session.access_token == "access-2"
    assert store.stored.refresh_token == "refresh-1"


@pytest.mark.asyncio
async def test_replayed_request_is_not_retried_again(session, transport):
    transport.add("GET", "/videos", failure(401, "still no"))
    transport.add("POST", REFRESH_PATH, refreshed())

    with pytest.raises(UnauthorizedError) as excinfo:
        await session.issue(ApiRequest("GET", "/videos"))

    assert not isinstance(excinfo.value, SessionTerminatedError)
    assert len(transport.calls("GET", "/videos")) == 2
    assert len(transport.calls("POST", REFRESH_PATH)) == 1


@pytest.mark.asyncio
async def test_refresh_failure_terminates_session_for_every_waiter(session, transport, store):
    transport.add("GET", "/videos", failure(401, "jwt expired"))
    transport.add("POST", REFRESH_PATH, failure(401, "refresh token expired"))
    reasons = []
    session.add_terminated_listener(reasons.append)

    results = await asyncio.gather(
        *(session.issue(ApiRequest("GET", "/videos")) for _ in range(3)), return_exceptions=True
    )

    assert all(isinstance(r, SessionTerminatedError) for r in results)
    assert len(reasons) == 1
    assert session.state is SessionState.UNAUTHENTICATED
    assert session.access_token is None
    assert session.user is None
    assert store.stored is None


@pytest.mark.asyncio
async def test_no_credential_attached_after_termination(session, transport):
    transport.add("GET", "/videos", failure(401), envelope({"docs": []}))
    transport.add("POST", REFRESH_PATH, failure(403, "invalid refresh token"))

    with pytest.raises(SessionTerminatedError):
        await session.issue(ApiRequest("GET", "/videos"))
    await session.issue(ApiRequest("GET", "/videos"))

    assert bearer(transport.sent[-1]) is None


@pytest.mark.asyncio
async def test_refresh_network_failure_terminates(session, transport):
    transport.add("GET", "/videos", failure(401))
    transport.add("POST", REFRESH_PATH, NetworkError("connection refused"))

    with pytest.raises(SessionTerminatedError):
        await session.issue(ApiRequest("GET", "/videos"))
    assert not session.is_authenticated


@pytest.mark.asyncio
async def test_malformed_refresh_response_terminates(session, transport):
    transport.add("GET", "/videos", failure(401))
    transport.add("POST", REFRESH_PATH, envelope({"unexpected": True}))

    with pytest.raises(SessionTerminatedError):
        await session.issue(ApiRequest("GET", "/videos"))
    assert not session.is_authenticated


@pytest.mark.asyncio
async def test_401_without_refresh_token_terminates(transport):
    manager = SessionManager(transport, MemoryTokenStore())
    transport.add("POST", "/users/login", envelope({"user": {"_id": "u1", "username": "alice"}, "accessToken": "a"}))
    transport.add("GET", "/videos", failure(401))
    await manager.login({"username": "alice", "password": "pw"})

    with pytest.raises(SessionTerminatedError):
        await manager.issue(ApiRequest("GET", "/videos"))
    assert transport.calls("POST", REFRESH_PATH) == []


@pytest.mark.asyncio
async def test_request_in_flight_during_refresh_reuses_new_token(session, transport):
    release = transport.gate("GET", "/slow")
    transport.add("GET", "/slow", only_token("access-2"))
    transport.add("GET", "/videos", only_token("access-2"))
    transport.add("POST", REFRESH_PATH, refreshed())

    slow = asyncio.ensure_future(session.issue(ApiRequest("GET", "/slow")))
    await asyncio.sleep(0)
    await session.issue(ApiRequest("GET", "/videos"))
    release.set()
    result = await slow

    assert result["ok"]
    assert len(transport.calls("POST", REFRESH_PATH)) == 1


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_refresh(session, transport):
    release = transport.gate("POST", REFRESH_PATH)
    transport.add("GET", "/videos", only_token("access-2"))
    transport.add("POST", REFRESH_PATH, refreshed())

    first = asyncio.ensure_future(session.issue(ApiRequest("GET", "/videos")))
    second = asyncio.ensure_future(session.issue(ApiRequest("GET", "/videos")))
    for _ in range(5):
        await asyncio.sleep(0)
    first.cancel()
    release.set()

    assert (await second)["ok"]
    assert first.cancelled()
    assert session.access_token == "access-2"


@pytest.mark.asyncio
async def test_non_auth_errors_pass_through_without_refresh(session, transport):
    transport.add("GET", "/videos/missing", failure(404, "Video not found"))
    transport.add("GET", "/videos", failure(500))

    with pytest.raises(NotFoundError, match="Video not found"):
        await session.issue(ApiRequest("GET", "/videos/missing"))
    with pytest.raises(ServerError):
        await session.issue(ApiRequest("GET", "/videos"))
    assert transport.calls("POST", REFRESH_PATH) == []
    assert session.is_authenticated


# --- lifecycle ---


@pytest.mark.asyncio
async def test_login_stores_tokens_and_user(transport):
    store = MemoryTokenStore()
    manager = SessionManager(transport, store)
    transport.add(
        "POST",
        "/users/login",
        envelope(
            {
                "user": {"_id": "u9", "username": "bob", "fullName": "Bob", "email": "bob@example.com"},
                "accessToken": "a",
                "refreshToken": "r",
            }
        ),
    )

    user = await manager.login({"email": "bob@example.com", "password": "pw"})

    assert user.username == "bob"
    assert manager.state is SessionState.AUTHENTICATED
    assert store.stored.access_token == "a"
    assert store.stored.refresh_token == "r"
    assert store.stored.user.id == "u9"


@pytest.mark.asyncio
async def test_failed_login_does_not_refresh(transport):
    manager = SessionManager(transport, MemoryTokenStore())
    transport.add("POST", "/users/login", failure(401, "Invalid user credentials"))

    with pytest.raises(UnauthorizedError, match="Invalid user credentials"):
        await manager.login({"username": "bob", "password": "wrong"})
    assert transport.calls("POST", REFRESH_PATH) == []
    assert not manager.is_authenticated


@pytest.mark.asyncio
async def test_register_without_tokens_stays_signed_out(transport):
    manager = SessionManager(transport, MemoryTokenStore())
    transport.add("POST", "/users/register", envelope({"_id": "u2", "username": "carol"}, status=201))

    user = await manager.register({"username": "carol", "password": "pw", "email": "c@x.io", "fullName": "Carol"})

    assert user.username == "carol"
    assert not manager.is_authenticated


@pytest.mark.asyncio
async def test_logout_clears_state_even_when_backend_fails(session, transport, store):
    transport.add("POST", "/users/logout", failure(500))

    await session.logout()

    assert bearer(transport.sent[0]) == "Bearer access-1"
    assert not session.is_authenticated
    assert store.stored is None


@pytest.mark.asyncio
async def test_logout_clears_state_when_offline(session, transport, store):
    transport.add("POST", "/users/logout", NetworkError("offline"))

    await session.logout()

    assert not session.is_authenticated
    assert store.stored is None


def test_restore_without_refresh_token_is_signed_out(transport):
    manager = SessionManager(transport, MemoryTokenStore())
    assert manager.restore() is False
    assert manager.state is SessionState.UNAUTHENTICATED


def test_restore_loads_persisted_session(session, user):
    assert session.is_authenticated
    assert session.user == user
    assert session.access_token == "access-1"


@pytest.mark.asyncio
async def test_fetch_current_user_updates_snapshot(session, transport, store):
    transport.add("GET", "/users/me", envelope({"_id": "u1", "username": "alice", "fullName": "Alice Renamed"}))

    user = await session.fetch_current_user()

    assert user.full_name == "Alice Renamed"
    assert store.stored.user.full_name == "Alice Renamed"


@pytest.mark.asyncio
async def test_listener_errors_do_not_block_termination(session, transport):
    def broken(reason):
        raise RuntimeError("boom")

    seen = []
    session.add_terminated_listener(broken)
    session.add_terminated_listener(seen.append)
    transport.add("GET", "/videos", failure(401))
    transport.add("POST", REFRESH_PATH, failure(401))

    with pytest.raises(SessionTerminatedError):
        await session.issue(ApiRequest("GET", "/videos"))
    assert len(seen) == 1


def test_response_ok_range():
    assert ApiResponse(204).ok
    assert not ApiResponse(401).ok


@pytest.mark.asyncio
async def test_login_list_refresh_then_new_token_everywhere(transport):
    manager = SessionManager(transport, MemoryTokenStore())
    api = VideoTubeAPI(manager, page_size=2)
    pages = {
        1: {"docs": [{"_id": "v1", "title": "One"}, {"_id": "v2", "title": "Two"}], "hasNextPage": True, "totalDocs": 3},
        2: {"docs": [{"_id": "v3", "title": "Three"}], "hasNextPage": False, "totalDocs": 3},
    }
    expired = []

    def videos(request):
        token = bearer(request)
        if token == "Bearer A1" and not expired:
            expired.append(True)
            return envelope(pages[request.params["page"]])
        if token == "Bearer A2":
            return envelope(pages[request.params["page"]])
        return failure(401, "jwt expired")

    transport.add(
        "POST",
        "/users/login",
        envelope({"user": {"_id": "u1", "username": "alice"}, "accessToken": "A1", "refreshToken": "R1"}),
    )
    transport.add("GET", "/videos", videos)
    transport.add("GET", "/users/me", only_token("A2"))
    transport.add("POST", REFRESH_PATH, refreshed("A2", "R2"))

    await manager.login({"username": "alice", "password": "pw"})
    feed = api.videos()
    await feed.reset()

    assert [v.id for v in feed.items] == ["v1", "v2"]
    assert feed.cursor == 2

    # A1 has expired by the time the next page is requested
    await feed.load_more()
    await manager.issue(ApiRequest("GET", "/users/me"))

    assert [v.id for v in feed.items] == ["v1", "v2", "v3"]
    assert feed.cursor == 3
    video_calls = transport.calls("GET", "/videos")
    assert [(bearer(r), r.params["page"], r.retries) for r in video_calls] == [
        ("Bearer A1", 1, 0),
        ("Bearer A1", 2, 0),
        ("Bearer A2", 2, 1),
    ]
    assert bearer(transport.calls("GET", "/users/me")[0]) == "Bearer A2"
    assert transport.calls("POST", REFRESH_PATH)[0].json == {"refreshToken": "R1"}
    assert manager.access_token == "A2"


@pytest.mark.asyncio
async def test_logout_during_refresh_keeps_session_cleared(session, transport, store):
    release = transport.gate("POST", REFRESH_PATH)
    transport.add("GET", "/videos", only_token("access-2"))
    transport.add("POST", REFRESH_PATH, refreshed())
    transport.add("POST", "/users/logout", envelope(None))
    reasons = []
    session.add_terminated_listener(reasons.append)

    pending = asyncio.ensure_future(session.issue(ApiRequest("GET", "/videos")))
    for _ in range(5):
        await asyncio.sleep(0)
    assert session.state is SessionState.REFRESHING

    await session.logout()
    release.set()

    with pytest.raises(SessionTerminatedError):
        await pending
    assert not session.is_authenticated
    assert session.access_token is None
    assert store.stored is None
    assert reasons == []


@pytest.mark.asyncio
async def test_login_during_refresh_is_not_overwritten(session, transport, store):
    release = transport.gate("POST", REFRESH_PATH)
    transport.add("GET", "/videos", only_token("access-2"))
    transport.add("POST", REFRESH_PATH, refreshed())
    transport.add(
        "POST",
        "/users/login",
        envelope({"user": {"_id": "u2", "username": "bob"}, "accessToken": "bob-a", "refreshToken": "bob-r"}),
    )

    pending = asyncio.ensure_future(session.issue(ApiRequest("GET", "/videos")))
    for _ in range(5):
        await asyncio.sleep(0)
    await session.login({"username": "bob", "password": "pw"})
    release.set()

    with pytest.raises(SessionTerminatedError):
        await pending
    assert session.access_token == "bob-a"
    assert store.stored.refresh_token == "bob-r"
    assert session.state is SessionState.AUTHENTICATED
