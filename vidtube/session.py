"""
Session management: owns the access/refresh token pair, attaches credentials
to outbound requests and recovers from expired access tokens.

Every request goes through ``SessionManager.issue``. A 401 triggers one
refresh (shared by every request that fails while it runs), then the request
is replayed once with the new token. If the refresh fails the whole session
is torn down and ``SessionTerminatedError`` is raised to every waiter.
"""
import asyncio
import enum
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

from .auth_storage import MemoryTokenStore, StoredSession, TokenStore
from .data_models import User
from .errors import (
    ApiError,
    AuthStorageError,
    SessionTerminatedError,
    UnauthorizedError,
    error_for_status,
)
from .transport import ApiRequest, ApiResponse, unwrap

logger = logging.getLogger("vidtube.session")

# How many times a request may be replayed after an authorization failure.
MAX_AUTH_RETRIES = 1

REFRESH_PATH = "/users/refresh-token"


class Transport(Protocol):
    async def send(self, request: ApiRequest) -> ApiResponse: ...


class SessionState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


TerminatedListener = Callable[[str], Any]


class SessionManager:
    """The single writer of the token pair and the user snapshot."""

    def __init__(self, transport: Transport, store: Optional[TokenStore] = None):
        self._transport = transport
        self._store: TokenStore = store if store is not None else MemoryTokenStore()
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._user: Optional[User] = None
        self._state = SessionState.UNAUTHENTICATED
        self._refresh_future: Optional[asyncio.Future] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._listeners: List[TerminatedListener] = []
        # bumped whenever local state is cleared or replaced
        self._epoch = 0

    # --- read-only views ---
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user(self) -> Optional[User]:
        return self._user

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def is_authenticated(self) -> bool:
        return self._state is not SessionState.UNAUTHENTICATED

    def add_terminated_listener(self, callback: TerminatedListener) -> None:
        self._listeners.append(callback)

    # --- requests ---
    def attach_credential(self, request: ApiRequest) -> ApiRequest:
        if request.authenticated and self._access_token:
            return request.with_header("Authorization", f"Bearer {self._access_token}")
        return request

    async def issue(self, request: ApiRequest) -> Any:
        """Send ``request`` and return the unwrapped ``data`` of the response.

        Raises the ``ApiError`` subclass matching any failure status.
        """
        token_used = self._access_token if request.authenticated else None
        response = await self._transport.send(self.attach_credential(request))
        if response.ok:
            return unwrap(response.payload)
        if response.status != 401 or not request.authenticated:
            raise error_for_status(response.status, response.payload)

        if request.retries >= MAX_AUTH_RETRIES:
            logger.warning("%s %s still unauthorized after refresh", request.method, request.path)
            raise error_for_status(response.status, response.payload)

        if token_used and not self._access_token:
            # the session was torn down while this request was in flight
            raise SessionTerminatedError("Session has ended", status=401)
        if self._access_token and self._access_token != token_used:
            # a refresh finished while this request was in flight
            logger.debug("retrying %s with the already refreshed token", request.path)
        else:
            await self._refresh_access_token()
        return await self.issue(request.with_retry())

    async def _refresh_access_token(self) -> str:
        """Join the running refresh or start one. Returns the new access token."""
        if self._refresh_future is None:
            loop = asyncio.get_running_loop()
            self._refresh_future = loop.create_future()
            self._state = SessionState.REFRESHING
            self._refresh_task = loop.create_task(self._run_refresh(self._refresh_future))
        else:
            logger.debug("refresh already in progress, queueing request")
        # shield: a cancelled waiter must not cancel the refresh for everyone else
        return await asyncio.shield(self._refresh_future)

    async def _run_refresh(self, future: asyncio.Future) -> None:
        epoch = self._epoch
        try:
            token = await self._request_new_tokens(epoch)
        except (ApiError, AuthStorageError, ValueError, KeyError, TypeError) as e:
            reason = str(e) or "Session refresh failed"
            if epoch == self._epoch:
                logger.warning("token refresh failed, terminating session: %s", reason)
                self._terminate(reason)
            else:
                # logout or a new login already replaced the state this refresh was for
                logger.info("dropping refresh outcome for a cleared session: %s", reason)
            future.set_exception(SessionTerminatedError(reason, status=401))
        else:
            self._state = SessionState.AUTHENTICATED
            future.set_result(token)
        finally:
            if not future.done():
                # cancelled mid-refresh; waiters must still be released
                if epoch == self._epoch:
                    self._terminate("Session refresh aborted")
                future.set_exception(SessionTerminatedError("Session refresh aborted", status=401))
            self._refresh_future = None
            self._refresh_task = None

    async def _request_new_tokens(self, epoch: int) -> str:
        refresh_token = self._refresh_token
        if not refresh_token:
            raise SessionTerminatedError("No refresh token available", status=401)

        request = ApiRequest("POST", REFRESH_PATH, json={"refreshToken": refresh_token}, authenticated=False)
        response = await self._transport.send(request)
        if epoch != self._epoch:
            raise SessionTerminatedError("Session ended during refresh", status=401)
        if not response.ok:
            raise error_for_status(response.status, response.payload)

        data = unwrap(response.payload) or {}
        access_token = data["accessToken"]
        if not access_token:
            raise ValueError("Refresh response carried no access token")
        # a missing rotated refresh token means "keep the one we have"
        self._access_token = access_token
        self._refresh_token = data.get("refreshToken") or refresh_token
        self._persist()
        logger.info("access token refreshed")
        return access_token

    # --- lifecycle ---
    async def login(self, credentials: Dict[str, Any]) -> User:
        data = await self.issue(ApiRequest("POST", "/users/login", json=credentials, authenticated=False))
        return self._authenticate(data)

    async def register(self, profile: Dict[str, Any], files: Optional[Dict[str, Any]] = None) -> User:
        if files:
            request = ApiRequest("POST", "/users/register", data=profile, files=files, authenticated=False)
        else:
            request = ApiRequest("POST", "/users/register", json=profile, authenticated=False)
        data = await self.issue(request)
        if isinstance(data, dict) and data.get("accessToken"):
            return self._authenticate(data)
        logger.info("registration returned no tokens; user must log in")
        return User.from_payload(data.get("user", data) if isinstance(data, dict) else {})

    async def logout(self) -> None:
        """Invalidate server-side (best effort) and always clear local state."""
        if self._access_token:
            try:
                response = await self._transport.send(self.attach_credential(ApiRequest("POST", "/users/logout")))
                if not response.ok:
                    logger.info("logout returned HTTP %s (ignored)", response.status)
            except ApiError as e:
                logger.info("logout call failed (ignored): %s", e)
        self._clear()

    def restore(self) -> bool:
        """Load the persisted session at startup. Returns True when authenticated."""
        stored = self._store.load()
        if not stored or not stored.refresh_token:
            logger.debug("no persisted refresh token; starting unauthenticated")
            self._clear()
            return False
        self._access_token = stored.access_token
        self._refresh_token = stored.refresh_token
        self._user = stored.user
        self._state = SessionState.AUTHENTICATED
        return True

    async def fetch_current_user(self) -> User:
        data = await self.issue(ApiRequest("GET", "/users/me"))
        self._user = User.from_payload(data or {})
        self._persist()
        return self._user

    def update_user(self, user: User) -> None:
        self._user = user
        self._persist()

    # --- internal state transitions ---
    def _authenticate(self, data: Dict[str, Any]) -> User:
        access_token = data.get("accessToken")
        if not access_token:
            raise UnauthorizedError("Login response carried no access token", payload=data)
        self._access_token = access_token
        self._refresh_token = data.get("refreshToken")
        self._epoch += 1
        self._user = User.from_payload(data.get("user") or {})
        self._state = SessionState.AUTHENTICATED
        self._persist()
        logger.info("signed in as %s", self._user.username)
        return self._user

    def _persist(self) -> None:
        self._store.save(StoredSession(self._access_token, self._refresh_token, self._user))

    def _clear(self) -> None:
        self._epoch += 1
        self._access_token = None
        self._refresh_token = None
        self._user = None
        self._state = SessionState.UNAUTHENTICATED
        self._store.clear()

    def _terminate(self, reason: str) -> None:
        self._clear()
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception:
                logger.exception("session terminated listener failed")
