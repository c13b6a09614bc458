"""HTTP transport: the only place that touches the network.

The transport never interprets status codes. It returns every response that
arrives and raises ``NetworkError`` only when nothing arrives at all, so the
session manager can tell "unauthorized" apart from everything else.
"""
import asyncio
import logging
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import requests

from .errors import NetworkError

logger = logging.getLogger("vidtube.transport")


@dataclass(frozen=True)
class ApiRequest:
    """One outbound call.

    ``retries`` counts how many times the request was replayed after an
    authorization failure. ``authenticated=False`` marks calls that must never
    carry credentials or trigger a refresh (login, register, refresh itself).
    """
    method: str
    path: str
    params: Mapping[str, Any] = field(default_factory=dict)
    json: Any = None
    data: Optional[Mapping[str, Any]] = None
    files: Optional[Mapping[str, Path]] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    authenticated: bool = True
    retries: int = 0

    def with_retry(self) -> "ApiRequest":
        return replace(self, retries=self.retries + 1)

    def with_header(self, name: str, value: str) -> "ApiRequest":
        return replace(self, headers={**self.headers, name: value})


@dataclass(frozen=True)
class ApiResponse:
    status: int
    payload: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class RequestsTransport:
    """Sends ``ApiRequest`` values with a shared ``requests.Session``.

    Blocking calls run in a worker thread so the event loop keeps handling
    input while a request is in flight.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session: requests.Session = session or requests.Session()
        self.session.headers.setdefault("Accept", "application/json")

    async def send(self, request: ApiRequest) -> ApiResponse:
        return await asyncio.to_thread(self._send_blocking, request)

    def close(self) -> None:
        self.session.close()

    def _send_blocking(self, request: ApiRequest) -> ApiResponse:
        url = f"{self.base_url}/{request.path.lstrip('/')}"
        params = {k: v for k, v in request.params.items() if v is not None and v != ""}
        logger.debug("%s %s params=%s retries=%s", request.method, url, params, request.retries)

        with ExitStack() as stack:
            files = None
            if request.files:
                # reopened on every send so a replayed upload starts from byte 0
                files = {
                    name: (Path(path).name, stack.enter_context(open(path, "rb")))
                    for name, path in request.files.items()
                }
            try:
                resp = self.session.request(
                    request.method,
                    url,
                    params=params,
                    json=request.json,
                    data=request.data,
                    files=files,
                    headers=dict(request.headers),
                    timeout=self.timeout,
                )
            except requests.Timeout as e:
                logger.warning("%s %s timed out after %ss", request.method, url, self.timeout)
                raise NetworkError(f"Request timed out: {e}", timed_out=True) from e
            except requests.RequestException as e:
                logger.warning("%s %s failed: %s", request.method, url, e)
                raise NetworkError(f"Network error: {e}") from e

        logger.debug("%s %s -> HTTP %s", request.method, url, resp.status_code)
        return ApiResponse(status=resp.status_code, payload=_decode(resp))


def _decode(resp: requests.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return {"message": resp.text}


def unwrap(payload: Any) -> Any:
    """Strip the backend's ``{statusCode, data, message, success}`` envelope."""
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload

