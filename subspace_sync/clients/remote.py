"""
RemoteClient Pipeline
=====================
1. Input : ``path`` relative to an entity (``"<entity id>/<operation>"``),
   an HTTP-like method and an optional body.
2. For writes, ask the caller-supplied signer for request headers.
3. Run one attempt against the current endpoint, raced against the per-call
   timeout, through the shared :class:`RetryPolicy` (which may switch to the
   next endpoint once per call).
4. Return the decoded JSON payload of a 200 response, or raise a typed
   :class:`~subspace_sync.errors.RemoteError`.

NOTE: GET bodies are sent as query parameters; non-string values are JSON
encoded, matching what the process handlers expect.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Protocol

import aiohttp

from subspace_sync.config import remote
from subspace_sync.errors import (
    FatalRemoteError,
    RemoteError,
    ResponseShapeError,
    SignerUnavailableError,
    TransientRemoteError,
)

from .retry import RetryPolicy, exponential_backoff

logger = logging.getLogger(__name__)


class Signer(Protocol):
    """Opaque signing capability supplied by the wallet collaborator."""

    async def sign(self, request: Mapping[str, Any]) -> Mapping[str, str]: ...


@dataclass(slots=True)
class RemoteResponse:
    status: int
    payload: Any = None
    error: Optional[str] = None


def default_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=remote.MAX_ATTEMPTS,
        backoff=exponential_backoff(remote.BASE_DELAY, remote.BACKOFF_FACTOR),
    )


class RemoteClient:
    """Read/write access to the remote service with retry and failover."""

    def __init__(
        self,
        endpoints: Optional[Iterable[str]] = None,
        *,
        timeout: Optional[float] = None,
        policy: Optional[RetryPolicy] = None,
        session: Optional[aiohttp.ClientSession] = None,
        signer: Optional[Signer] = None,
    ) -> None:
        self._endpoints = [e.rstrip("/") for e in (endpoints or remote.ENDPOINTS)]
        if not self._endpoints:
            raise ValueError("RemoteClient needs at least one endpoint")
        self._index = 0
        self._timeout = remote.TIMEOUT if timeout is None else timeout
        self._policy = policy or default_policy()
        self._session = session
        self._owns_session = session is None
        self._signer = signer

    # ------------------------------------------------------------------ #
    # Endpoint rotation
    # ------------------------------------------------------------------ #

    @property
    def endpoints(self) -> list[str]:
        return list(self._endpoints)

    @property
    def current_endpoint(self) -> str:
        return self._endpoints[self._index]

    def switch_endpoint(self) -> str:
        """Advance to the next endpoint (wrapping) and return it."""

        self._index = (self._index + 1) % len(self._endpoints)
        logger.info("Switching to endpoint: %s", self.current_endpoint)
        return self.current_endpoint

    # ------------------------------------------------------------------ #
    # Calls
    # ------------------------------------------------------------------ #

    async def call(
        self,
        path: str,
        *,
        method: str = "GET",
        body: Optional[Mapping[str, Any]] = None,
        needs_signer: bool = False,
        signer: Optional[Signer] = None,
    ) -> Any:
        """Issue ``method`` on ``path`` and return the JSON payload."""

        method = method.upper()
        headers: dict[str, str] = {}
        if needs_signer:
            headers = await self._sign(path, method, body, signer or self._signer)

        async def _attempt() -> Any:
            return await self._call_once(path, method, body, headers)

        return await self._policy.run(_attempt, on_switch=self.switch_endpoint, label=path)

    async def _sign(
        self,
        path: str,
        method: str,
        body: Optional[Mapping[str, Any]],
        signer: Optional[Signer],
    ) -> dict[str, str]:
        if signer is None:
            raise SignerUnavailableError(path=path)
        request = {"path": path, "method": method, "body": dict(body or {})}
        try:
            return dict(await signer.sign(request))
        except RemoteError:
            raise
        except Exception as exc:
            raise FatalRemoteError(f"Signing failed for {path}: {exc}", path=path) from exc

    async def _call_once(
        self,
        path: str,
        method: str,
        body: Optional[Mapping[str, Any]],
        headers: Mapping[str, str],
    ) -> Any:
        endpoint = self.current_endpoint
        try:
            response = await asyncio.wait_for(
                self._send(endpoint, path, method, body, headers), self._timeout
            )
        except asyncio.TimeoutError as exc:
            raise TransientRemoteError("Request timed out", endpoint=endpoint, path=path) from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise TransientRemoteError(
                f"Connection error: {exc}", endpoint=endpoint, path=path
            ) from exc

        logger.info("Response from %s for %s: status %s", endpoint, path, response.status)
        return self._unwrap(response, endpoint, path)

    @staticmethod
    def _unwrap(response: RemoteResponse, endpoint: str, path: str) -> Any:
        if response.status == 200:
            return response.payload

        detail = response.error or "Unknown error"
        status = response.status
        if status in (403, 404):
            raise FatalRemoteError(detail, status=status, endpoint=endpoint, path=path)
        message = f"Server returned status {status}: {detail}"
        if status == 429 or status >= 500:
            raise TransientRemoteError(message, status=status, endpoint=endpoint, path=path)
        raise RemoteError(message, status=status, endpoint=endpoint, path=path)

    async def _send(
        self,
        endpoint: str,
        path: str,
        method: str,
        body: Optional[Mapping[str, Any]],
        headers: Mapping[str, str],
    ) -> RemoteResponse:
        session = self._get_session()
        url = f"{endpoint}/{path.lstrip('/')}"
        kwargs: dict[str, Any] = {}
        if body is not None:
            if method == "GET":
                kwargs["params"] = {
                    k: v if isinstance(v, str) else json.dumps(v) for k, v in body.items()
                }
            else:
                kwargs["json"] = dict(body)

        async with session.request(method, url, headers=dict(headers), **kwargs) as resp:
            status = resp.status
            text = await resp.text()

        return self._decode(status, text, endpoint, path)

    @staticmethod
    def _decode(status: int, text: str, endpoint: str, path: str) -> RemoteResponse:
        if not text.strip():
            return RemoteResponse(status=status)
        try:
            decoded = json.loads(text)
        except ValueError as exc:
            if status == 200:
                raise ResponseShapeError(
                    f"Response for {path} is not JSON", status=status, endpoint=endpoint, path=path
                ) from exc
            return RemoteResponse(status=status, error=text.strip()[:500])

        error = None
        if status != 200 and isinstance(decoded, Mapping):
            error = decoded.get("error") or decoded.get("message")
        return RemoteResponse(status=status, payload=decoded, error=error)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
