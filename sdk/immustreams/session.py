"""
Authenticated HTTP session against one immudb instance.

This module owns the httpx client used by the transport:
- StoreSession: login, database selection, authenticated requests
- Credentials: user/password pair sent base64-encoded

Example:
    >>> async with StoreSession("127.0.0.1:3323", "defaultdb") as session:
    ...     response = await session.request("POST", "/db/verified/get", json=body)

Invariants:
    - No other component builds store URLs
    - The session token is replaced in one assignment; re-login runs under the session lock
    - Credentials and tokens are never logged

Re-login policy:
    A request answered with 401 triggers one re-login, but only if the
    token is still the one the request was sent with. The request is then
    reissued once. Disable with relogin_on_expiry=False.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .codec import encode_text
from .errors import AuthError, ConnectionError, TimeoutError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3323


@dataclass(frozen=True)
class Credentials:
    """Store login credentials."""

    user: str = "immudb"
    password: str = "immudb"

    def to_request(self) -> dict[str, str]:
        """Login request body with both fields base64-encoded."""
        return {
            "user": encode_text(self.user),
            "password": encode_text(self.password),
        }

    def __repr__(self) -> str:
        return f"Credentials(user={self.user!r}, password='***')"


class StoreSession:
    """Single-owner authenticated session to an immudb REST endpoint.

    Pass one instance explicitly to each transport. Sessions are
    independent: each holds its own client, cookies and token.
    """

    def __init__(
        self,
        address: str,
        database: str = "defaultdb",
        credentials: Credentials | None = None,
        *,
        secure: bool = False,
        timeout: float = 10.0,
        relogin_on_expiry: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize session.

        Args:
            address: Store address (host:port or just host)
            database: Database to select after login
            credentials: Login credentials (immudb defaults if omitted)
            secure: Whether to use https
            timeout: Request timeout in seconds
            relogin_on_expiry: Re-login once when a request gets 401
            transport: Optional httpx transport (tests, in-memory store)
        """
        if ":" in address:
            host, port_str = address.rsplit(":", 1)
            port = int(port_str)
        else:
            host = address
            port = DEFAULT_PORT

        self._host = host
        self._port = port
        self._scheme = "https" if secure else "http"
        self.database = database
        self._credentials = credentials or Credentials()
        self._relogin_on_expiry = relogin_on_expiry
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._token: str | None = None
        self._authenticated = False
        self._lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return f"{self._host}:{self._port}"

    @property
    def base_url(self) -> str:
        return f"{self._scheme}://{self.address}"

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    def endpoint(self, path: str) -> str:
        """Fully-qualified URL for a store path."""
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{path}"

    async def login(self, credentials: Credentials | None = None) -> None:
        """Authenticate and select the database.

        Args:
            credentials: Replaces the session credentials if given

        Raises:
            AuthError: If login or database selection is rejected
            ConnectionError: If the store is unreachable
            TimeoutError: If either request times out
        """
        if credentials is not None:
            self._credentials = credentials

        response = await self._send("POST", "/login", self._credentials.to_request(), None)
        if not response.is_success:
            self._authenticated = False
            raise AuthError(
                f"Login to {self.address} failed ({response.status_code})",
                status=response.status_code,
                step="login",
            )
        token = _token_from(response)

        response = await self._send("GET", f"/db/use/{self.database}", None, token)
        if not response.is_success:
            self._authenticated = False
            raise AuthError(
                f"Selecting database '{self.database}' failed ({response.status_code})",
                status=response.status_code,
                step="use_database",
            )

        # Single assignment; in-flight requests hold the previous token
        self._token = _token_from(response) or token
        self._authenticated = True
        logger.info(f"Logged in to immudb at {self.address}, database '{self.database}'")

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
    ) -> httpx.Response:
        """Issue an authenticated request.

        Non-success statuses are returned, not raised; callers map them.

        Raises:
            AuthError: If called before login or re-login fails
            ConnectionError: If the store is unreachable
            TimeoutError: If the request times out
        """
        if not self._authenticated:
            raise AuthError("Session is not logged in. Call login() first.", step="request")

        token = self._token
        response = await self._send(method, path, json, token)

        if response.status_code == 401 and self._relogin_on_expiry:
            logger.info(f"Session token rejected on {path}, logging in again")
            await self._refresh(token)
            response = await self._send(method, path, json, self._token)

        return response

    async def _refresh(self, stale_token: str | None) -> None:
        """Re-login unless another caller already replaced the token."""
        async with self._lock:
            if self._token == stale_token:
                await self.login()

    async def _send(
        self,
        method: str,
        path: str,
        body: Any,
        token: str | None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = await self._client.request(
                method,
                self.endpoint(path),
                json=body,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise TimeoutError(f"Request to {path} timed out: {e}", path=path) from e
        except httpx.TransportError as e:
            raise ConnectionError(
                f"Failed to reach store: {e}",
                address=self.address,
            ) from e

        logger.debug(f"{method} {path} -> {response.status_code}")
        return response

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
        self._authenticated = False
        self._token = None

    async def __aenter__(self) -> StoreSession:
        await self.login()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def _token_from(response: httpx.Response) -> str | None:
    """Session token from a login or db/use response, if any."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        token = payload.get("token")
        if isinstance(token, str) and token:
            return token
    return None
