"""
In-memory immudb REST endpoint for testing.

This module provides an immudb-compatible request handler served through
httpx.MockTransport, for:
- Unit tests of the session and transport
- Integration tests of the orchestrator
- Local runs of the demo without an immudb server (--in-memory)

Invariants:
    - All data is lost on process exit
    - Writes of an existing key with the same value are no-ops
    - Writes of an existing key with a different value get 409
    - A missing key gets 404 {"message": "key not found"}

How to change safely:
    - This is test-only code, changes don't affect the real transport
    - Keep the wire format identical to immudb's REST gateway
"""

from __future__ import annotations

import base64
import itertools
import json
import logging
import secrets
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .session import Credentials, StoreSession

logger = logging.getLogger(__name__)


@dataclass
class _Injected:
    """Failure queued for the next requests to a path."""

    path: str
    status: Optional[int]
    times: int
    timeout: bool = False


class InMemoryImmuDB:
    """In-memory implementation of the immudb REST endpoints.

    Example:
        >>> store = InMemoryImmuDB()
        >>> session = store.session()
        >>> await session.login()
        >>> transport = ImmuDBTransport(session)
    """

    def __init__(
        self,
        users: Optional[Dict[str, str]] = None,
        databases: Tuple[str, ...] = ("defaultdb",),
    ) -> None:
        """Initialize the store.

        Args:
            users: Accepted user -> password pairs
            databases: Databases that can be selected
        """
        self.users = dict(users or {"immudb": "immudb"})
        self._data: Dict[str, Dict[bytes, bytes]] = defaultdict(dict)
        for name in databases:
            self._data[name] = {}
        # token -> selected database (None until db/use)
        self._tokens: Dict[str, Optional[str]] = {}
        self._tx_ids = itertools.count(1)
        self._injected: List[_Injected] = []
        self.requests: List[Tuple[str, str]] = []

    def transport(self) -> httpx.MockTransport:
        """httpx transport routing requests to this store."""
        return httpx.MockTransport(self.handle)

    def session(
        self,
        database: str = "defaultdb",
        credentials: Optional[Credentials] = None,
        **kwargs: Any,
    ) -> StoreSession:
        """Store session bound to this store (not yet logged in)."""
        return StoreSession(
            "immudb.local:3323",
            database,
            credentials,
            transport=self.transport(),
            **kwargs,
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        """Route one request."""
        path = request.url.path
        self.requests.append((request.method, path))

        injected = self._take_injected(path)
        if injected is not None:
            if injected.timeout:
                raise httpx.ReadTimeout("injected timeout", request=request)
            return _error(injected.status or 500, "injected failure")

        if request.method == "POST" and path == "/login":
            return self._login(request)
        if request.method == "GET" and path.startswith("/db/use/"):
            return self._use_database(request, path[len("/db/use/"):])
        if request.method == "POST" and path == "/db/verified/set":
            return self._verified_set(request)
        if request.method == "POST" and path == "/db/verified/get":
            return self._verified_get(request)
        return _error(501, f"unsupported endpoint {request.method} {path}")

    def _login(self, request: httpx.Request) -> httpx.Response:
        body = _json_body(request)
        try:
            user = _b64(body.get("user", "")).decode("utf-8")
            password = _b64(body.get("password", "")).decode("utf-8")
        except (ValueError, TypeError):
            return _error(400, "illegal base64 data")

        if self.users.get(user) != password:
            return _error(401, "invalid user name or password")

        token = secrets.token_hex(16)
        self._tokens[token] = None
        return httpx.Response(200, json={"token": token})

    def _use_database(self, request: httpx.Request, name: str) -> httpx.Response:
        token = _bearer(request)
        if token not in self._tokens:
            return _error(401, "invalid token")
        if name not in self._data:
            return _error(404, f"database {name} does not exist")

        db_token = secrets.token_hex(16)
        self._tokens[db_token] = name
        return httpx.Response(200, json={"token": db_token})

    def _selected(self, request: httpx.Request) -> Optional[str]:
        token = _bearer(request)
        return self._tokens.get(token) if token else None

    def _verified_set(self, request: httpx.Request) -> httpx.Response:
        database = self._selected(request)
        if database is None:
            return _error(401, "please login first")

        body = _json_body(request)
        try:
            kvs = body["setRequest"]["KVs"]
            pairs = [(_b64(kv["key"]), _b64(kv["value"])) for kv in kvs]
        except (KeyError, TypeError, ValueError):
            return _error(400, "malformed set request")

        records = self._data[database]
        for key, value in pairs:
            existing = records.get(key)
            if existing is not None and existing != value:
                return _error(409, "key already exists with a different value")

        for key, value in pairs:
            records[key] = value
        tx_id = next(self._tx_ids)
        logger.debug(f"Stored {len(pairs)} record(s) in {database}", extra={"tx": tx_id})
        return httpx.Response(200, json={"id": str(tx_id), "nentries": len(pairs)})

    def _verified_get(self, request: httpx.Request) -> httpx.Response:
        database = self._selected(request)
        if database is None:
            return _error(401, "please login first")

        body = _json_body(request)
        try:
            key = _b64(body["keyRequest"]["key"])
        except (KeyError, TypeError, ValueError):
            return _error(400, "malformed key request")

        value = self._data[database].get(key)
        if value is None:
            return _error(404, "key not found")
        return httpx.Response(
            200,
            json={
                "key": base64.b64encode(key).decode("ascii"),
                "value": base64.b64encode(value).decode("ascii"),
            },
        )

    def _take_injected(self, path: str) -> Optional[_Injected]:
        for injected in self._injected:
            if injected.path == path:
                injected.times -= 1
                if injected.times <= 0:
                    self._injected.remove(injected)
                return injected
        return None

    # Testing helpers

    def inject_failure(self, path: str, status: int = 500, times: int = 1) -> None:
        """Answer the next `times` requests to path with status."""
        self._injected.append(_Injected(path=path, status=status, times=times))

    def inject_timeout(self, path: str, times: int = 1) -> None:
        """Raise a read timeout on the next `times` requests to path."""
        self._injected.append(_Injected(path=path, status=None, times=times, timeout=True))

    def revoke_tokens(self) -> None:
        """Invalidate every issued token (simulates session expiry)."""
        self._tokens.clear()

    def get(self, key: bytes, database: str = "defaultdb") -> Optional[bytes]:
        """Raw value stored at key."""
        return self._data[database].get(key)

    def get_record_count(self, database: str = "defaultdb") -> int:
        """Number of keys stored in database."""
        return len(self._data[database])

    def count_requests(self, path: str) -> int:
        return sum(1 for _, p in self.requests if p == path)


def _json_body(request: httpx.Request) -> Dict[str, Any]:
    try:
        body = json.loads(request.content or b"{}")
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _b64(text: str) -> bytes:
    return base64.b64decode(text, validate=True)


def _bearer(request: httpx.Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):]
    return None


def _error(status: int, message: str) -> httpx.Response:
    return httpx.Response(status, json={"error": message, "code": status, "message": message})
