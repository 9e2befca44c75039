"""
Test helpers shared across unit and integration tests.
"""

import json
from typing import Callable, List

import httpx

from sdk.immustreams.memory import InMemoryImmuDB
from sdk.immustreams.session import StoreSession
from sdk.immustreams.transport import ImmuDBTransport


async def open_transport(store: InMemoryImmuDB, **kwargs) -> ImmuDBTransport:
    """Logged-in transport against the in-memory store."""
    session = store.session(**kwargs)
    await session.login()
    return ImmuDBTransport(session)


def wrapped_session(
    store: InMemoryImmuDB,
    override: Callable[[httpx.Request], httpx.Response | None],
    **kwargs,
) -> StoreSession:
    """Session whose requests go to override first, then to the store.

    override returns a response to short-circuit the store, or None.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        response = override(request)
        if response is not None:
            return response
        return store.handle(request)

    return StoreSession("immudb.local:3323", transport=httpx.MockTransport(handler), **kwargs)


def recorded_writes(store: InMemoryImmuDB, sink: List[str], **kwargs) -> StoreSession:
    """Session that appends the base64 key of every verified set to sink."""

    def record(request: httpx.Request) -> None:
        if request.url.path == "/db/verified/set":
            body = json.loads(request.content)
            sink.extend(kv["key"] for kv in body["setRequest"]["KVs"])
        return None

    return wrapped_session(store, record, **kwargs)
