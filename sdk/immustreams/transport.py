"""
immudb verified-store transport for channel engines.

Implements the Transport contract on top of a StoreSession:
- send_message(): verified set of one key/value pair
- receive_message(): verified get of one key

Invariants:
    - No internal retries; retry policy belongs to the caller
    - No local state beyond the session handle
    - A miss is NotFoundError, never an empty message

Wire format:
    POST /db/verified/set  {"setRequest": {"KVs": [{"key": b64, "value": b64}]}}
    POST /db/verified/get  {"keyRequest": {"key": b64}} -> {"value": b64, ...}
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .channel import Message
from .codec import decode, encode, link_to_key
from .errors import (
    ConflictError,
    NotFoundError,
    ProtocolMismatchError,
    ReceiveError,
    SendError,
)
from .session import StoreSession

logger = logging.getLogger(__name__)

SET_PATH = "/db/verified/set"
GET_PATH = "/db/verified/get"

# immudb reports a missing key as 404, or as an error body on older servers
_MISSING_KEY_MARKER = "key not found"


class ImmuDBTransport:
    """Transport that stores channel messages in immudb.

    Example:
        >>> session = StoreSession("127.0.0.1:3323", "defaultdb")
        >>> await session.login()
        >>> transport = ImmuDBTransport(session)
        >>> author = engine.new_author("seed", ChannelType.MULTI_BRANCH, transport)
    """

    def __init__(self, session: StoreSession) -> None:
        self._session = session

    @property
    def session(self) -> StoreSession:
        return self._session

    async def send_message(self, msg: Message) -> None:
        """Persist one message at its link.

        Raises:
            ConflictError: If a different record already exists at the key
            SendError: If the store rejects the write
            TimeoutError: If the request times out
        """
        index = link_to_key(msg.link)
        body = {
            "setRequest": {
                "KVs": [
                    {
                        "key": encode(index),
                        "value": encode(msg.body),
                    }
                ]
            }
        }
        response = await self._session.request("POST", SET_PATH, json=body)

        if response.status_code == 409:
            raise ConflictError(f"Record already exists at {index.hex()}", key=index.hex())
        if not response.is_success:
            raise SendError(
                f"Error sending message to {index.hex()} ({response.status_code})",
                key=index.hex(),
                status=response.status_code,
            )

        logger.debug(f"Stored message at {msg.link}", extra={"key": index.hex()})

    async def receive_message(self, link: Any) -> Message:
        """Fetch the message stored at a link.

        The predecessor of the returned message is unknown to the store,
        so prev_link is always None.

        Raises:
            NotFoundError: If nothing is stored at the link
            ReceiveError: If the store rejects the read
            ProtocolMismatchError: If the response has no value field
            DecodeError: If the value is not valid base64
        """
        index = link_to_key(link)
        key = index.hex()
        response = await self._session.request(
            "POST",
            GET_PATH,
            json={"keyRequest": {"key": encode(index)}},
        )

        if not response.is_success:
            if _is_missing_key(response):
                raise NotFoundError(f"No message at {link}", key=key, status=response.status_code)
            raise ReceiveError(
                f"Error ({response.status_code}) receiving message at {link}",
                key=key,
                status=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ProtocolMismatchError(
                f"Response for {key} is not JSON",
                key=key,
            ) from e

        value = payload.get("value") if isinstance(payload, dict) else None
        if not isinstance(value, str):
            raise ProtocolMismatchError(
                f"Response for {key} has no 'value' field",
                key=key,
                field_name="value",
            )

        logger.debug(f"Fetched message at {link}", extra={"key": key})
        return Message(link=link, body=decode(value))

    async def exists(self, link: Any) -> bool:
        """Whether a record is stored at the link."""
        try:
            await self.receive_message(link)
        except NotFoundError:
            return False
        return True


def _is_missing_key(response: httpx.Response) -> bool:
    if response.status_code == 404:
        return True
    try:
        text = response.text
    except UnicodeDecodeError:
        return False
    return _MISSING_KEY_MARKER in text.lower()
