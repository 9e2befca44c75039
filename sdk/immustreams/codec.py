"""
Key and payload codec for the immudb transport.

Maps channel links to store keys and moves binary payloads through
JSON request/response bodies as standard base64 text.

Invariants:
    - link_to_key() returns the engine's own message index, untouched
    - decode(encode(b)) == b for every byte string, including b""
    - Malformed text raises DecodeError, never an empty payload
"""

from __future__ import annotations

import base64
import binascii

from .channel import Link
from .errors import DecodeError


def link_to_key(link: Link) -> bytes:
    """Store key for a link.

    The key is the engine's canonical message index. No hashing or
    truncation is applied on top of it.

    Raises:
        TypeError: If the engine returns something other than bytes
    """
    index = link.to_msg_index()
    if not isinstance(index, (bytes, bytearray)):
        raise TypeError(f"Message index must be bytes, got {type(index).__name__}")
    return bytes(index)


def encode(data: bytes) -> str:
    """Encode bytes as base64 text."""
    return base64.b64encode(data).decode("ascii")


def decode(text: str) -> bytes:
    """Decode base64 text.

    Raises:
        DecodeError: If text is not valid base64
    """
    if not isinstance(text, str):
        raise DecodeError(f"Expected base64 text, got {type(text).__name__}")
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise DecodeError(f"Malformed base64 payload: {e}") from e


def encode_text(value: str) -> str:
    """Encode a UTF-8 string as base64 text (credentials)."""
    return encode(value.encode("utf-8"))
