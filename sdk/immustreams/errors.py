"""
Error types for the immustreams adapter.

This module defines all exception types raised by the adapter:
- StreamsError: Base exception
- AuthError: Login or database selection failed
- ConnectionError: Store unreachable
- TimeoutError: Store request timed out
- SendError / ConflictError: Write rejected by the store
- ReceiveError / NotFoundError: Read rejected or missed
- DecodeError: Malformed text-safe payload
- ProtocolMismatchError: Successful response without the expected field
- ChannelError: Channel engine rejected a message
- StateTransitionError: Orchestrator lifecycle step out of order

Invariants:
    - All errors inherit from StreamsError
    - NotFoundError is a ReceiveError; DecodeError is not
    - Errors carry the store key (hex) where one is involved
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class StreamsError(Exception):
    """Base exception for all immustreams errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "STREAMS_ERROR"
        self.details = details or {}


class AuthError(StreamsError):
    """Failed to establish an authenticated store session.

    Raised when:
    - Login returns a non-success status
    - Database selection returns a non-success status
    - A request is issued before login

    Fatal: the adapter cannot work without a session.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        step: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="AUTH_ERROR",
            details={"status": status, "step": step},
        )
        self.status = status
        self.step = step


class ConnectionError(StreamsError):
    """Failed to reach the store."""

    def __init__(
        self,
        message: str,
        address: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details={"address": address},
        )
        self.address = address


class TimeoutError(StreamsError):
    """Store request timed out.

    Safe to retry: the same request carries the same key/value.
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="TIMEOUT",
            details={"path": path},
        )
        self.path = path


class SendError(StreamsError):
    """Store rejected a write.

    Attributes:
        key: Hex form of the store key that failed to persist
        status: HTTP status returned by the store
    """

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        status: Optional[int] = None,
        code: str = "SEND_ERROR",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"key": key, "status": status},
        )
        self.key = key
        self.status = status


class ConflictError(SendError):
    """A different record already exists at the key."""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        status: Optional[int] = 409,
    ) -> None:
        super().__init__(message, key=key, status=status, code="CONFLICT")


class ReceiveError(StreamsError):
    """Store rejected a read."""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        status: Optional[int] = None,
        code: str = "RECEIVE_ERROR",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"key": key, "status": status},
        )
        self.key = key
        self.status = status


class NotFoundError(ReceiveError):
    """No record at the key.

    Raised when:
    - The link was never written
    - A forward scan reached the end of a publisher's sequence
    """

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        status: Optional[int] = 404,
    ) -> None:
        super().__init__(message, key=key, status=status, code="NOT_FOUND")


class DecodeError(StreamsError):
    """Text-safe payload could not be decoded.

    Never coerced to an empty payload.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, code="DECODE_ERROR")


class ProtocolMismatchError(StreamsError):
    """Successful store response missing the expected field layout."""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        field_name: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="PROTOCOL_MISMATCH",
            details={"key": key, "field": field_name},
        )
        self.key = key
        self.field_name = field_name


class ChannelError(StreamsError):
    """Channel engine rejected a message.

    Raised when:
    - A subscriber is already known
    - A message chains to an unknown link
    - A message does not belong to the channel
    """

    def __init__(
        self,
        message: str,
        link: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="CHANNEL_ERROR",
            details={"link": link},
        )
        self.link = link


class StateTransitionError(StreamsError):
    """Author lifecycle step attempted out of order."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Invalid author state transition: {current} -> {target}",
            code="STATE_TRANSITION",
            details={"current": current, "target": target},
        )
        self.current = current
        self.target = target
