"""
Capability contract between the adapter and a channel engine.

This module defines the types exchanged with the channel engine and the
Protocols both sides implement:
- Link: opaque message address with a canonical index
- Message: one raw message as moved through the transport
- UnwrappedMessage / MessageContent: one message as read by a role
- Transport: what the adapter exposes to the engine
- Author / Subscriber: what the orchestrator needs from the engine

Invariants:
    - Links are immutable once produced by the engine
    - The adapter never inspects Message.body
    - Message.prev_link is None when the transport cannot know it

How to change safely:
    - Protocol changes require updating all engines and transports
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)


class ChannelType(str, Enum):
    """Supported channel shapes."""

    SINGLE_BRANCH = "single_branch"
    MULTI_BRANCH = "multi_branch"


@runtime_checkable
class Link(Protocol):
    """Opaque message address produced by the channel engine."""

    @abstractmethod
    def to_msg_index(self) -> bytes:
        """Canonical index of the link, used as the store key."""
        ...


@dataclass(frozen=True)
class Message:
    """A raw channel message as carried by a transport.

    Attributes:
        link: Address of this message
        body: Opaque message bytes
        prev_link: Predecessor address, None when unknown
    """

    link: Any
    body: bytes
    prev_link: Optional[Any] = None


@dataclass(frozen=True)
class MessageContent:
    """Decoded content of a message as seen by one role.

    Attributes:
        kind: Message kind (announce, subscribe, keyload, signed_packet)
        public: Public payload, if any
        masked: Masked payload, None when absent or not readable
    """

    kind: str
    public: Optional[bytes] = None
    masked: Optional[bytes] = None

    def masked_payload(self) -> Optional[bytes]:
        return self.masked


@dataclass(frozen=True)
class UnwrappedMessage:
    """A message yielded by Subscriber.messages()."""

    link: Any
    body: MessageContent


@runtime_checkable
class Transport(Protocol):
    """Two-operation I/O contract required by a channel engine.

    Both operations are idempotent at the store level, so a caller may
    retry either one verbatim.
    """

    @abstractmethod
    async def send_message(self, msg: Message) -> None:
        """Persist one message at its link.

        Raises:
            SendError: If the store rejects the write
            TimeoutError: If the request times out
        """
        ...

    @abstractmethod
    async def receive_message(self, link: Any) -> Message:
        """Fetch the message stored at a link.

        Raises:
            NotFoundError: If nothing is stored at the link
            ReceiveError: If the store rejects the read
            DecodeError: If the stored value is malformed
            ProtocolMismatchError: If the response lacks the value field
        """
        ...


@runtime_checkable
class Author(Protocol):
    """Channel author role (single writer and authority)."""

    @abstractmethod
    def announcement_link(self) -> Any:
        ...

    @abstractmethod
    async def send_announce(self) -> None:
        ...

    @abstractmethod
    async def sync_state(self) -> int:
        """Pull every existing message reachable from known state.

        Returns:
            Number of messages pulled
        """
        ...

    @abstractmethod
    async def receive_subscribe(self, link: Any) -> None:
        ...

    @abstractmethod
    async def send_keyload_for_everyone(self, link: Any) -> Tuple[Any, Optional[Any]]:
        ...

    @abstractmethod
    async def send_signed_packet(
        self,
        link: Any,
        public_payload: bytes,
        masked_payload: bytes,
    ) -> Tuple[Any, Optional[Any]]:
        ...


@runtime_checkable
class Subscriber(Protocol):
    """Channel subscriber role (reader and co-writer)."""

    @abstractmethod
    async def receive_announcement(self, link: Any) -> None:
        ...

    @abstractmethod
    async def send_subscribe(self, link: Any) -> Any:
        ...

    @abstractmethod
    def messages(self) -> AsyncIterator[UnwrappedMessage]:
        """Lazy, finite, non-restartable sequence of new messages."""
        ...


@runtime_checkable
class ChannelEngine(Protocol):
    """Factory for the roles of one channel engine implementation."""

    @abstractmethod
    def new_author(self, seed: str, channel_type: ChannelType, transport: Transport) -> Author:
        ...

    @abstractmethod
    async def recover_author(
        self,
        seed: str,
        announcement_link: Any,
        channel_type: ChannelType,
        transport: Transport,
    ) -> Author:
        """Rebuild an author from an announcement already in the store."""
        ...

    @abstractmethod
    def new_subscriber(self, seed: str, transport: Transport) -> Subscriber:
        ...
