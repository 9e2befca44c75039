"""
Plaintext reference channel engine.

This module implements the Author/Subscriber contract without any
cryptography, for:
- Tests of the transport and orchestrator
- Local runs of the demo

Channel model:
    - Identity: blake2b digest of the seed
    - Channel id (appinst): digest of author identity and channel type
    - Link: (appinst, msgid), msgid derived from publisher and sequence
      number, so the next link of every publisher is predictable
    - Body: canonical JSON envelope, identical bytes on every re-send

Invariants:
    - Every message except the announcement chains to a known link
    - Sequence numbers only advance after a successful send
    - Masked payloads are visible only to identities named by the
      keyload the packet descends from (the author always sees them)

This engine provides no confidentiality and no authenticity. Use a real
channel engine for anything beyond local testing.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Set, Tuple

from .channel import ChannelType, Message, MessageContent, Transport, UnwrappedMessage
from .errors import ChannelError, NotFoundError

logger = logging.getLogger(__name__)

ANNOUNCE = "announce"
SUBSCRIBE = "subscribe"
KEYLOAD = "keyload"
SIGNED_PACKET = "signed_packet"

ENVELOPE_VERSION = 1


def _digest(text: str, size: int) -> str:
    return hashlib.blake2b(text.encode("utf-8"), digest_size=size).hexdigest()


def identity_of(seed: str) -> str:
    """Public identity derived from a seed."""
    return _digest(seed, 16)


@dataclass(frozen=True)
class PlainLink:
    """Address of one message: channel id plus message id."""

    appinst: str
    msgid: str

    def to_msg_index(self) -> bytes:
        return hashlib.blake2b(
            f"{self.appinst}{self.msgid}".encode("utf-8"),
            digest_size=32,
        ).digest()

    def __str__(self) -> str:
        return f"{self.appinst}:{self.msgid}"

    @classmethod
    def from_str(cls, text: str) -> PlainLink:
        appinst, sep, msgid = text.partition(":")
        if not sep or not appinst or not msgid:
            raise ValueError(f"Malformed link: {text!r}")
        return cls(appinst=appinst, msgid=msgid)


def make_link(appinst: str, publisher: str, seq: int) -> PlainLink:
    """Link of a publisher's seq-th message in a channel."""
    return PlainLink(appinst=appinst, msgid=_digest(f"{appinst}|{publisher}|{seq}", 12))


@dataclass(frozen=True)
class Envelope:
    """Wire form of a plaintext channel message."""

    kind: str
    appinst: str
    publisher: str
    seq: int
    prev: Optional[str] = None
    channel_type: Optional[str] = None
    subscribers: Tuple[str, ...] = ()
    public: bytes = b""
    masked: Optional[bytes] = None

    def to_bytes(self) -> bytes:
        data = {
            "v": ENVELOPE_VERSION,
            "kind": self.kind,
            "appinst": self.appinst,
            "publisher": self.publisher,
            "seq": self.seq,
            "prev": self.prev,
            "channel_type": self.channel_type,
            "subscribers": list(self.subscribers),
            "public": base64.b64encode(self.public).decode("ascii"),
            "masked": None if self.masked is None else base64.b64encode(self.masked).decode("ascii"),
        }
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> Envelope:
        """Parse an envelope.

        Raises:
            ChannelError: If the bytes are not a plaintext envelope
        """
        try:
            raw = json.loads(data.decode("utf-8"))
            if raw.get("v") != ENVELOPE_VERSION:
                raise ValueError(f"unsupported envelope version {raw.get('v')!r}")
            masked = raw.get("masked")
            return cls(
                kind=raw["kind"],
                appinst=raw["appinst"],
                publisher=raw["publisher"],
                seq=int(raw["seq"]),
                prev=raw.get("prev"),
                channel_type=raw.get("channel_type"),
                subscribers=tuple(raw.get("subscribers") or ()),
                public=base64.b64decode(raw.get("public") or "", validate=True),
                masked=None if masked is None else base64.b64decode(masked, validate=True),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ChannelError(f"Not a channel message: {e}") from e


@dataclass
class _KnownLink:
    kind: str
    publisher: str
    readable: bool


@dataclass
class _RoleState:
    appinst: Optional[str] = None
    author_id: Optional[str] = None
    channel_type: Optional[ChannelType] = None
    announcement: Optional[PlainLink] = None
    latest: Optional[str] = None
    next_seq: Dict[str, int] = field(default_factory=dict)
    known: Dict[str, _KnownLink] = field(default_factory=dict)


class _Role:
    """State and message handling shared by both roles."""

    role_name = "role"

    def __init__(self, seed: str, transport: Transport) -> None:
        self.identity = identity_of(seed)
        self._transport = transport
        self._state = _RoleState()

    def __str__(self) -> str:
        channel = self._state.appinst or "no channel"
        return f"<{self.role_name} {self.identity} @ {channel}>"

    @property
    def transport(self) -> Transport:
        return self._transport

    def _link(self, publisher: str, seq: int) -> PlainLink:
        assert self._state.appinst is not None
        return make_link(self._state.appinst, publisher, seq)

    def _require_known(self, link: Any) -> PlainLink:
        if not isinstance(link, PlainLink) or link.appinst != self._state.appinst:
            raise ChannelError(f"Link {link} is not part of this channel", link=str(link))
        if link.msgid not in self._state.known:
            raise ChannelError(f"Link {link} has not been seen", link=str(link))
        return link

    async def _fetch(self, link: PlainLink) -> Envelope:
        msg = await self._transport.receive_message(link)
        envelope = Envelope.from_bytes(msg.body)
        if make_link(envelope.appinst, envelope.publisher, envelope.seq) != link:
            raise ChannelError(f"Message stored at {link} belongs elsewhere", link=str(link))
        return envelope

    async def _publish(self, envelope: Envelope) -> PlainLink:
        link = make_link(envelope.appinst, envelope.publisher, envelope.seq)
        prev = PlainLink(envelope.appinst, envelope.prev) if envelope.prev else None
        await self._transport.send_message(Message(link=link, body=envelope.to_bytes(), prev_link=prev))
        return link

    def _absorb(self, link: PlainLink, envelope: Envelope) -> UnwrappedMessage:
        """Fold one fetched or sent message into local state."""
        state = self._state
        if envelope.kind == ANNOUNCE:
            readable = True
        else:
            if envelope.prev is None or envelope.prev not in state.known:
                raise ChannelError(f"Message {link} chains to an unknown link", link=str(link))
            parent = state.known[envelope.prev]

            if envelope.kind == KEYLOAD:
                readable = self.identity == state.author_id or self.identity in envelope.subscribers
                for subscriber in envelope.subscribers:
                    self._on_subscriber(subscriber)
            elif envelope.kind == SIGNED_PACKET:
                if state.channel_type is ChannelType.SINGLE_BRANCH and envelope.prev != state.latest:
                    raise ChannelError(
                        f"Single-branch message {link} does not follow the latest message",
                        link=str(link),
                    )
                readable = parent.readable
            elif envelope.kind == SUBSCRIBE:
                readable = False
            else:
                raise ChannelError(f"Unknown message kind {envelope.kind!r}", link=str(link))

        state.known[link.msgid] = _KnownLink(envelope.kind, envelope.publisher, readable)
        state.next_seq[envelope.publisher] = max(
            state.next_seq.get(envelope.publisher, 0),
            envelope.seq + 1,
        )
        if envelope.publisher == state.author_id:
            state.latest = link.msgid

        masked = envelope.masked if readable else None
        public = envelope.public if envelope.kind == SIGNED_PACKET else None
        return UnwrappedMessage(link=link, body=MessageContent(envelope.kind, public, masked))

    def _on_subscriber(self, subscriber: str) -> None:
        # seq 0 of every subscriber is its subscription
        self._state.next_seq.setdefault(subscriber, 1)

    async def _scan(self) -> AsyncIterator[UnwrappedMessage]:
        """Pull messages forward per publisher until every one misses."""
        progressed = True
        while progressed:
            progressed = False
            for publisher in list(self._state.next_seq):
                while True:
                    link = self._link(publisher, self._state.next_seq[publisher])
                    try:
                        envelope = await self._fetch(link)
                    except NotFoundError:
                        break
                    progressed = True
                    yield self._absorb(link, envelope)


class PlainAuthor(_Role):
    """Channel author: announces, accepts subscribers, publishes."""

    role_name = "author"

    def __init__(self, seed: str, channel_type: ChannelType, transport: Transport) -> None:
        super().__init__(seed, transport)
        channel_type = ChannelType(channel_type)
        self._state.author_id = self.identity
        self._state.channel_type = channel_type
        self._state.appinst = _digest(f"{self.identity}|{channel_type.value}", 20)
        self._state.announcement = make_link(self._state.appinst, self.identity, 0)
        self._subscribers: Set[str] = set()

    @property
    def subscribers(self) -> Set[str]:
        return set(self._subscribers)

    def announcement_link(self) -> PlainLink:
        assert self._state.announcement is not None
        return self._state.announcement

    async def send_announce(self) -> None:
        envelope = Envelope(
            kind=ANNOUNCE,
            appinst=self.announcement_link().appinst,
            publisher=self.identity,
            seq=0,
            channel_type=self._state.channel_type.value,
        )
        link = await self._publish(envelope)
        self._absorb(link, envelope)
        logger.debug(f"Announced channel {link}")

    async def _recover(self, announcement_link: Any) -> None:
        if announcement_link != self.announcement_link():
            raise ChannelError(
                f"Announcement {announcement_link} was not made by this author",
                link=str(announcement_link),
            )
        envelope = await self._fetch(self.announcement_link())
        if envelope.kind != ANNOUNCE or envelope.channel_type != self._state.channel_type.value:
            raise ChannelError(
                f"Record at {announcement_link} is not a {self._state.channel_type.value} announcement",
                link=str(announcement_link),
            )
        self._absorb(self.announcement_link(), envelope)

    async def sync_state(self) -> int:
        count = 0
        async for _ in self._scan():
            count += 1
        return count

    def _on_subscriber(self, subscriber: str) -> None:
        super()._on_subscriber(subscriber)
        self._subscribers.add(subscriber)

    async def receive_subscribe(self, link: Any) -> None:
        if not isinstance(link, PlainLink) or link.appinst != self._state.appinst:
            raise ChannelError(f"Subscription {link} is not part of this channel", link=str(link))
        envelope = await self._fetch(link)
        if envelope.kind != SUBSCRIBE or envelope.prev != self.announcement_link().msgid:
            raise ChannelError(f"Record at {link} is not a subscription", link=str(link))
        if envelope.publisher in self._subscribers:
            raise ChannelError(f"Subscriber {envelope.publisher} is not a new subscriber", link=str(link))
        self._absorb(link, envelope)
        self._on_subscriber(envelope.publisher)

    async def send_keyload_for_everyone(self, link: Any) -> Tuple[PlainLink, Optional[PlainLink]]:
        prev = self._require_known(link)
        envelope = Envelope(
            kind=KEYLOAD,
            appinst=prev.appinst,
            publisher=self.identity,
            seq=self._state.next_seq[self.identity],
            prev=prev.msgid,
            subscribers=tuple(sorted(self._subscribers)),
        )
        new_link = await self._publish(envelope)
        self._absorb(new_link, envelope)
        return new_link, None

    async def send_signed_packet(
        self,
        link: Any,
        public_payload: bytes,
        masked_payload: bytes,
    ) -> Tuple[PlainLink, Optional[PlainLink]]:
        prev = self._require_known(link)
        if self._state.channel_type is ChannelType.SINGLE_BRANCH and prev.msgid != self._state.latest:
            raise ChannelError(
                f"Single-branch packet must follow the latest message, not {link}",
                link=str(link),
            )
        envelope = Envelope(
            kind=SIGNED_PACKET,
            appinst=prev.appinst,
            publisher=self.identity,
            seq=self._state.next_seq[self.identity],
            prev=prev.msgid,
            public=bytes(public_payload),
            masked=bytes(masked_payload),
        )
        new_link = await self._publish(envelope)
        self._absorb(new_link, envelope)
        return new_link, None


class PlainSubscriber(_Role):
    """Channel subscriber: reads the announcement, subscribes, consumes."""

    role_name = "subscriber"

    async def receive_announcement(self, link: Any) -> None:
        if not isinstance(link, PlainLink):
            raise ChannelError(f"Not a channel link: {link!r}", link=str(link))
        envelope = await self._fetch(link)
        if envelope.kind != ANNOUNCE or envelope.seq != 0:
            raise ChannelError(f"Record at {link} is not an announcement", link=str(link))
        try:
            channel_type = ChannelType(envelope.channel_type)
        except ValueError as e:
            raise ChannelError(f"Announcement {link} has no valid channel type", link=str(link)) from e

        state = self._state
        state.appinst = link.appinst
        state.author_id = envelope.publisher
        state.channel_type = channel_type
        state.announcement = link
        self._absorb(link, envelope)

    async def send_subscribe(self, link: Any) -> PlainLink:
        announcement = self._require_known(link)
        if announcement != self._state.announcement:
            raise ChannelError(f"Subscriptions must reference the announcement, not {link}", link=str(link))
        envelope = Envelope(
            kind=SUBSCRIBE,
            appinst=announcement.appinst,
            publisher=self.identity,
            seq=0,
            prev=announcement.msgid,
        )
        new_link = await self._publish(envelope)
        self._absorb(new_link, envelope)
        return new_link

    async def messages(self) -> AsyncIterator[UnwrappedMessage]:
        """Yield every not yet seen message, one store read per step."""
        if self._state.announcement is None:
            raise ChannelError("Announcement has not been received")
        async for message in self._scan():
            yield message


class PlainEngine:
    """ChannelEngine factory for the plaintext roles."""

    def new_author(self, seed: str, channel_type: ChannelType, transport: Transport) -> PlainAuthor:
        return PlainAuthor(seed, channel_type, transport)

    async def recover_author(
        self,
        seed: str,
        announcement_link: Any,
        channel_type: ChannelType,
        transport: Transport,
    ) -> PlainAuthor:
        author = PlainAuthor(seed, channel_type, transport)
        await author._recover(announcement_link)
        return author

    def new_subscriber(self, seed: str, transport: Transport) -> PlainSubscriber:
        return PlainSubscriber(seed, transport)


PLAIN_ENGINE = PlainEngine()
