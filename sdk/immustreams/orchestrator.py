"""
Channel lifecycle driver.

Runs one complete channel lifecycle against an Author and a Subscriber,
each with its own store session and transport:

1. Create the author and derive its announcement link
2. Announce a new channel, or recover the author from the store
3. Synchronize the author with every message already stored
4. Create the subscriber, read the announcement, subscribe
5. Accept the subscription and send a keyload for all subscribers
6. Publish a chain of signed packets
7. Consume the subscriber's messages

Example:
    >>> report = await ChannelOrchestrator(Settings()).run()
    >>> print(report.is_new, report.synchronized)

Invariants:
    - Author states advance in order; skipping one raises StateTransitionError
    - Only ConflictError on announce selects recovery after a failed send
    - Packet n is chained to the link of packet n-1
    - Timed out sends are retried verbatim, nothing else is retried
"""

from __future__ import annotations

import asyncio
import functools
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .channel import Author, ChannelEngine, UnwrappedMessage
from .config import Settings
from .errors import ChannelError, ConflictError, StateTransitionError, TimeoutError
from .plain import PLAIN_ENGINE, SIGNED_PACKET
from .session import Credentials, StoreSession
from .transport import ImmuDBTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")

EMPTY_PAYLOAD_PLACEHOLDER = b"empty"


class AuthorState(str, Enum):
    """Author lifecycle across one run."""

    UNINITIALIZED = "uninitialized"
    ANNOUNCED = "announced"
    RECOVERED = "recovered"
    SYNCHRONIZED = "synchronized"
    AUTHORIZED_SUBSCRIBERS = "authorized_subscribers"
    PUBLISHING = "publishing"
    IDLE = "idle"


_TRANSITIONS: dict[AuthorState, frozenset[AuthorState]] = {
    AuthorState.UNINITIALIZED: frozenset({AuthorState.ANNOUNCED, AuthorState.RECOVERED}),
    AuthorState.ANNOUNCED: frozenset({AuthorState.SYNCHRONIZED}),
    AuthorState.RECOVERED: frozenset({AuthorState.SYNCHRONIZED}),
    AuthorState.SYNCHRONIZED: frozenset({AuthorState.AUTHORIZED_SUBSCRIBERS}),
    AuthorState.AUTHORIZED_SUBSCRIBERS: frozenset({AuthorState.PUBLISHING}),
    AuthorState.PUBLISHING: frozenset({AuthorState.PUBLISHING, AuthorState.IDLE}),
    AuthorState.IDLE: frozenset(),
}


@dataclass
class RunReport:
    """Outcome of one lifecycle run.

    Attributes:
        announcement_link: Channel announcement link
        is_new: True if announced in this run, False if recovered
        synchronized: Messages pulled by the author's sync
        subscription_link: Link of the subscriber's subscription
        subscriber_is_new: Whether the author accepted the subscription
        keyload_link: Link of this run's keyload
        last_link: Link of the last packet published in this run
        sent_packets: Signed packets published in this run
        received: Messages consumed by the subscriber, in order
        state: Final author state
    """

    announcement_link: Any = None
    is_new: bool = False
    synchronized: int = 0
    subscription_link: Any = None
    subscriber_is_new: bool = False
    keyload_link: Any = None
    last_link: Any = None
    sent_packets: int = 0
    received: list[UnwrappedMessage] = field(default_factory=list)
    state: AuthorState = AuthorState.UNINITIALIZED

    @property
    def packet_payloads(self) -> list[Optional[bytes]]:
        """Masked payloads of the consumed signed packets."""
        return [m.body.masked_payload() for m in self.received if m.body.kind == SIGNED_PACKET]

    def display_payloads(self) -> list[bytes]:
        """Masked payload of every consumed message, placeholder when absent."""
        return [_shown(m.body.masked_payload()) for m in self.received]


SessionFactory = Callable[[Settings], StoreSession]


def default_session_factory(settings: Settings) -> StoreSession:
    """Session against the configured immudb server."""
    return StoreSession(
        settings.store_address,
        settings.database,
        Credentials(settings.username, settings.password),
        secure=settings.secure,
        timeout=settings.request_timeout,
        relogin_on_expiry=settings.relogin_on_expiry,
    )


class ChannelOrchestrator:
    """Drives a channel lifecycle through the immudb transport.

    Each role gets an independent session created by session_factory.
    Sessions are closed when run() returns or fails.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        engine: ChannelEngine = PLAIN_ENGINE,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self._engine = engine
        self._session_factory = session_factory or default_session_factory
        self.state = AuthorState.UNINITIALIZED

    def _advance(self, target: AuthorState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise StateTransitionError(self.state.value, target.value)
        if target is not self.state:
            logger.debug(f"Author state {self.state.value} -> {target.value}")
        self.state = target

    async def _open_transport(self, stack: AsyncExitStack) -> ImmuDBTransport:
        session = self._session_factory(self.settings)
        stack.push_async_callback(session.close)
        await session.login()
        return ImmuDBTransport(session)

    async def _retrying(self, description: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation, repeating it verbatim when it times out."""
        attempt = 0
        while True:
            try:
                return await operation()
            except TimeoutError:
                if attempt >= self.settings.send_retries:
                    raise
                attempt += 1
                logger.warning(
                    f"{description} timed out, retrying ({attempt}/{self.settings.send_retries})"
                )
                await asyncio.sleep(self.settings.retry_delay_ms / 1000)

    async def _announce_or_recover(self, transport: ImmuDBTransport) -> tuple[Author, Any, bool]:
        """Announce a new channel or recover the author of an existing one.

        Returns:
            Tuple of (author, announcement link, is_new)
        """
        s = self.settings
        author = self._engine.new_author(s.author_seed, s.channel_type, transport)
        logger.info(f"Created author {author}")
        link = author.announcement_link()

        if await transport.exists(link):
            logger.info(f"Announcement {link} already stored, recovering author")
        else:
            try:
                await self._retrying("Announcement", author.send_announce)
            except ConflictError:
                logger.info(f"Announcement {link} was written concurrently, recovering author")
            else:
                self._advance(AuthorState.ANNOUNCED)
                return author, link, True

        author = await self._engine.recover_author(s.author_seed, link, s.channel_type, transport)
        self._advance(AuthorState.RECOVERED)
        return author, link, False

    async def run(self) -> RunReport:
        """Run the full lifecycle.

        Raises:
            AuthError: If either session cannot log in
            StreamsError: For any transport or engine failure except the
                handled announce conflict and subscription rejection
        """
        s = self.settings
        self.state = AuthorState.UNINITIALIZED
        report = RunReport()

        async with AsyncExitStack() as stack:
            author_transport = await self._open_transport(stack)
            author, announcement_link, is_new = await self._announce_or_recover(author_transport)
            report.announcement_link = announcement_link
            report.is_new = is_new
            logger.info(f"Announcement link: {announcement_link}")
            logger.info(f"Freshly created: {is_new}")

            report.synchronized = await author.sync_state()
            self._advance(AuthorState.SYNCHRONIZED)
            logger.info(f"Synchronized {report.synchronized} messages")

            subscriber_transport = await self._open_transport(stack)
            subscriber = self._engine.new_subscriber(s.subscriber_seed, subscriber_transport)
            logger.info(f"Created subscriber {subscriber}")
            await subscriber.receive_announcement(announcement_link)
            logger.info("Subscriber received announcement")

            report.subscription_link = await self._retrying(
                "Subscription",
                functools.partial(subscriber.send_subscribe, announcement_link),
            )
            logger.info(f"Subscriber sent subscription {report.subscription_link}")
            try:
                await author.receive_subscribe(report.subscription_link)
                report.subscriber_is_new = True
            except ChannelError as e:
                logger.info(f"Author did not accept subscription: {e.message}")
            logger.info(f"Subscriber is new: {report.subscriber_is_new}")

            report.keyload_link, _ = await self._retrying(
                "Keyload",
                functools.partial(author.send_keyload_for_everyone, announcement_link),
            )
            self._advance(AuthorState.AUTHORIZED_SUBSCRIBERS)
            logger.info(f"Author sent keyload {report.keyload_link}")

            last_link = await self._publish(author, report.keyload_link, s.first_payload.encode("utf-8"))
            report.sent_packets = 1
            logger.info(f"Author sent signed packet {last_link}")
            for x in range(s.message_count):
                last_link = await self._publish(author, last_link, bytes([x]))
                report.sent_packets += 1
            report.last_link = last_link
            self._advance(AuthorState.IDLE)
            logger.info(f"Author sent {s.message_count} other messages")

            async for message in subscriber.messages():
                report.received.append(message)
                logger.info(f"Subscriber received masked payload {_shown(message.body.masked_payload())!r}")
            logger.info(f"Subscriber consumed {len(report.received)} messages")

        report.state = self.state
        return report

    async def _publish(self, author: Author, link: Any, payload: bytes) -> Any:
        self._advance(AuthorState.PUBLISHING)
        msg_link, _ = await self._retrying(
            "Signed packet",
            functools.partial(author.send_signed_packet, link, b"", payload),
        )
        return msg_link


def _shown(payload: Optional[bytes]) -> bytes:
    return payload if payload is not None else EMPTY_PAYLOAD_PLACEHOLDER
