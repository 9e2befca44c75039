"""
Unit tests for the plaintext reference channel engine.

Tests cover:
- Deterministic links
- Announce, subscribe and keyload handling
- Chaining and single-branch rules
- Masked payload visibility
- Recovery and synchronization
"""

from unittest.mock import AsyncMock

import pytest

from sdk.immustreams.channel import ChannelType
from sdk.immustreams.errors import ChannelError, NotFoundError
from sdk.immustreams.plain import (
    PLAIN_ENGINE,
    Envelope,
    PlainAuthor,
    PlainLink,
    PlainSubscriber,
    identity_of,
    make_link,
)
from tests.helpers import open_transport

MULTI = ChannelType.MULTI_BRANCH


async def collect(subscriber):
    return [message async for message in subscriber.messages()]


class TestLinks:
    """Tests for link derivation."""

    def test_announcement_link_is_deterministic(self):
        """The same seed and channel type give the same announcement link."""
        first = PlainAuthor("A", MULTI, AsyncMock())
        second = PlainAuthor("A", MULTI, AsyncMock())

        assert first.announcement_link() == second.announcement_link()

    def test_announcement_link_depends_on_seed_and_type(self):
        """Different seeds or channel types give different channels."""
        base = PlainAuthor("A", MULTI, AsyncMock()).announcement_link()

        assert PlainAuthor("B", MULTI, AsyncMock()).announcement_link() != base
        assert PlainAuthor("A", ChannelType.SINGLE_BRANCH, AsyncMock()).announcement_link() != base

    def test_link_string_round_trip(self):
        """Links print as appinst:msgid and parse back."""
        link = make_link("chan", "pub", 3)

        assert PlainLink.from_str(str(link)) == link

    def test_malformed_link_string(self):
        with pytest.raises(ValueError):
            PlainLink.from_str("no-separator")


class TestEnvelope:
    """Tests for the wire envelope."""

    def test_bytes_are_canonical(self):
        """Equal envelopes serialize to identical bytes."""
        first = Envelope(kind="keyload", appinst="c", publisher="p", seq=1, prev="m", subscribers=("b", "a"))
        second = Envelope(kind="keyload", appinst="c", publisher="p", seq=1, prev="m", subscribers=("b", "a"))

        assert first.to_bytes() == second.to_bytes()
        assert Envelope.from_bytes(first.to_bytes()) == first

    def test_empty_masked_payload_survives(self):
        """b"" and None stay distinct."""
        empty = Envelope(kind="signed_packet", appinst="c", publisher="p", seq=2, prev="m", masked=b"")

        assert Envelope.from_bytes(empty.to_bytes()).masked == b""

    @pytest.mark.parametrize("data", [b"", b"garbage", b"[]", b'{"v": 99}'])
    def test_garbage_rejected(self, data):
        """Bytes that are not an envelope raise ChannelError."""
        with pytest.raises(ChannelError):
            Envelope.from_bytes(data)


class TestSubscription:
    """Tests for announcement and subscription flow."""

    @pytest.mark.asyncio
    async def test_announce_and_subscribe(self, store):
        """A subscriber reads the announcement and the author accepts it."""
        author = PlainAuthor("A", MULTI, await open_transport(store))
        await author.send_announce()
        subscriber = PlainSubscriber("B", await open_transport(store))

        await subscriber.receive_announcement(author.announcement_link())
        subscription = await subscriber.send_subscribe(author.announcement_link())
        await author.receive_subscribe(subscription)

        assert author.subscribers == {identity_of("B")}
        assert store.get_record_count() == 2

    @pytest.mark.asyncio
    async def test_known_subscriber_rejected(self, store):
        """A second subscription from the same identity is not new."""
        author = PlainAuthor("A", MULTI, await open_transport(store))
        await author.send_announce()
        subscriber = PlainSubscriber("B", await open_transport(store))
        await subscriber.receive_announcement(author.announcement_link())
        subscription = await subscriber.send_subscribe(author.announcement_link())
        await author.receive_subscribe(subscription)

        with pytest.raises(ChannelError, match="not a new subscriber"):
            await author.receive_subscribe(subscription)

    @pytest.mark.asyncio
    async def test_announcement_must_exist(self, store):
        """Reading a missing announcement propagates the transport miss."""
        subscriber = PlainSubscriber("B", await open_transport(store))

        with pytest.raises(NotFoundError):
            await subscriber.receive_announcement(make_link("chan", "pub", 0))

    @pytest.mark.asyncio
    async def test_messages_require_announcement(self, store):
        """Consuming before reading the announcement is an error."""
        subscriber = PlainSubscriber("B", await open_transport(store))

        with pytest.raises(ChannelError):
            await collect(subscriber)


class TestPublishing:
    """Tests for keyloads and signed packets."""

    async def channel(self, store, channel_type=MULTI, subscribe=True):
        author = PlainAuthor("A", channel_type, await open_transport(store))
        await author.send_announce()
        subscriber = PlainSubscriber("B", await open_transport(store))
        await subscriber.receive_announcement(author.announcement_link())
        if subscribe:
            await author.receive_subscribe(await subscriber.send_subscribe(author.announcement_link()))
        return author, subscriber

    @pytest.mark.asyncio
    async def test_messages_in_order(self, store):
        """The subscriber yields the keyload, then packets in publication order."""
        author, subscriber = await self.channel(store)
        keyload, _ = await author.send_keyload_for_everyone(author.announcement_link())
        link = keyload
        for x in range(5):
            link, _ = await author.send_signed_packet(link, b"", bytes([x]))

        messages = await collect(subscriber)

        assert [m.body.kind for m in messages] == ["keyload"] + ["signed_packet"] * 5
        assert messages[0].link == keyload
        assert messages[0].body.masked_payload() is None
        assert [m.body.masked_payload() for m in messages[1:]] == [bytes([x]) for x in range(5)]
        assert messages[-1].link == link

    @pytest.mark.asyncio
    async def test_messages_are_lazy_and_finite(self, store):
        """Each step reads one link; a drained sequence stays drained."""
        author, subscriber = await self.channel(store)
        keyload, _ = await author.send_keyload_for_everyone(author.announcement_link())
        await author.send_signed_packet(keyload, b"", b"x")
        gets_before = store.count_requests("/db/verified/get")

        stream = subscriber.messages()
        first = await stream.__anext__()

        assert first.link == keyload
        assert store.count_requests("/db/verified/get") == gets_before + 1
        assert len([m async for m in stream]) == 1
        assert await collect(subscriber) == []

    @pytest.mark.asyncio
    async def test_new_messages_after_drain(self, store):
        """A fresh sequence picks up messages published later."""
        author, subscriber = await self.channel(store)
        keyload, _ = await author.send_keyload_for_everyone(author.announcement_link())
        await collect(subscriber)

        await author.send_signed_packet(keyload, b"pub", b"later")

        messages = await collect(subscriber)
        assert len(messages) == 1
        assert messages[0].body.public == b"pub"
        assert messages[0].body.masked_payload() == b"later"

    @pytest.mark.asyncio
    async def test_unknown_link_rejected(self, store):
        """Packets must chain to a known link; nothing is stored otherwise."""
        author, _ = await self.channel(store)
        count = store.get_record_count()

        with pytest.raises(ChannelError):
            await author.send_signed_packet(make_link(author.announcement_link().appinst, "x", 9), b"", b"x")

        assert store.get_record_count() == count

    @pytest.mark.asyncio
    async def test_unsubscribed_reader_sees_no_masked_payload(self, store):
        """Readers not named by the keyload get None, not an error."""
        author, subscriber = await self.channel(store, subscribe=False)
        keyload, _ = await author.send_keyload_for_everyone(author.announcement_link())
        await author.send_signed_packet(keyload, b"public", b"secret")

        messages = await collect(subscriber)

        packet = messages[-1]
        assert packet.body.kind == "signed_packet"
        assert packet.body.public == b"public"
        assert packet.body.masked_payload() is None

    @pytest.mark.asyncio
    async def test_single_branch_requires_latest_link(self, store):
        """Single-branch packets may only follow the latest message."""
        author, _ = await self.channel(store, channel_type=ChannelType.SINGLE_BRANCH)
        keyload, _ = await author.send_keyload_for_everyone(author.announcement_link())
        await author.send_signed_packet(keyload, b"", b"1")

        with pytest.raises(ChannelError):
            await author.send_signed_packet(keyload, b"", b"2")

    @pytest.mark.asyncio
    async def test_multi_branch_allows_any_known_link(self, store):
        """Multi-branch packets may fork from any known link."""
        author, subscriber = await self.channel(store)
        keyload, _ = await author.send_keyload_for_everyone(author.announcement_link())
        await author.send_signed_packet(keyload, b"", b"1")
        await author.send_signed_packet(keyload, b"", b"2")

        payloads = [m.body.masked_payload() for m in await collect(subscriber)]
        assert payloads == [None, b"1", b"2"]


class TestRecovery:
    """Tests for recover_author() and sync_state()."""

    @pytest.mark.asyncio
    async def test_recover_and_sync(self, store):
        """A recovered author pulls every stored message and continues."""
        author = PlainAuthor("A", MULTI, await open_transport(store))
        await author.send_announce()
        keyload, _ = await author.send_keyload_for_everyone(author.announcement_link())
        link = keyload
        for x in range(3):
            link, _ = await author.send_signed_packet(link, b"", bytes([x]))

        recovered = await PLAIN_ENGINE.recover_author("A", author.announcement_link(), MULTI, await open_transport(store))

        assert await recovered.sync_state() == 4
        assert await recovered.sync_state() == 0
        next_link, _ = await recovered.send_signed_packet(link, b"", b"more")
        assert next_link not in {keyload, link}
        assert store.get_record_count() == 6

    @pytest.mark.asyncio
    async def test_fresh_author_syncs_nothing(self, store):
        author = PlainAuthor("A", MULTI, await open_transport(store))
        await author.send_announce()

        assert await author.sync_state() == 0

    @pytest.mark.asyncio
    async def test_recover_foreign_announcement(self, store):
        """Authors only recover their own channel."""
        other = PlainAuthor("B", MULTI, await open_transport(store))
        await other.send_announce()

        with pytest.raises(ChannelError):
            await PLAIN_ENGINE.recover_author("A", other.announcement_link(), MULTI, await open_transport(store))

    @pytest.mark.asyncio
    async def test_recover_restores_subscribers(self, store):
        """Subscribers named by stored keyloads are known after sync."""
        author = PlainAuthor("A", MULTI, await open_transport(store))
        await author.send_announce()
        subscriber = PlainSubscriber("B", await open_transport(store))
        await subscriber.receive_announcement(author.announcement_link())
        subscription = await subscriber.send_subscribe(author.announcement_link())
        await author.receive_subscribe(subscription)
        await author.send_keyload_for_everyone(author.announcement_link())

        recovered = await PLAIN_ENGINE.recover_author("A", author.announcement_link(), MULTI, await open_transport(store))
        await recovered.sync_state()

        assert recovered.subscribers == {identity_of("B")}
        with pytest.raises(ChannelError, match="not a new subscriber"):
            await recovered.receive_subscribe(subscription)
