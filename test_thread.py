"""
Tests for the thread synchronizer.

Tests cover:
- Opening message synthesis and the dedup window
- Timestamp ordering of the merged list
- Sending messages (validation, failure, acknowledgement, racing polls)
- Load side effects and fetch failures
- Background polling while the thread is open
"""

import asyncio

import pytest

from inquiry_sync.gateway import GatewayError
from inquiry_sync.schemas import Message, NotificationKind
from inquiry_sync.thread import (
    APPLICANT_PLACEHOLDER_ID,
    OPENING_MESSAGE_ID,
    EmptyMessageError,
    ThreadSynchronizer,
    build_opening_message,
    merge_thread,
    should_suppress_synthetic,
)
from inquiry_sync.utils import parse_timestamp


def make_message(content: str, created_at: str, message_id: str = "m1") -> Message:
    return Message(
        id=message_id,
        inquiry_id="inq-1",
        sender_id="applicant-1",
        content=content,
        created_at=created_at,
        is_read=True,
    )


@pytest.fixture
def inquiry(store):
    return store.add_inquiry(message="Hello", date="2024-01-01T10:00:00Z")


@pytest.fixture
def acknowledged():
    return []


@pytest.fixture
def thread(store, inquiry, acknowledged, notifier):
    return ThreadSynchronizer(
        inquiry,
        store,
        account_id="shelter-1",
        on_acknowledge=acknowledged.append,
        poll_interval=0.01,
        dedup_window_ms=5000,
        notifier=notifier,
    )


class TestOpeningMessageDedup:
    """Test synthesis and suppression of the opening message."""

    def test_build_opening_message(self, inquiry):
        """The synthetic message mirrors the inquiry text and date."""
        message = build_opening_message(inquiry, "applicant-1")

        assert message.id == OPENING_MESSAGE_ID
        assert message.content == "Hello"
        assert message.created_at == "2024-01-01T10:00:00Z"
        assert message.sender_id == "applicant-1"

    def test_no_opening_message_without_text(self, store):
        """An inquiry with an empty message yields no synthetic message."""
        inquiry = store.add_inquiry(message="")
        assert build_opening_message(inquiry, "applicant-1") is None

    def test_suppressed_within_window(self):
        """A copy 3 seconds later suppresses the synthetic message."""
        synthetic = make_message("Hello", "2024-01-01T10:00:00Z", OPENING_MESSAGE_ID)
        persisted = [make_message("Hello", "2024-01-01T10:00:03Z")]

        assert should_suppress_synthetic(synthetic, persisted, 5000) is True

    def test_window_is_inclusive_in_both_directions(self):
        """Copies exactly 5000 ms before or after still count as duplicates."""
        synthetic = make_message("Hello", "2024-01-01T10:00:05Z", OPENING_MESSAGE_ID)

        assert should_suppress_synthetic(synthetic, [make_message("Hello", "2024-01-01T10:00:00Z")], 5000)
        assert should_suppress_synthetic(synthetic, [make_message("Hello", "2024-01-01T10:00:10Z")], 5000)

    def test_not_suppressed_outside_window(self):
        """A copy 5001 ms away is a separate message."""
        synthetic = make_message("Hello", "2024-01-01T10:00:00.000Z", OPENING_MESSAGE_ID)
        persisted = [make_message("Hello", "2024-01-01T10:00:05.001Z")]

        assert should_suppress_synthetic(synthetic, persisted, 5000) is False

    def test_not_suppressed_for_different_content(self):
        """Same timestamp but different text does not suppress."""
        synthetic = make_message("Hello", "2024-01-01T10:00:00Z", OPENING_MESSAGE_ID)
        persisted = [make_message("Hello!", "2024-01-01T10:00:00Z")]

        assert should_suppress_synthetic(synthetic, persisted, 5000) is False

    def test_five_digit_fraction_within_window(self):
        """A store copy with a 5-digit fraction still suppresses the synthetic message."""
        synthetic = make_message("Hello", "2024-01-01T10:00:00Z", OPENING_MESSAGE_ID)
        persisted = [make_message("Hello", "2024-01-01T10:00:03.12345+00:00")]

        assert should_suppress_synthetic(synthetic, persisted, 5000) is True

    def test_offsets_are_compared_as_instants(self):
        """A +02:00 timestamp naming the same instant is within the window."""
        synthetic = make_message("Hello", "2024-01-01T10:00:00Z", OPENING_MESSAGE_ID)
        persisted = [make_message("Hello", "2024-01-01T12:00:02+02:00")]

        assert should_suppress_synthetic(synthetic, persisted, 5000) is True

    def test_merge_keeps_single_copy_outside_window(self):
        """Outside the window the synthetic message appears exactly once."""
        synthetic = make_message("Hello", "2024-01-01T10:00:00Z", OPENING_MESSAGE_ID)
        persisted = [make_message("Hello", "2024-01-01T11:00:00Z")]

        merged = merge_thread(synthetic, persisted, 5000)

        assert [m.id for m in merged] == [OPENING_MESSAGE_ID, "m1"]

    @pytest.mark.asyncio
    async def test_load_without_persisted_messages(self, thread):
        """Only the opening message is shown for a fresh inquiry."""
        messages = await thread.load()

        assert len(messages) == 1
        assert messages[0].id == "initial-msg"
        assert messages[0].content == "Hello"
        assert messages[0].created_at == "2024-01-01T10:00:00Z"

    @pytest.mark.asyncio
    async def test_load_with_persisted_copy(self, store, inquiry, thread):
        """The persisted copy replaces the opening message."""
        persisted = store.add_message(inquiry.id, "Hello", "2024-01-01T10:00:03Z")

        messages = await thread.load()

        assert [m.id for m in messages] == [persisted.id]

    @pytest.mark.asyncio
    async def test_opening_sender_falls_back_to_hint_then_placeholder(self, store):
        """Anonymous inquiries use the applicant hint, else a placeholder."""
        inquiry = store.add_inquiry(applicant_id=None)

        hinted = ThreadSynchronizer(inquiry, store, "shelter-1", applicant_hint="guest-7")
        anonymous = ThreadSynchronizer(inquiry, store, "shelter-1")

        assert (await hinted.load())[0].sender_id == "guest-7"
        assert (await anonymous.load())[0].sender_id == APPLICANT_PLACEHOLDER_ID


class TestOrdering:
    """Test that the exposed list is always timestamp ascending."""

    @pytest.mark.asyncio
    async def test_out_of_order_fetch_is_sorted(self, store, inquiry, thread):
        """Persisted messages returned out of order are sorted."""
        store.add_message(inquiry.id, "third", "2024-01-01T12:00:00Z")
        store.add_message(inquiry.id, "second", "2024-01-01T11:00:00Z")

        messages = await thread.load()

        assert [m.content for m in messages] == ["Hello", "second", "third"]

    @pytest.mark.asyncio
    async def test_synthetic_message_later_than_persisted(self, store):
        """A synthetic message newer than a persisted one is moved after it."""
        inquiry = store.add_inquiry(message="Late hello", date="2024-01-02T10:00:00Z")
        store.add_message(inquiry.id, "earlier", "2024-01-01T09:00:00Z")
        thread = ThreadSynchronizer(inquiry, store, "shelter-1")

        messages = await thread.load()

        assert [m.content for m in messages] == ["earlier", "Late hello"]
        for a, b in zip(messages, messages[1:]):
            assert parse_timestamp(a.created_at) <= parse_timestamp(b.created_at)


class TestSend:
    """Test sending outbound messages."""

    @pytest.mark.asyncio
    async def test_send_appends_message(self, store, thread, acknowledged):
        """A sent message is appended and the inquiry acknowledged."""
        await thread.load()

        sent = await thread.send("When can I visit?")

        assert thread.messages[-1].id == sent.id
        assert sent.sender_id == "shelter-1"
        assert acknowledged == [thread.inquiry_id]

    @pytest.mark.asyncio
    async def test_send_survives_stale_poll(self, store, thread):
        """A fetch that started before the send completes does not drop the sent message."""
        await thread.load()
        store.messages_gate = asyncio.Event()
        stale = asyncio.create_task(thread.load())
        await asyncio.sleep(0)

        sent = await thread.send("On my way")
        store.messages_gate.set()
        await stale

        assert [m.id for m in thread.messages].count(sent.id) == 1

        store.messages_gate = None
        await thread.load()

        assert [m.id for m in thread.messages].count(sent.id) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    async def test_send_rejects_blank_text(self, store, thread, text):
        """Blank text never reaches the gateway."""
        with pytest.raises(EmptyMessageError):
            await thread.send(text)

        assert store.count("send_message") == 0

    @pytest.mark.asyncio
    async def test_send_failure_leaves_list_unchanged(self, store, thread, acknowledged, notifier):
        """No optimistic insert when the gateway rejects the message; the user is told."""
        before = await thread.load()
        store.fail.add("send_message")

        with pytest.raises(GatewayError):
            await thread.send("Hi")

        assert thread.messages == before
        assert acknowledged == []
        assert notifier.recent[-1].kind is NotificationKind.ERROR


class TestLoadSideEffects:
    """Test acknowledgement triggers and fetch failures during load."""

    @pytest.mark.asyncio
    async def test_unread_incoming_message_acknowledges(self, store, inquiry, thread, acknowledged):
        """An unread message from the other party acknowledges the inquiry."""
        store.add_message(inquiry.id, "Any news?", "2024-01-01T11:00:00Z", is_read=False)

        await thread.load()

        assert acknowledged == [inquiry.id]

    @pytest.mark.asyncio
    async def test_own_or_read_messages_do_not_acknowledge(self, store, inquiry, thread, acknowledged):
        """Own unread messages and already-read messages are ignored."""
        store.add_message(inquiry.id, "mine", "2024-01-01T11:00:00Z", sender_id="shelter-1", is_read=False)
        store.add_message(inquiry.id, "theirs", "2024-01-01T11:05:00Z", is_read=True)

        await thread.load()

        assert acknowledged == []

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_previous_list(self, store, inquiry, thread):
        """A failed fetch is swallowed and the last good list is kept."""
        store.add_message(inquiry.id, "reply", "2024-01-01T11:00:00Z")
        first = await thread.load()
        store.fail.add("fetch_messages")

        second = await thread.load()

        assert second == first
        assert thread.messages == first


class TestPolling:
    """Test background refresh while the thread is open."""

    @pytest.mark.asyncio
    async def test_open_polls_until_closed(self, store, thread):
        """The thread re-fetches on its interval and stops when closed."""
        await thread.open()
        await asyncio.sleep(0.06)

        assert thread.is_open
        assert store.count("fetch_messages") >= 2

        await thread.close()
        calls = store.count("fetch_messages")
        await asyncio.sleep(0.03)

        assert not thread.is_open
        assert store.count("fetch_messages") == calls

    @pytest.mark.asyncio
    async def test_poll_picks_up_new_messages(self, store, inquiry, thread):
        """Messages persisted by the other party show up on the next poll."""
        await thread.open()
        store.add_message(inquiry.id, "new reply", "2024-01-01T11:00:00Z")
        await asyncio.sleep(0.05)
        await thread.close()

        assert [m.content for m in thread.messages] == ["Hello", "new reply"]
