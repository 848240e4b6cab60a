"""
Thread synchronizer: the message list of one open inquiry.

The opening message an applicant typed into the inquiry form is not stored
as a message; it is rebuilt from the inquiry on every fetch and shown first
unless a persisted message already carries the same text within the dedup
window.
"""

import logging
from typing import Callable, Iterable, Optional

from inquiry_sync.config import settings
from inquiry_sync.gateway import GatewayError, MessageStoreGateway
from inquiry_sync.metrics import record_poll, record_synthetic_suppressed
from inquiry_sync.notifications import NotificationCenter
from inquiry_sync.poller import Poller
from inquiry_sync.schemas import Inquiry, Message
from inquiry_sync.utils import parse_timestamp, timestamp_ms

logger = logging.getLogger(__name__)

OPENING_MESSAGE_ID = "initial-msg"
APPLICANT_PLACEHOLDER_ID = "applicant"
DEFAULT_DEDUP_WINDOW_MS = 5000


class EmptyMessageError(ValueError):
    pass


# =============================================================================
# Pure helpers
# =============================================================================

def build_opening_message(inquiry: Inquiry, sender_id: str) -> Optional[Message]:
    """Synthesize the non-persisted opening message, or None if the inquiry has no text."""
    if not inquiry.message:
        return None
    return Message(
        id=OPENING_MESSAGE_ID,
        inquiry_id=inquiry.id,
        sender_id=sender_id,
        content=inquiry.message,
        created_at=inquiry.date,
        is_read=True,
    )


def should_suppress_synthetic(
    synthetic: Message,
    persisted: Iterable[Message],
    window_ms: float = DEFAULT_DEDUP_WINDOW_MS,
) -> bool:
    """
    True if a persisted message duplicates the synthetic opening message.

    A duplicate has identical content and a timestamp within `window_ms`
    (inclusive, either direction) of the synthetic message's timestamp.
    """
    opened_at = timestamp_ms(synthetic.created_at)
    for message in persisted:
        if message.content != synthetic.content:
            continue
        if abs(timestamp_ms(message.created_at) - opened_at) <= window_ms:
            return True
    return False


def sort_messages(messages: Iterable[Message]) -> list[Message]:
    # stable: on equal timestamps the synthetic message keeps its leading position
    return sorted(messages, key=lambda m: parse_timestamp(m.created_at))


def merge_thread(
    synthetic: Optional[Message],
    persisted: list[Message],
    window_ms: float = DEFAULT_DEDUP_WINDOW_MS,
) -> list[Message]:
    """Prepend the synthetic message unless suppressed, then sort ascending by timestamp."""
    merged = list(persisted)
    if synthetic is not None and not should_suppress_synthetic(synthetic, persisted, window_ms):
        merged.insert(0, synthetic)
    return sort_messages(merged)


# =============================================================================
# Synchronizer
# =============================================================================

class ThreadSynchronizer:
    """
    Owns one inquiry's message list while the conversation is open.

    `open()` loads once and then re-polls every `poll_interval` seconds;
    `close()` stops polling. Unread incoming messages and every successful
    send call `on_acknowledge(inquiry_id)`.
    """

    def __init__(
        self,
        inquiry: Inquiry,
        gateway: MessageStoreGateway,
        account_id: str,
        on_acknowledge: Optional[Callable[[str], None]] = None,
        applicant_hint: Optional[str] = None,
        poll_interval: Optional[float] = None,
        dedup_window_ms: Optional[float] = None,
        notifier: Optional[NotificationCenter] = None,
    ):
        self.inquiry = inquiry
        self.account_id = account_id
        self.dedup_window_ms = (
            dedup_window_ms if dedup_window_ms is not None
            else settings.OPENING_MESSAGE_DEDUP_WINDOW_MS
        )
        self.loaded = False
        self._gateway = gateway
        self._on_acknowledge = on_acknowledge
        self._notifier = notifier
        self._applicant_hint = applicant_hint
        self._messages: list[Message] = []
        # sent messages a fetch may not include yet: id -> (load sequence at send time, message)
        self._unconfirmed: dict[str, tuple[int, Message]] = {}
        self._load_seq = 0
        self._poller = Poller(
            f"thread:{inquiry.id}",
            self.load,
            poll_interval or settings.THREAD_POLL_INTERVAL_SECONDS,
        )

    @property
    def inquiry_id(self) -> str:
        return self.inquiry.id

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def is_open(self) -> bool:
        return self._poller.running

    @property
    def opening_sender_id(self) -> str:
        return self.inquiry.applicant_id or self._applicant_hint or APPLICANT_PLACEHOLDER_ID

    def update_inquiry(self, inquiry: Inquiry) -> None:
        """Swap in a fresher snapshot of the same inquiry."""
        if inquiry.id == self.inquiry.id:
            self.inquiry = inquiry

    async def open(self) -> list[Message]:
        messages = await self.load()
        self._poller.start(run_immediately=False)
        return messages

    async def close(self) -> None:
        await self._poller.stop()

    async def load(self) -> list[Message]:
        """
        Fetch persisted messages and rebuild the merged list.

        A failed fetch is logged and the previous list is kept. Messages sent
        after this fetch started stay in the list even if the fetch missed them.
        """
        self._load_seq += 1
        seq = self._load_seq
        try:
            persisted = await self._gateway.fetch_messages(self.inquiry.id)
        except GatewayError as e:
            logger.warning(f"Failed to load messages for inquiry {self.inquiry.id}: {e}")
            record_poll("thread", "error")
            return self.messages

        persisted_ids = {m.id for m in persisted}
        self._unconfirmed = {
            message_id: (sent_seq, message)
            for message_id, (sent_seq, message) in self._unconfirmed.items()
            if message_id not in persisted_ids and sent_seq >= seq
        }
        pending = [message for _, message in self._unconfirmed.values()]

        synthetic = build_opening_message(self.inquiry, self.opening_sender_id)
        merged = merge_thread(synthetic, persisted + pending, self.dedup_window_ms)
        if synthetic is not None and len(merged) == len(persisted) + len(pending):
            record_synthetic_suppressed()

        self._messages = merged
        self.loaded = True
        record_poll("thread", "ok")
        logger.debug(f"Thread {self.inquiry.id}: {len(persisted)} persisted, {len(merged)} shown")

        if any(not m.is_read and m.sender_id != self.account_id for m in persisted):
            self._acknowledge()
        return self.messages

    async def send(self, text: str) -> Message:
        """
        Persist an outbound message and append it to the list.

        Raises:
            EmptyMessageError: text is empty or whitespace only
            GatewayError: the store rejected the message; the list is unchanged
        """
        if not text or not text.strip():
            raise EmptyMessageError("message text must not be empty")

        try:
            message = await self._gateway.send_message(self.inquiry.id, text)
        except GatewayError as e:
            logger.error(f"Failed to send message to inquiry {self.inquiry.id}: {e}")
            if self._notifier is not None:
                self._notifier.error("Could not send the message.")
            raise

        self._unconfirmed[message.id] = (self._load_seq, message)
        self._messages = sort_messages([*self._messages, message])
        logger.info(f"Message {message.id} sent to inquiry {self.inquiry.id}")
        self._acknowledge()
        return message

    def _acknowledge(self) -> None:
        if self._on_acknowledge is None:
            return
        try:
            self._on_acknowledge(self.inquiry.id)
        except Exception:
            logger.warning(f"Acknowledging inquiry {self.inquiry.id} failed", exc_info=True)
