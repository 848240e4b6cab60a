"""
Inquiry registry: every inquiry visible to the signed-in account.

One registry exists per account session. It is the single writer of the
local inquiry list and of the acknowledgement ledger; consumers read
through `inquiries`, `unread_count` and `subscribe()`. Writes are "last
async write wins": a refresh landing after a status change may briefly
restore the older server value until the next poll.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Container, Iterable, Optional

from inquiry_sync.config import settings
from inquiry_sync.gateway import (
    DuplicateInquiryError,
    GatewayError,
    InquiryStoreGateway,
    MessageStoreGateway,
    PetStoreGateway,
)
from inquiry_sync.ledger import AcknowledgementLedger
from inquiry_sync.logging_utils import account_id_ctx
from inquiry_sync.metrics import record_background_failure, record_poll
from inquiry_sync.notifications import NotificationCenter
from inquiry_sync.poller import Poller
from inquiry_sync.schemas import Inquiry, InquiryCreate, InquiryStatus, PetAvailability, Role
from inquiry_sync.single_flight import SingleFlight
from inquiry_sync.status import InvalidStatusTransition, ensure_transition
from inquiry_sync.thread import ThreadSynchronizer

logger = logging.getLogger(__name__)

REFRESH_KEY = "inquiries"

RegistryListener = Callable[[list[Inquiry], int], None]


@dataclass(frozen=True)
class AccountSession:
    account_id: str
    role: Role


class InquiryNotFoundError(LookupError):
    pass


class ApprovalSideEffectError(GatewayError):
    """The inquiry is Approved but its pet could not be marked as adopted."""


# =============================================================================
# Unread computation
# =============================================================================

def is_unread(inquiry: Inquiry, acknowledged: Container[str], role: Role) -> bool:
    """
    Whether an inquiry counts toward the unread total.

    Unread chat activity always counts, even on an acknowledged inquiry.
    Otherwise only unacknowledged status news counts: a New inquiry for a
    shelter, anything past New for an applicant.
    """
    if inquiry.has_unread_messages:
        return True
    if inquiry.id in acknowledged:
        return False
    if role is Role.SHELTER:
        return inquiry.status is InquiryStatus.NEW
    return inquiry.status is not InquiryStatus.NEW


def count_unread(inquiries: Iterable[Inquiry], acknowledged: Container[str], role: Role) -> int:
    return sum(1 for inquiry in inquiries if is_unread(inquiry, acknowledged, role))


# =============================================================================
# Registry
# =============================================================================

class InquiryRegistry:
    def __init__(
        self,
        session: AccountSession,
        inquiry_gateway: InquiryStoreGateway,
        message_gateway: MessageStoreGateway,
        pet_gateway: PetStoreGateway,
        ledger: AcknowledgementLedger,
        notifier: NotificationCenter,
        poll_interval: Optional[float] = None,
        thread_poll_interval: Optional[float] = None,
        on_pets_changed: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.session = session
        self.ledger = ledger
        self.notifier = notifier
        self._inquiry_gateway = inquiry_gateway
        self._message_gateway = message_gateway
        self._pet_gateway = pet_gateway
        self._thread_poll_interval = thread_poll_interval
        self._on_pets_changed = on_pets_changed
        self._inquiries: list[Inquiry] = []
        self._threads: dict[str, ThreadSynchronizer] = {}
        self._listeners: list[RegistryListener] = []
        self._background: set[asyncio.Task] = set()
        self._single_flight = SingleFlight()
        self._poller = Poller(
            "registry",
            self.refresh,
            poll_interval or settings.REGISTRY_POLL_INTERVAL_SECONDS,
        )

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    @property
    def account_id(self) -> str:
        return self.session.account_id

    @property
    def role(self) -> Role:
        return self.session.role

    @property
    def inquiries(self) -> list[Inquiry]:
        return list(self._inquiries)

    @property
    def unread_count(self) -> int:
        return count_unread(self._inquiries, self.ledger, self.role)

    @property
    def polling(self) -> bool:
        return self._poller.running

    def get(self, inquiry_id: str) -> Optional[Inquiry]:
        for inquiry in self._inquiries:
            if inquiry.id == inquiry_id:
                return inquiry
        return None

    def thread(self, inquiry_id: str) -> Optional[ThreadSynchronizer]:
        return self._threads.get(inquiry_id)

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        """
        Receive (inquiries, unread_count) after every change.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        snapshot, unread = self.inquiries, self.unread_count
        for listener in list(self._listeners):
            try:
                listener(snapshot, unread)
            except Exception:
                logger.warning("Registry listener failed", exc_info=True)

    def _replace(self, updated: Inquiry) -> None:
        self._inquiries = [updated if i.id == updated.id else i for i in self._inquiries]
        thread = self._threads.get(updated.id)
        if thread is not None:
            thread.update_inquiry(updated)

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Load the ledger, fetch once, then poll on the registry interval."""
        account_id_ctx.set(self.account_id)
        self.ledger.load()
        await self.refresh()
        self._poller.start(run_immediately=False)
        logger.info(f"Registry started for {self.role.value} account {self.account_id}")

    async def stop(self) -> None:
        """Stop polling, close every open thread and drop pending background work."""
        await self._poller.stop()
        threads, self._threads = list(self._threads.values()), {}
        for thread in threads:
            await thread.close()
        pending = list(self._background)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.info(f"Registry stopped for account {self.account_id}")

    async def wait_background(self) -> None:
        """Wait for acknowledgement side effects scheduled so far."""
        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def refresh(self) -> None:
        """
        Replace the local list with the store's current view.

        Calls made while a fetch is outstanding join it instead of issuing
        another request. Fetch failures keep the previous list.
        """
        if self._single_flight.in_flight(REFRESH_KEY):
            logger.debug("Inquiry refresh already in flight")
            record_poll("registry", "skipped")
        await self._single_flight.do(REFRESH_KEY, self._fetch_inquiries)

    async def _fetch_inquiries(self) -> None:
        try:
            inquiries = await self._inquiry_gateway.fetch_inquiries(self.account_id)
        except GatewayError as e:
            logger.warning(f"Failed to refresh inquiries: {e}")
            record_poll("registry", "error")
            return

        self._inquiries = list(inquiries)
        for inquiry in self._inquiries:
            thread = self._threads.get(inquiry.id)
            if thread is not None:
                thread.update_inquiry(inquiry)
        record_poll("registry", "ok")
        logger.debug(f"Refreshed {len(self._inquiries)} inquiries, {self.unread_count} unread")
        self._publish()

    # -------------------------------------------------------------------------
    # Acknowledgement
    # -------------------------------------------------------------------------

    def acknowledge(self, inquiry_id: str) -> None:
        """
        Record that the local user has seen an inquiry.

        The unread flag and the ledger are updated before returning. Syncing
        read state to the store and the shelter's automatic New -> Contacted
        move run in the background; their failures are only logged.
        Must be called from the running event loop.
        """
        inquiry = self.get(inquiry_id)
        if inquiry is not None and inquiry.has_unread_messages:
            self._replace(inquiry.model_copy(update={"has_unread_messages": False}))
        self.ledger.add(inquiry_id)
        self._publish()

        auto_contact = (
            self.role is Role.SHELTER
            and inquiry is not None
            and inquiry.status is InquiryStatus.NEW
        )
        self._spawn(self._sync_acknowledgement(inquiry_id, auto_contact))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _sync_acknowledgement(self, inquiry_id: str, auto_contact: bool) -> None:
        try:
            await self._message_gateway.mark_messages_read(inquiry_id, self.account_id)
        except Exception as e:
            logger.warning(f"Failed to mark messages read for inquiry {inquiry_id}: {e}")
            record_background_failure("mark_read")

        if auto_contact:
            await self._auto_contact(inquiry_id)

    async def _auto_contact(self, inquiry_id: str) -> None:
        try:
            await self._inquiry_gateway.set_inquiry_status(inquiry_id, InquiryStatus.CONTACTED)
        except Exception as e:
            logger.warning(f"Automatic move to Contacted failed for inquiry {inquiry_id}: {e}")
            record_background_failure("auto_contact")
            return

        current = self.get(inquiry_id)
        if current is not None and current.status is InquiryStatus.NEW:
            self._replace(current.model_copy(update={"status": InquiryStatus.CONTACTED}))
            self._publish()
        logger.info(f"Inquiry {inquiry_id} moved to Contacted")

    # -------------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------------

    async def set_status(self, inquiry_id: str, status: InquiryStatus) -> Inquiry:
        """
        Move an inquiry to a new status.

        Approval also marks the pet as adopted. If that fails the inquiry
        stays Approved and ApprovalSideEffectError is raised.

        Raises:
            InquiryNotFoundError: the registry does not hold the inquiry
            InvalidStatusTransition: the transition table forbids the move
            GatewayError: the store rejected the status write
            ApprovalSideEffectError: approved, but the pet update failed
        """
        inquiry = self.get(inquiry_id)
        if inquiry is None:
            raise InquiryNotFoundError(inquiry_id)

        try:
            ensure_transition(inquiry.status, status)
        except InvalidStatusTransition as e:
            logger.warning(f"Rejected status change for inquiry {inquiry_id}: {e}")
            self.notifier.error(f"This inquiry can no longer be moved to {status.value}.")
            raise

        try:
            await self._inquiry_gateway.set_inquiry_status(inquiry_id, status)
        except GatewayError as e:
            logger.error(f"Failed to set inquiry {inquiry_id} to {status.value}: {e}")
            self.notifier.error("Could not update the inquiry status.")
            raise

        updated = (self.get(inquiry_id) or inquiry).model_copy(update={"status": status})
        self._replace(updated)
        self._publish()
        logger.info(f"Inquiry {inquiry_id} moved to {status.value}")

        if status is InquiryStatus.APPROVED:
            await self._mark_pet_adopted(updated)
        else:
            self.notifier.success(f"Inquiry marked as {status.value}.")
        return updated

    async def _mark_pet_adopted(self, inquiry: Inquiry) -> None:
        try:
            await self._pet_gateway.set_pet_availability(inquiry.pet_id, PetAvailability.ADOPTED)
            if self._on_pets_changed is not None:
                await self._on_pets_changed()
        except Exception as e:
            logger.error(
                f"Inquiry {inquiry.id} approved but pet {inquiry.pet_id} was not marked adopted: {e}"
            )
            self.notifier.error(
                f"Inquiry approved, but {inquiry.pet_name} could not be marked as adopted."
            )
            raise ApprovalSideEffectError(
                f"pet {inquiry.pet_id} availability update failed"
            ) from e

        self.notifier.success(f"Inquiry approved. {inquiry.pet_name} is now marked as adopted.")

    async def create(self, inquiry: InquiryCreate) -> None:
        """
        Submit a new inquiry, then refresh so the stored record arrives as the
        store computed it.
        """
        try:
            await self._inquiry_gateway.create_inquiry(inquiry)
        except GatewayError as e:
            logger.error(f"Failed to create inquiry for pet {inquiry.pet_id}: {e}")
            if isinstance(e, DuplicateInquiryError):
                self.notifier.error(str(e))
            else:
                self.notifier.error("Could not send your inquiry.")
            raise

        await self.refresh()
        self.notifier.success("Your inquiry has been sent.")

    # -------------------------------------------------------------------------
    # Threads
    # -------------------------------------------------------------------------

    async def open_thread(
        self, inquiry_id: str, applicant_hint: Optional[str] = None
    ) -> ThreadSynchronizer:
        """
        Open (or return the already open) conversation for an inquiry.

        Opening counts as viewing: the inquiry is acknowledged. If the first
        load raises, the thread is discarded and the error propagates.
        """
        thread = self._threads.get(inquiry_id)
        if thread is not None:
            return thread

        inquiry = self.get(inquiry_id)
        if inquiry is None:
            raise InquiryNotFoundError(inquiry_id)

        thread = ThreadSynchronizer(
            inquiry,
            self._message_gateway,
            self.account_id,
            on_acknowledge=self.acknowledge,
            applicant_hint=applicant_hint,
            poll_interval=self._thread_poll_interval,
            notifier=self.notifier,
        )
        self._threads[inquiry_id] = thread
        self.acknowledge(inquiry_id)
        try:
            await thread.open()
        except BaseException:
            # a thread whose first load raised is not kept; the next open retries
            if self._threads.get(inquiry_id) is thread:
                del self._threads[inquiry_id]
            await thread.close()
            raise
        return thread

    async def close_thread(self, inquiry_id: str) -> bool:
        thread = self._threads.pop(inquiry_id, None)
        if thread is None:
            return False
        await thread.close()
        return True
