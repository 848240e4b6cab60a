"""
Pytest configuration and shared fixtures.

Environment variables default to test values here, before any package
import, so settings are built with them. Provides:
- FakeStore: in-memory remote store implementing the inquiry, message and
  pet gateways
- Local storage tables created and dropped per test
- A registry factory wired to the fake store
"""

import asyncio
import os
from typing import Optional

os.environ.setdefault("STORE_URL", "http://store.test/rest/v1")
os.environ.setdefault("LEDGER_DATABASE_URL", "sqlite:///./test_ledger.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

# Clear settings cache before any other package imports to ensure test env vars are used
from inquiry_sync.config import get_settings
get_settings.cache_clear()

from inquiry_sync import models  # noqa: F401  (registers tables on Base)
from inquiry_sync.gateway import DuplicateInquiryError, GatewayError
from inquiry_sync.ledger import AcknowledgementLedger
from inquiry_sync.notifications import NotificationCenter
from inquiry_sync.registry import AccountSession, InquiryRegistry
from inquiry_sync.schemas import (
    Inquiry,
    InquiryCreate,
    InquiryStatus,
    Message,
    PetAvailability,
    Role,
)
from inquiry_sync.storage import Base, engine
from inquiry_sync.utils import parse_timestamp, utc_now_iso


class FakeStore:
    """
    In-memory stand-in for the remote store.

    - fail: operation names that raise GatewayError
    - fetch_gate: when set, fetch_inquiries blocks until the event is set
    - messages_gate: when set, fetch_messages snapshots the thread, then
      blocks until the event is set and returns that snapshot
    - calls: every operation name in call order
    """

    def __init__(self, account_id: str = "shelter-1"):
        self.account_id = account_id
        self.inquiries: dict[str, Inquiry] = {}
        self.messages: dict[str, list[Message]] = {}
        self.pets: dict[str, PetAvailability] = {}
        self.calls: list[str] = []
        self.fail: set[str] = set()
        self.fetch_gate: Optional[asyncio.Event] = None
        self.messages_gate: Optional[asyncio.Event] = None
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail:
            raise GatewayError(f"{operation} failed", 500)

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    # Seeding helpers

    def add_inquiry(self, **overrides) -> Inquiry:
        fields = {
            "id": self._next_id("inq"),
            "shelter_id": "shelter-1",
            "pet_id": "pet-1",
            "pet_name": "Rex",
            "applicant_id": "applicant-1",
            "applicant_name": "Jana Novak",
            "email": "jana@example.com",
            "phone": "+421900000000",
            "message": "Hello",
            "date": "2024-01-01T10:00:00Z",
            "status": InquiryStatus.NEW,
        }
        fields.update(overrides)
        inquiry = Inquiry(**fields)
        self.inquiries[inquiry.id] = inquiry
        self.messages.setdefault(inquiry.id, [])
        self.pets.setdefault(inquiry.pet_id, PetAvailability.AVAILABLE)
        return inquiry

    def add_message(
        self,
        inquiry_id: str,
        content: str,
        created_at: str,
        sender_id: str = "applicant-1",
        is_read: bool = True,
    ) -> Message:
        message = Message(
            id=self._next_id("msg"),
            inquiry_id=inquiry_id,
            sender_id=sender_id,
            content=content,
            created_at=created_at,
            is_read=is_read,
        )
        self.messages.setdefault(inquiry_id, []).append(message)
        return message

    # InquiryStoreGateway

    async def fetch_inquiries(self, account_id: str) -> list[Inquiry]:
        self._check("fetch_inquiries")
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        unread_ids = {
            inquiry_id
            for inquiry_id, messages in self.messages.items()
            if any(not m.is_read and m.sender_id != account_id for m in messages)
        }
        ordered = sorted(
            self.inquiries.values(),
            key=lambda i: parse_timestamp(i.date),
            reverse=True,
        )
        return [i.model_copy(update={"has_unread_messages": i.id in unread_ids}) for i in ordered]

    async def create_inquiry(self, inquiry: InquiryCreate) -> None:
        self._check("create_inquiry")
        for existing in self.inquiries.values():
            if existing.pet_id == inquiry.pet_id and existing.email == inquiry.email:
                raise DuplicateInquiryError("An inquiry for this pet has already been submitted.", 409)
        self.add_inquiry(
            id=self._next_id("inq"),
            shelter_id=inquiry.shelter_id,
            pet_id=inquiry.pet_id,
            pet_name=inquiry.pet_name or "Unknown",
            applicant_id=inquiry.applicant_id,
            applicant_name=inquiry.applicant_name,
            email=inquiry.email,
            phone=inquiry.phone,
            message=inquiry.message,
            date=utc_now_iso(),
        )

    async def set_inquiry_status(self, inquiry_id: str, status: InquiryStatus) -> None:
        self._check("set_inquiry_status")
        self.inquiries[inquiry_id] = self.inquiries[inquiry_id].model_copy(update={"status": status})

    # MessageStoreGateway

    async def fetch_messages(self, inquiry_id: str) -> list[Message]:
        self._check("fetch_messages")
        snapshot = list(self.messages.get(inquiry_id, []))
        if self.messages_gate is not None:
            await self.messages_gate.wait()
        return snapshot

    async def send_message(self, inquiry_id: str, text: str) -> Message:
        self._check("send_message")
        return self.add_message(
            inquiry_id, text, utc_now_iso(), sender_id=self.account_id, is_read=False
        )

    async def mark_messages_read(self, inquiry_id: str, account_id: str) -> None:
        self._check("mark_messages_read")
        self.messages[inquiry_id] = [
            m.model_copy(update={"is_read": True}) if m.sender_id != account_id else m
            for m in self.messages.get(inquiry_id, [])
        ]

    # PetStoreGateway

    async def set_pet_availability(self, pet_id: str, status: PetAvailability) -> None:
        self._check("set_pet_availability")
        self.pets[pet_id] = status


@pytest.fixture
def db_tables():
    """Create local storage tables for a test and drop them afterwards."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def notifier() -> NotificationCenter:
    return NotificationCenter()


@pytest.fixture
def make_registry(store, notifier, db_tables):
    """Build a registry for the fake store with its ledger already loaded."""

    def _make(role: Role = Role.SHELTER, account_id: Optional[str] = None, **kwargs) -> InquiryRegistry:
        if account_id is not None:
            store.account_id = account_id
        ledger = AcknowledgementLedger(store.account_id)
        ledger.load()
        return InquiryRegistry(
            AccountSession(store.account_id, role),
            inquiry_gateway=store,
            message_gateway=store,
            pet_gateway=store,
            ledger=ledger,
            notifier=notifier,
            **kwargs,
        )

    return _make
