"""
Acknowledgement ledger: inquiry IDs the local account has already seen.

The ledger is a monotonic set persisted as one JSON array under a fixed
storage key scoped to the account. It is written through after every
mutation and only shrinks on an explicit reset.
"""

import json
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from inquiry_sync.config import settings
from inquiry_sync.storage import (
    SessionLocal,
    delete_storage_value,
    read_storage_value,
    write_storage_value,
)

logger = logging.getLogger(__name__)


class AcknowledgementLedger:
    """Locally persisted, per-account set of acknowledged inquiry IDs."""

    def __init__(
        self,
        account_id: str,
        session_factory: Callable[[], Session] = SessionLocal,
        storage_key: Optional[str] = None,
    ):
        self.account_id = account_id
        self.storage_key = f"{storage_key or settings.LEDGER_STORAGE_KEY}:{account_id}"
        self._session_factory = session_factory
        # list keeps insertion order for the serialized array, set answers membership
        self._order: list[str] = []
        self._ids: set[str] = set()

    def load(self) -> None:
        """Replace in-memory state with what durable storage holds."""
        with self._session_factory() as db:
            raw = read_storage_value(db, self.storage_key)

        ids: list[str] = []
        if raw:
            try:
                decoded = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring unreadable ledger {self.storage_key}: {e}")
                decoded = []
            if isinstance(decoded, list):
                ids = [item for item in decoded if isinstance(item, str)]
            else:
                logger.warning(f"Ignoring ledger {self.storage_key}: expected a JSON array")

        self._order = list(dict.fromkeys(ids))
        self._ids = set(self._order)
        logger.info(f"Ledger loaded for account {self.account_id}: {len(self._ids)} entries")

    def contains(self, inquiry_id: str) -> bool:
        return inquiry_id in self._ids

    __contains__ = contains

    def __len__(self) -> int:
        return len(self._ids)

    @property
    def ids(self) -> frozenset:
        return frozenset(self._ids)

    def add(self, inquiry_id: str) -> bool:
        """
        Add an inquiry ID and persist the ledger.

        Idempotent: adding an existing ID neither writes nor changes state.

        Returns:
            True if the ID was newly added
        """
        if inquiry_id in self._ids:
            return False

        self._ids.add(inquiry_id)
        self._order.append(inquiry_id)
        self._persist()
        logger.debug(f"Ledger {self.storage_key} acknowledged {inquiry_id}")
        return True

    def reset(self) -> None:
        """Forget every entry. Only used on explicit logout/reset."""
        self._order = []
        self._ids = set()
        with self._session_factory() as db:
            delete_storage_value(db, self.storage_key)
        logger.info(f"Ledger reset for account {self.account_id}")

    def _persist(self) -> None:
        with self._session_factory() as db:
            write_storage_value(db, self.storage_key, json.dumps(self._order))
