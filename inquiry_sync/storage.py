import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from inquiry_sync.config import settings
from inquiry_sync.utils import utc_now_iso

logger = logging.getLogger(__name__)

_connect_args = (
    {"check_same_thread": False}
    if settings.LEDGER_DATABASE_URL.startswith("sqlite")
    else {}
)

# check_same_thread=False lets the event loop thread and TestClient portals share SQLite
engine = create_engine(
    settings.LEDGER_DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Initialize local storage by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing local storage with URL: {settings.LEDGER_DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from inquiry_sync.models import LocalStorageEntry  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Local storage initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize local storage: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if local storage is reachable and schema is applied.

    Returns:
        True if storage is healthy and the local_storage table exists.
    """
    logger.debug("Checking local storage health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            result = db.execute(text(
                "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='local_storage'"
            )).scalar()
            if result == 0:
                logger.error("Local storage schema not applied: 'local_storage' table not found")
                return False
        logger.debug("Local storage health check passed")
        return True
    except Exception as e:
        logger.error(f"Local storage health check failed: {e}")
        return False


# =============================================================================
# Key/Value Repository Functions
# =============================================================================

def read_storage_value(db: Session, storage_key: str) -> Optional[str]:
    """
    Read the serialized value stored under a key.

    Args:
        db: Database session
        storage_key: Storage key

    Returns:
        The stored string, or None if the key has never been written
    """
    from inquiry_sync.models import LocalStorageEntry

    entry = db.get(LocalStorageEntry, storage_key)
    logger.debug(f"Storage read {storage_key}: {'hit' if entry else 'miss'}")
    return entry.value if entry else None


def write_storage_value(db: Session, storage_key: str, value: str) -> None:
    """
    Insert or replace the value stored under a key.

    Args:
        db: Database session
        storage_key: Storage key
        value: Serialized value
    """
    from inquiry_sync.models import LocalStorageEntry

    try:
        entry = db.get(LocalStorageEntry, storage_key)
        if entry is None:
            entry = LocalStorageEntry(storage_key=storage_key, value=value, updated_at=utc_now_iso())
            db.add(entry)
        else:
            entry.value = value
            entry.updated_at = utc_now_iso()
        db.commit()
        logger.debug(f"Storage write {storage_key}: {len(value)} bytes")
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to write storage key {storage_key}: {e}")
        raise


def delete_storage_value(db: Session, storage_key: str) -> bool:
    """
    Remove a key.

    Returns:
        True if a value was removed, False if the key did not exist
    """
    from inquiry_sync.models import LocalStorageEntry

    try:
        deleted = (
            db.query(LocalStorageEntry)
            .filter(LocalStorageEntry.storage_key == storage_key)
            .delete()
        )
        db.commit()
        logger.info(f"Storage key {storage_key} deleted: {bool(deleted)}")
        return bool(deleted)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to delete storage key {storage_key}: {e}")
        raise
