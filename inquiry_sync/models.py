"""
SQLAlchemy ORM models for local durable storage.

This module contains database table definitions using SQLAlchemy.
For Pydantic domain and API schemas, see schemas.py.
"""

from sqlalchemy import Column, String, Text

from inquiry_sync.storage import Base


class LocalStorageEntry(Base):
    """
    Key/value record surviving process restarts.

    Table: local_storage
    Primary Key: storage_key (one serialized value per key)
    """
    __tablename__ = "local_storage"

    storage_key = Column(String, primary_key=True, index=True)
    value = Column(Text, nullable=False)  # JSON-serialized payload
    updated_at = Column(String, nullable=False)  # ISO-8601 UTC
