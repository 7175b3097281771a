from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Text

from .db import Base


class KVEntry(Base):
    """One key of the local key-value store (favorites, search history, cache envelopes)."""

    __tablename__ = "kv_store"

    key = Column(Text, primary_key=True)
    value = Column(JSON, nullable=True)

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        index=True,
    )
