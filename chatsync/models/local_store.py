"""
Local persistent store models - key/value entries for client caches
"""
from sqlalchemy import Column, String, Text, DateTime
from chatsync.database import Base
from chatsync.utils.time_utils import utc_now


class KeyValueEntry(Base):
    """One serialized value under a fixed key (profile cache, heads, favorites, watermarks)"""
    __tablename__ = "kv_entries"

    key = Column(String(255), primary_key=True)

    # JSON-encoded payload
    value = Column(Text, nullable=False)

    # Timestamps
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)
