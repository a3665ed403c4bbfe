"""
Local database models for the chat sync layer

All models should be imported here so init_db() registers them.
"""
from chatsync.models.local_store import KeyValueEntry

__all__ = [
    "KeyValueEntry",
]
