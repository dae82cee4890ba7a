"""
storage — Local Persistence Module

Key-value stores backing the session store: in-memory, JSON file and
SQLAlchemy database backends.
Part of Chatflow — Business Messaging Client.
"""

from storage.kv import JsonFileStore, KeyValueStore, MemoryStore, open_store

__all__ = ["JsonFileStore", "KeyValueStore", "MemoryStore", "open_store"]
