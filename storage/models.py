"""
models.py

SQLAlchemy ORM model and key-value backend for the session database.
Stores each persisted session key as one row in the kv_items table.
Part of Chatflow — Business Messaging Client.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import Column, DateTime, String, Text, create_engine, delete
from sqlalchemy.orm import declarative_base, sessionmaker

import config
from storage.kv import KeyValueStore

_log = logging.getLogger("chatflow.storage")

Base = declarative_base()


class KeyValueItem(Base):
    """
    A single persisted key and its string value.
    """

    __tablename__ = "kv_items"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class DatabaseStore(KeyValueStore):
    """
    KeyValueStore backed by a SQL database through SQLAlchemy.

    Example:
        store = DatabaseStore("sqlite:///session.db")
        store.set("settingId", "abc")
    """

    def __init__(self, database_url: str):
        if database_url.startswith("sqlite:///"):
            config.STATE_DIR.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(database_url, future=True)
        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, future=True)

    def get(self, key: str) -> Optional[str]:
        db = self._session_factory()
        try:
            item = db.get(KeyValueItem, key)
            return item.value if item is not None else None
        finally:
            db.close()

    def set(self, key: str, value: str) -> None:
        db = self._session_factory()
        try:
            item = db.get(KeyValueItem, key)
            if item is None:
                db.add(KeyValueItem(key=key, value=value))
            else:
                item.value = value
            db.commit()
        except Exception as exc:
            db.rollback()
            _log.error("DB SET FAILED | key=%s | error=%s", key, exc)
            raise
        finally:
            db.close()

    def remove(self, key: str) -> None:
        self.multi_remove([key])

    def multi_remove(self, keys: Iterable[str]) -> None:
        wanted = list(keys)
        if not wanted:
            return
        db = self._session_factory()
        try:
            db.execute(delete(KeyValueItem).where(KeyValueItem.key.in_(wanted)))
            db.commit()
        except Exception as exc:
            db.rollback()
            _log.error("DB REMOVE FAILED | keys=%s | error=%s", wanted, exc)
        finally:
            db.close()
