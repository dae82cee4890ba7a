"""
cache.py

Local content cache as seen by session orchestration: the only operation
needed is wiping it when the account changes or the user logs out.
Part of Chatflow — Business Messaging Client.
"""

import logging
import shutil
from pathlib import Path

import config

_log = logging.getLogger("chatflow.cache")
if not _log.handlers:
    _handler = logging.FileHandler(config.LOGS_DIR / "cache.log", encoding="utf-8")
    _handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-8s | %(message)s"))
    _log.addHandler(_handler)
    _log.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))


class ContentCache:
    """No-op cache used when nothing is cached locally."""

    def clear_all(self) -> None:
        return None


class DirectoryContentCache(ContentCache):
    """Cache kept as files under one directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def clear_all(self) -> None:
        if not self.root.exists():
            return
        shutil.rmtree(self.root)
        self.root.mkdir(parents=True, exist_ok=True)
        _log.info("CACHE CLEARED | root=%s", self.root)
