"""
Pytest config.

The repo isn't installed for the test run, so local imports like `import auth`
rely on the repo root being on sys.path. Logs and state go to a throwaway
directory so the suite never touches the working tree.
"""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


def _isolate_runtime_dirs() -> None:
    scratch = Path(tempfile.mkdtemp(prefix="chatflow-tests-"))
    os.environ.setdefault("LOGS_DIR", str(scratch / "logs"))
    os.environ.setdefault("STATE_DIR", str(scratch / "state"))
    os.environ.setdefault("STORAGE_BACKEND", "memory")


_isolate_runtime_dirs()
_ensure_repo_root_on_syspath()

from fakes import FakeHttp, ManualScheduler, SimClock  # noqa: E402

from auth.session_store import SessionStore  # noqa: E402
from storage.kv import MemoryStore  # noqa: E402


@pytest.fixture
def clock() -> SimClock:
    return SimClock(start=1_700_000_000.0)


@pytest.fixture
def kv() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def store(kv: MemoryStore, clock: SimClock) -> SessionStore:
    return SessionStore(kv, clock=clock, verify_interval_seconds=3600)


@pytest.fixture
def api_http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture
def provider_http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()
