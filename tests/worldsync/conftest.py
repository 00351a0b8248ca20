"""Shared fixtures for worldsync tests."""

from __future__ import annotations

import logging
import subprocess
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from worldsync.core.config import SyncConfig
from worldsync.core.errors import LeaseConflictError
from worldsync.lease.models import LeaseRecord, StoredLease

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeLeaseStore:
    """In-memory LeaseStore with the same compare-and-set semantics as the remote.

    ``failures[op]`` holds exceptions raised (in order) by the next calls of
    that operation.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.record: LeaseRecord | None = None
        self.version: str | None = None
        self._counter = 0
        self.failures: dict[str, list[Exception]] = {"read": [], "write": [], "delete": []}
        self.messages: list[str] = []
        self.closed = False

    def _next_version(self) -> str:
        self._counter += 1
        return f"v{self._counter}"

    def _maybe_fail(self, operation: str) -> None:
        if self.failures[operation]:
            raise self.failures[operation].pop(0)

    def put(self, record: LeaseRecord) -> str:
        """Write directly, as another host would."""
        with self._lock:
            self.record = record
            self.version = self._next_version()
            return self.version

    def read(self, deadline=None) -> StoredLease | None:
        with self._lock:
            self._maybe_fail("read")
            if self.record is None:
                return None
            return StoredLease(record=self.record, version=self.version)

    def write(self, record: LeaseRecord, version: str | None, message: str, deadline=None) -> str:
        with self._lock:
            self._maybe_fail("write")
            if version != self.version:
                raise LeaseConflictError("version mismatch")
            self.record = record
            self.version = self._next_version()
            self.messages.append(message)
            return self.version

    def delete(self, version: str, message: str, deadline=None) -> bool:
        with self._lock:
            self._maybe_fail("delete")
            if self.record is None:
                return False
            if version != self.version:
                raise LeaseConflictError("version mismatch")
            self.record = None
            self.version = None
            self.messages.append(message)
            return True

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lease_store() -> FakeLeaseStore:
    return FakeLeaseStore()


@pytest.fixture
def make_record(clock):
    """Build a LeaseRecord for some holder, valid for an hour from now by default."""

    def factory(holder_id: str = "other-host", minutes: float = 60, **overrides) -> LeaseRecord:
        values = dict(
            held=True,
            holder_label=f"{holder_id}-label",
            holder_id=holder_id,
            acquired_at=clock.now,
            expires_at=clock.now + timedelta(minutes=minutes),
            reason="Hosting session: alpha",
            session_token="other-token",
        )
        values.update(overrides)
        return LeaseRecord(**values)

    return factory


@pytest.fixture
def config(tmp_path) -> SyncConfig:
    return SyncConfig(
        owner="acme",
        repo="shared-world",
        token="test-token",
        api_url="https://api.example.com",
        remote_url=str(tmp_path / "remote.git"),
        lfs_enabled=False,
        data_dir=tmp_path / "home",
        lease_duration=3600,
        refresh_interval=300,
        acquire_timeout=10,
        sync_timeout=60,
        max_attempts=3,
        initial_delay=0,
        max_delay=0,
    )


@pytest.fixture
def git_env(tmp_path, monkeypatch):
    """Isolate git from the user's global and system configuration."""
    home = tmp_path / "git-home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(home / ".gitconfig"))
    for name in ("GIT_AUTHOR_NAME", "GIT_AUTHOR_EMAIL", "GIT_COMMITTER_NAME", "GIT_COMMITTER_EMAIL", "GIT_DIR"):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def bare_remote(tmp_path, git_env) -> Path:
    """Empty bare repository standing in for the coordination repository."""
    remote = tmp_path / "remote.git"
    subprocess.run(["git", "init", "--bare", "--quiet", str(remote)], check=True)
    return remote


@pytest.fixture(autouse=True)
def reset_worldsync_logging():
    """The CLI detaches ``worldsync`` logging from the root logger; undo that between tests."""
    yield
    logger = logging.getLogger("worldsync")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
