"""Shared fixtures: an in-memory remote store with failure injection."""

import threading
from dataclasses import dataclass
from pathlib import Path

import pytest

from filemirror.core.config import MirrorConfig
from filemirror.credentials import Credentials
from filemirror.sync.transports.base import iter_chunks, parent_dirs
from filemirror.sync.types import PermanentTransferFailure, TransientTransferFailure


@dataclass
class FailureRule:
    """Fail matching calls ``remaining`` times (-1 = forever)."""

    op: str
    match: str
    kind: str
    remaining: int


class FakeTransport:
    """In-memory Transport recording every call."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.dirs: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.open_count = 0
        self.close_count = 0
        self.is_open = False
        self.credentials: Credentials | None = None
        self._rules: list[FailureRule] = []
        self._lock = threading.Lock()

    def fail(self, op: str, match: str = "", kind: str = "transient", times: int = -1) -> None:
        """Make calls of ``op`` whose path contains ``match`` fail."""
        with self._lock:
            self._rules.append(FailureRule(op, match, kind, times))

    def calls_for(self, op: str) -> list[str]:
        """Paths passed to ``op`` so far."""
        with self._lock:
            return [path for name, path in self.calls if name == op]

    def _record(self, op: str, path: str) -> None:
        with self._lock:
            self.calls.append((op, path))
            for rule in self._rules:
                if rule.op == op and rule.match in path and rule.remaining != 0:
                    rule.remaining -= 1
                    if rule.kind == "permanent":
                        raise PermanentTransferFailure(f"{op} {path} rejected", path)
                    raise TransientTransferFailure(f"{op} {path} timed out", path)

    def open(self, credentials: Credentials) -> None:
        self._record("open", "")
        self.credentials = credentials
        self.is_open = True
        self.open_count += 1

    def close(self) -> None:
        self.is_open = False
        self.close_count += 1

    def put(self, remote_path: str, stream) -> None:
        self._record("put", remote_path)
        data = b"".join(iter_chunks(stream))
        with self._lock:
            self.files[remote_path] = data

    def remove(self, remote_path: str) -> None:
        self._record("remove", remote_path)
        prefix = remote_path.rstrip("/") + "/"
        with self._lock:
            self.files = {
                p: d for p, d in self.files.items() if p != remote_path and not p.startswith(prefix)
            }
            self.dirs = {d for d in self.dirs if d != remote_path and not d.startswith(prefix)}

    def mkdir_all(self, remote_dir: str) -> None:
        self._record("mkdir_all", remote_dir)
        with self._lock:
            self.dirs.update(parent_dirs(remote_dir))

    def rename(self, src: str, dst: str) -> None:
        self._record("rename", dst)
        with self._lock:
            self.files[dst] = self.files.pop(src)


@pytest.fixture
def fake_transport() -> FakeTransport:
    """Fresh in-memory remote store."""
    return FakeTransport()


@pytest.fixture
def watch_root(tmp_path: Path) -> Path:
    """Local directory to mirror."""
    root = tmp_path / "local"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def local_config(watch_root: Path, tmp_path: Path) -> MirrorConfig:
    """Config mirroring into a local directory with fast timings."""
    remote = tmp_path / "remote"
    remote.mkdir()
    return MirrorConfig(
        local_path=watch_root,
        remote_path=str(remote),
        protocol="local",
        debounce_window=0.1,
        max_attempts=3,
        backoff_base=0.01,
        backoff_cap=0.05,
        worker_count=2,
        grace_period=2.0,
    )
