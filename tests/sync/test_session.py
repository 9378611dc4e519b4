"""Tests for the remote session."""

import io
import threading

import pytest

from filemirror.core.types import ConnectionState
from filemirror.credentials import Credentials
from filemirror.sync.session import TEMP_SUFFIX, Session, temp_name
from filemirror.sync.types import PermanentTransferFailure, TransientTransferFailure
from tests.conftest import FakeTransport

ROOT = "/srv/mirror"


@pytest.fixture
def session(fake_transport: FakeTransport) -> Session:
    return Session(fake_transport, Credentials("alice", "secret"), remote_root=ROOT)


class TestPaths:
    """Tests for remote path resolution."""

    def test_remote_path(self, session: Session) -> None:
        """Should join relative paths onto the remote root."""
        assert session.remote_path("docs/a.txt") == "/srv/mirror/docs/a.txt"
        assert session.remote_path("/docs/") == "/srv/mirror/docs"
        assert session.remote_path("") == ROOT

    def test_trailing_slash_stripped(self, fake_transport: FakeTransport) -> None:
        """Should normalize the remote root."""
        assert Session(fake_transport, Credentials(), remote_root="/srv/mirror/").remote_root == ROOT
        assert Session(fake_transport, Credentials(), remote_root="/").remote_root == "/"

    def test_empty_root(self, fake_transport: FakeTransport) -> None:
        """Should keep paths relative without a remote root."""
        assert Session(fake_transport, Credentials()).remote_path("a.txt") == "a.txt"

    def test_temp_name_is_hidden_sibling(self) -> None:
        """Should place the temporary file next to its target."""
        temp = temp_name("/srv/mirror/docs/a.txt")
        assert temp.startswith("/srv/mirror/docs/.a.txt.")
        assert temp.endswith(TEMP_SUFFIX)
        assert temp != temp_name("/srv/mirror/docs/a.txt")


class TestConnection:
    """Tests for the connection state machine."""

    def test_connect(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should open the transport with the credentials."""
        assert session.state == ConnectionState.DISCONNECTED
        session.connect()
        assert session.state == ConnectionState.READY
        assert fake_transport.credentials == Credentials("alice", "secret")

    def test_connect_when_ready_is_noop(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should not reconnect a READY session."""
        session.connect()
        session.connect()
        assert fake_transport.open_count == 1

    def test_concurrent_connect_opens_once(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should serialize connection attempts."""
        threads = [threading.Thread(target=session.connect) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert fake_transport.open_count == 1

    def test_connect_failure_degrades(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should enter DEGRADED and re-raise when connecting fails."""
        fake_transport.fail("open", times=1)
        with pytest.raises(TransientTransferFailure):
            session.connect()
        assert session.state == ConnectionState.DEGRADED
        assert "timed out" in session.last_error

    def test_lazy_connect(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should connect on the first primitive call."""
        session.put("a.txt", io.BytesIO(b"x"))
        assert fake_transport.open_count == 1
        assert session.state == ConnectionState.READY

    def test_wait_ready(self, session: Session) -> None:
        """Should report readiness."""
        assert session.wait_ready(timeout=0) is False
        session.connect()
        assert session.wait_ready(timeout=0) is True

    def test_close(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should close the transport and refuse further calls."""
        session.connect()
        session.close()
        assert session.state == ConnectionState.DISCONNECTED
        assert fake_transport.is_open is False
        with pytest.raises(PermanentTransferFailure, match="closed"):
            session.put("a.txt", io.BytesIO(b"x"))

    def test_context_manager(self, fake_transport: FakeTransport) -> None:
        """Should connect on entry and close on exit."""
        with Session(fake_transport, Credentials(), remote_root=ROOT) as session:
            assert session.state == ConnectionState.READY
        assert session.state == ConnectionState.DISCONNECTED


class TestPut:
    """Tests for Session.put."""

    def test_atomic_put(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should upload to a temporary sibling and rename it over the target."""
        session.put("docs/a.txt", io.BytesIO(b"hello"))

        assert fake_transport.files == {"/srv/mirror/docs/a.txt": b"hello"}
        [temp] = fake_transport.calls_for("put")
        assert temp.endswith(TEMP_SUFFIX)
        assert temp.startswith("/srv/mirror/docs/.a.txt.")
        assert fake_transport.calls_for("rename") == ["/srv/mirror/docs/a.txt"]

    def test_creates_parents(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should create missing parent directories."""
        session.put("a/b/c.txt", io.BytesIO(b"x"))
        assert fake_transport.calls_for("mkdir_all") == ["/srv/mirror/a/b"]
        assert "/srv/mirror/a" in fake_transport.dirs

    def test_known_directories_cached(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should not recreate a directory it already made."""
        session.put("a/x.txt", io.BytesIO(b"x"))
        session.put("a/y.txt", io.BytesIO(b"y"))
        assert fake_transport.calls_for("mkdir_all") == ["/srv/mirror/a"]

    def test_idempotent(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should leave the same remote state when repeated."""
        session.put("a.txt", io.BytesIO(b"same"))
        first = dict(fake_transport.files)
        session.put("a.txt", io.BytesIO(b"same"))
        assert fake_transport.files == first

    def test_transient_failure_reconnects(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should reconnect once and re-raise a transient failure."""
        session.connect()
        fake_transport.fail("put", times=1)

        with pytest.raises(TransientTransferFailure):
            session.put("a.txt", io.BytesIO(b"x"))

        assert fake_transport.open_count == 2
        assert session.state == ConnectionState.READY
        session.put("a.txt", io.BytesIO(b"x"))
        assert fake_transport.files["/srv/mirror/a.txt"] == b"x"

    def test_failed_reconnect_stays_degraded(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should stay DEGRADED when the reconnect also fails."""
        session.connect()
        fake_transport.fail("put", times=1)
        fake_transport.fail("open", times=1)

        with pytest.raises(TransientTransferFailure):
            session.put("a.txt", io.BytesIO(b"x"))
        assert session.state == ConnectionState.DEGRADED

    def test_permanent_failure_keeps_connection(
        self, session: Session, fake_transport: FakeTransport
    ) -> None:
        """Should not reconnect on a permanent failure."""
        session.connect()
        fake_transport.fail("rename", kind="permanent")

        with pytest.raises(PermanentTransferFailure):
            session.put("a.txt", io.BytesIO(b"x"))

        assert fake_transport.open_count == 1
        assert session.state == ConnectionState.READY
        assert "rejected" in session.last_error

    def test_temp_removed_on_failure(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should discard the temporary file when the rename fails."""
        fake_transport.fail("rename", kind="permanent")
        with pytest.raises(PermanentTransferFailure):
            session.put("a.txt", io.BytesIO(b"x"))

        [removed] = fake_transport.calls_for("remove")
        assert removed.endswith(TEMP_SUFFIX)
        assert fake_transport.files == {}

    def test_stale_directory_cache_retried(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should recreate cached parents once when the remote rejects the write."""
        session.put("a/x.txt", io.BytesIO(b"x"))
        fake_transport.fail("put", kind="permanent", times=1)

        session.put("a/y.txt", io.BytesIO(b"y"))

        assert fake_transport.calls_for("mkdir_all") == ["/srv/mirror/a", "/srv/mirror/a"]
        assert fake_transport.files["/srv/mirror/a/y.txt"] == b"y"


class TestRemove:
    """Tests for Session.remove and Session.mkdir_all."""

    def test_remove_tree(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should remove a directory and everything below it."""
        session.put("docs/a.txt", io.BytesIO(b"a"))
        session.put("docs/sub/b.txt", io.BytesIO(b"b"))
        session.put("other.txt", io.BytesIO(b"o"))

        session.remove("docs")

        assert fake_transport.files == {"/srv/mirror/other.txt": b"o"}

    def test_remove_absent_is_success(self, session: Session) -> None:
        """Should treat an absent path as removed."""
        session.remove("never-existed.txt")
        session.remove("never-existed.txt")

    def test_remove_root_refused(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should never remove the remote root."""
        with pytest.raises(PermanentTransferFailure):
            session.remove("")
        assert fake_transport.calls_for("remove") == []

    def test_remove_forgets_directories(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should recreate a removed directory on the next put."""
        session.put("docs/a.txt", io.BytesIO(b"a"))
        session.remove("docs")
        session.put("docs/a.txt", io.BytesIO(b"a"))
        assert fake_transport.calls_for("mkdir_all") == ["/srv/mirror/docs", "/srv/mirror/docs"]

    def test_mkdir_all(self, session: Session, fake_transport: FakeTransport) -> None:
        """Should create the directory with its parents, once."""
        session.mkdir_all("a/b")
        session.mkdir_all("a/b")
        assert fake_transport.calls_for("mkdir_all") == ["/srv/mirror/a/b"]
        assert {"/srv", "/srv/mirror", "/srv/mirror/a", "/srv/mirror/a/b"} <= fake_transport.dirs
