"""Pytest configuration and fixtures."""

import ftplib
import posixpath
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Optional
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from ftp_template.config.settings import (  # noqa: E402
    PoolSettings,
    SessionConfig,
    TransferSettings,
)
from ftp_template.pool.factory import SessionFactory  # noqa: E402
from ftp_template.pool.manager import SessionPool  # noqa: E402
from ftp_template.transfer.service import TransferService  # noqa: E402


class FakeServer:
    """In-memory FTP server shared by every FakeFTP client of a test."""

    def __init__(self) -> None:
        self.files: dict[str, dict[str, bytes]] = {"/": {}, "/home/test": {}}
        self.password = "secret"
        self.welcome = "220 Fake FTP server ready."
        self.connect_error: Optional[Exception] = None
        self.type_error: Optional[Exception] = None
        self.quit_error: Optional[Exception] = None
        self.close_error: Optional[Exception] = None
        self.nlst_empty_error = False

        # Number of STOR/RETR calls to reject before accepting.
        self.store_rejections = 0
        self.retrieve_rejections = 0
        # Exceptions raised by the next STOR, RETR and DELE calls, in order.
        self.store_errors: list[Exception] = []
        self.retrieve_errors: list[Exception] = []
        self.delete_errors: list[Exception] = []
        self.store_delay = 0.0
        self.on_store: Optional[Callable[["FakeFTP"], None]] = None
        self.delete_reply = "250 Delete operation successful."
        self.store_blocksize: Optional[int] = None

        self.clients: list["FakeFTP"] = []
        self.store_calls = 0
        self.retrieve_calls = 0
        self.active_transfers = 0
        self.max_active_transfers = 0
        self._lock = threading.Lock()

    def client(self, encoding: str = "utf-8") -> "FakeFTP":
        """Client factory handed to SessionFactory."""
        client = FakeFTP(self, encoding=encoding)
        with self._lock:
            self.clients.append(client)
        return client

    def enter_transfer(self) -> None:
        with self._lock:
            self.active_transfers += 1
            self.max_active_transfers = max(
                self.max_active_transfers, self.active_transfers
            )

    def leave_transfer(self) -> None:
        with self._lock:
            self.active_transfers -= 1


class FakeFTP:
    """Scripted stand-in for ftplib.FTP."""

    def __init__(self, server: FakeServer, encoding: str = "utf-8") -> None:
        self.server = server
        self.encoding = encoding
        self.sock: Optional[MagicMock] = None
        self.timeout = None
        self.passive: Optional[bool] = None
        self.commands: list[str] = []
        self.cwd_path = "/"
        self.connect_args: Optional[tuple] = None
        self.logged_in = False
        self.closed = False
        self.broken = False
        self.in_use = False
        self.transfer_type: Optional[str] = None
        self.unread_reply: Optional[str] = None

    def connect(self, host: str, port: int, timeout: Optional[float] = None) -> str:
        self.connect_args = (host, port, timeout)
        if self.server.connect_error is not None:
            raise self.server.connect_error
        self.sock = MagicMock(name="socket")
        self.timeout = timeout
        return self.server.welcome

    def login(self, user: str, passwd: str) -> str:
        self.commands.append(f"USER {user}")
        if passwd != self.server.password:
            raise ftplib.error_perm("530 Login incorrect.")
        self.logged_in = True
        return "230 Login successful."

    def voidcmd(self, cmd: str) -> str:
        self._check_alive()
        self.commands.append(cmd)
        if self.unread_reply is not None:
            return self._stale_reply("200 Command okay.")
        if cmd.startswith("TYPE") and self.server.type_error is not None:
            raise self.server.type_error
        if cmd.startswith("TYPE"):
            self.transfer_type = cmd.split(" ", 1)[1]
        return "200 Command okay."

    def set_pasv(self, val: bool) -> None:
        self.passive = val

    def cwd(self, path: str) -> str:
        self._check_alive()
        self.commands.append(f"CWD {path}")
        if path not in self.server.files:
            raise ftplib.error_perm("550 Failed to change directory.")
        self.cwd_path = path
        return "250 Directory successfully changed."

    def storbinary(self, cmd: str, fp, blocksize: int = 8192, callback=None, rest=None) -> str:
        self.server.store_blocksize = blocksize

        def read_all() -> bytes:
            data = b"".join(iter(lambda: fp.read(blocksize), b""))
            # ASCII mode stores network CRLF as the server's native LF.
            if self.transfer_type == "A":
                data = data.replace(b"\r\n", b"\n")
            return data

        return self._store(cmd, read_all)

    def _store(self, cmd: str, read_all) -> str:
        self._check_alive()
        self.commands.append(cmd)
        self.server.store_calls += 1
        assert not self.in_use, "session used by two callers at once"
        self.in_use = True
        self.server.enter_transfer()
        try:
            if self.server.on_store is not None:
                self.server.on_store(self)
            if self.server.store_delay:
                time.sleep(self.server.store_delay)
            if self.server.store_errors:
                raise self.server.store_errors.pop(0)
            if self.server.store_rejections > 0:
                self.server.store_rejections -= 1
                raise ftplib.error_perm("553 Could not create file.")
            try:
                data = read_all()
            except BaseException:
                # The completion reply stays unread on the control channel.
                self.unread_reply = "226 Transfer complete."
                raise
            name = cmd.split(" ", 1)[1]
            self.server.files[self.cwd_path][name] = data
            return "226 Transfer complete."
        finally:
            self.in_use = False
            self.server.leave_transfer()

    def retrbinary(self, cmd: str, callback, blocksize: int = 8192, rest=None) -> str:
        data = self._retrieve(cmd)
        if self.transfer_type == "A":
            data = data.replace(b"\n", b"\r\n")
        try:
            for start in range(0, len(data), blocksize):
                callback(data[start:start + blocksize])
        except BaseException:
            self.unread_reply = "226 Transfer complete."
            raise
        return "226 Transfer complete."

    def _retrieve(self, cmd: str) -> bytes:
        self._check_alive()
        self.commands.append(cmd)
        self.server.retrieve_calls += 1
        if self.server.retrieve_errors:
            raise self.server.retrieve_errors.pop(0)
        if self.server.retrieve_rejections > 0:
            self.server.retrieve_rejections -= 1
            raise ftplib.error_perm("550 Failed to open file.")
        name = cmd.split(" ", 1)[1]
        try:
            return self.server.files[self.cwd_path][name]
        except KeyError:
            raise ftplib.error_perm("550 Failed to open file.")

    def nlst(self, *args) -> list[str]:
        self._check_alive()
        self.commands.append("NLST")
        names = sorted(self.server.files[self.cwd_path])
        if not names and self.server.nlst_empty_error:
            raise ftplib.error_perm("550 No files found.")
        return [posixpath.join(self.cwd_path, name) for name in names]

    def delete(self, filename: str) -> str:
        self._check_alive()
        self.commands.append(f"DELE {filename}")
        if self.unread_reply is not None:
            return self._stale_reply("250 Delete operation successful.")
        if self.server.delete_errors:
            raise self.server.delete_errors.pop(0)
        directory = self.server.files[self.cwd_path]
        if filename not in directory:
            raise ftplib.error_perm("550 Delete operation failed.")
        del directory[filename]
        return self.server.delete_reply

    def quit(self) -> str:
        self.commands.append("QUIT")
        if self.server.quit_error is not None:
            raise self.server.quit_error
        self.sock = None
        return "221 Goodbye."

    def close(self) -> None:
        self.sock = None
        self.closed = True
        if self.server.close_error is not None:
            raise self.server.close_error

    def _stale_reply(self, own_reply: str) -> str:
        """Answer with the reply left over from an earlier command."""
        reply, self.unread_reply = self.unread_reply, own_reply
        return reply

    def _check_alive(self) -> None:
        if self.broken:
            raise ConnectionResetError("Connection reset by peer")
        if self.sock is None:
            raise OSError("Not connected")


@pytest.fixture
def server() -> FakeServer:
    """Return a fresh fake FTP server."""
    return FakeServer()


@pytest.fixture
def session_config() -> SessionConfig:
    """Return a session config pointing at the fake server."""
    return SessionConfig(
        host="ftp.example.com",
        username="testuser",
        password="secret",
    )


@pytest.fixture
def factory(session_config: SessionConfig, server: FakeServer) -> SessionFactory:
    """Return a session factory creating fake clients."""
    return SessionFactory(session_config, client_factory=server.client)


@pytest.fixture
def pool(factory: SessionFactory):
    """Return a small pool with a short borrow timeout."""
    pool = SessionPool(
        factory,
        settings=PoolSettings(max_size=2, borrow_timeout_seconds=0.5),
    )
    yield pool
    pool.close()


@pytest.fixture
def service(pool: SessionPool) -> TransferService:
    """Return a transfer service with the default retry budget."""
    return TransferService(pool, settings=TransferSettings(retry_count=3))


@pytest.fixture
def local_file(tmp_path: Path) -> Path:
    """Create a temporary file to upload."""
    path = tmp_path / "report.txt"
    path.write_bytes(b"line one\nline two\n")
    return path
