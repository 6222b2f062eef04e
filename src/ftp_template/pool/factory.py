"""Factory that opens, checks and closes FTP sessions."""

import ftplib
import socket
from typing import Callable, Optional

import structlog

from ftp_template.config.settings import SessionConfig
from ftp_template.errors import SessionConnectionError
from ftp_template.pool.session import FTPSession


logger = structlog.get_logger(__name__)


ClientFactory = Callable[..., ftplib.FTP]


class SessionFactory:
    """Creates authenticated sessions from a shared, immutable config."""

    def __init__(
        self,
        config: SessionConfig,
        client_factory: Optional[ClientFactory] = None,
        log: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        """Initialize the factory.

        Args:
            config: Connection parameters for every session.
            client_factory: Callable building an unconnected client.
                Defaults to ``ftplib.FTP``.
            log: Logger to use instead of the module logger.
        """
        self.config = config
        self._client_factory = client_factory or ftplib.FTP
        self._log = (log or logger).bind(address=config.address)

    def create(self) -> FTPSession:
        """Open a new authenticated session.

        Returns:
            A session ready for file operations.

        Raises:
            SessionConnectionError: If connect, login or negotiation fails.
                The transport is closed before raising.
        """
        config = self.config
        client = self._client_factory(encoding=config.encoding)

        try:
            if config.connect_timeout is not None:
                welcome = client.connect(
                    config.host, config.port, timeout=config.connect_timeout
                )
            else:
                welcome = client.connect(config.host, config.port)
        except ftplib.all_errors as e:
            self._close_quietly(client)
            self._log.warning("session_connect_failed", error=str(e))
            raise SessionConnectionError(config.address, str(e)) from e

        if not str(welcome).startswith("2"):
            self._close_quietly(client)
            self._log.warning("session_connect_refused", reply=str(welcome))
            raise SessionConnectionError(
                config.address, f"server refused connection: {welcome}"
            )

        try:
            client.login(config.username, config.password)
        except ftplib.all_errors as e:
            self._close_quietly(client)
            self._log.warning(
                "session_login_failed",
                username=config.username,
                error=str(e),
            )
            raise SessionConnectionError(config.address, f"login failed: {e}") from e

        try:
            self._negotiate(client)
        except ftplib.all_errors as e:
            self._close_quietly(client)
            self._log.warning("session_negotiation_failed", error=str(e))
            raise SessionConnectionError(
                config.address, f"negotiation failed: {e}"
            ) from e

        session = FTPSession(
            client=client,
            address=config.address,
            buffer_size=config.buffer_size,
            transfer_mode=config.transfer_mode,
        )

        mode = "passive" if config.passive_mode else "active"
        self._log.info(
            "session_created",
            session_id=session.session_id,
            mode=mode,
            transfer_mode=config.transfer_mode.value,
        )
        return session

    def _negotiate(self, client: ftplib.FTP) -> None:
        """Apply transfer type, data channel mode and socket options."""
        config = self.config

        client.voidcmd(config.transfer_mode.type_command)
        client.set_pasv(config.passive_mode)

        # ftplib opens data connections with this timeout.
        if config.data_timeout is not None:
            client.timeout = config.data_timeout

        if config.keep_alive_interval > 0 and client.sock is not None:
            self._enable_keep_alive(client.sock, config.keep_alive_interval)

    @staticmethod
    def _enable_keep_alive(sock: socket.socket, interval: int) -> None:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if hasattr(socket, "TCP_KEEPIDLE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, interval)
        if hasattr(socket, "TCP_KEEPINTVL"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, interval)

    def validate(self, session: FTPSession) -> bool:
        """Check a session is still alive.

        Uses NOOP command to check connection health.

        Args:
            session: Session to check.

        Returns:
            True if the server answered, False otherwise.
        """
        if not session.is_connected:
            return False

        try:
            session.client.voidcmd("NOOP")
            return True
        except ftplib.all_errors as e:
            self._log.info(
                "session_validation_failed",
                session_id=session.session_id,
                error=str(e),
            )
            return False

    def destroy(self, session: FTPSession) -> None:
        """Log out and close a session.

        Never raises: a failed QUIT is logged and the transport is closed
        regardless.

        Args:
            session: Session to close.
        """
        session.mark_invalid()
        client = session.client

        if getattr(client, "sock", None) is not None:
            try:
                client.quit()
            except Exception as e:
                self._log.warning(
                    "session_logout_failed",
                    session_id=session.session_id,
                    error=str(e),
                )

        self._close_quietly(client, session.session_id)
        self._log.debug("session_destroyed", session_id=session.session_id)

    def _close_quietly(
        self,
        client: ftplib.FTP,
        session_id: Optional[str] = None,
    ) -> None:
        try:
            client.close()
        except Exception as e:
            self._log.warning(
                "session_close_failed",
                session_id=session_id,
                error=str(e),
            )
