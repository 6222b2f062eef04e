"""FTP session pool."""

import ftplib
import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

from ftp_template.config.settings import PoolSettings, SessionConfig
from ftp_template.errors import (
    InvalidSessionError,
    LocalIOError,
    PoolClosedError,
    PoolExhaustedError,
)
from ftp_template.metrics.prometheus import MetricsCollector
from ftp_template.pool.factory import ClientFactory, SessionFactory
from ftp_template.pool.session import FTPSession


logger = structlog.get_logger(__name__)


# Failures that leave the control connection in an unknown state. Covers
# error_reply, error_proto, 421 replies and ftplib.Error raised mid-transfer.
TRANSPORT_ERRORS = (OSError, EOFError, ftplib.Error)

# Reply code of a server closing the control connection.
SERVICE_CLOSING = "421"


def is_rejection(exc: BaseException) -> bool:
    """Check whether the server refused a command on a healthy session.

    Permanent (5xx) and transient (4xx) replies leave the control channel
    in sync, except 421 which announces the connection is being closed.

    Args:
        exc: The exception raised while using a session.

    Returns:
        True if the session can be reused.
    """
    if isinstance(exc, ftplib.error_perm):
        return True
    return isinstance(exc, ftplib.error_temp) and not str(exc).startswith(
        SERVICE_CLOSING
    )


def is_transport_error(exc: BaseException) -> bool:
    """Check whether an exception means the session itself is broken.

    Args:
        exc: The exception raised while using a session.

    Returns:
        True if the session must be invalidated rather than reused.
    """
    if isinstance(exc, LocalIOError) or is_rejection(exc):
        return False
    return isinstance(exc, TRANSPORT_ERRORS)


class SessionPool:
    """Bounded, thread-safe pool of FTP sessions for one server.

    Sessions are created lazily up to ``max_size``. All bookkeeping is
    guarded by a single condition; connecting, validating and closing
    sessions happen outside of it.
    """

    def __init__(
        self,
        factory: SessionFactory,
        settings: Optional[PoolSettings] = None,
        metrics: Optional[MetricsCollector] = None,
        log: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        """Initialize the session pool.

        Args:
            factory: Factory creating, validating and destroying sessions.
            settings: Pool settings.
            metrics: Optional metrics collector.
            log: Logger to use instead of the module logger.
        """
        self._factory = factory
        self._settings = settings or PoolSettings()
        self._metrics = metrics
        self._log = (log or logger).bind(address=factory.config.address)

        self._cond = threading.Condition()
        self._idle: deque[FTPSession] = deque()
        self._borrowed: set[FTPSession] = set()
        self._pending = 0
        self._closed = False

        self._created = 0
        self._destroyed = 0
        self._borrows = 0
        self._waits = 0
        self._timeouts = 0
        self._substitutions = 0

    @property
    def factory(self) -> SessionFactory:
        """Get the session factory."""
        return self._factory

    @property
    def max_size(self) -> int:
        """Get the maximum number of sessions."""
        return self._settings.max_size

    @property
    def idle_count(self) -> int:
        """Get number of idle sessions."""
        with self._cond:
            return len(self._idle)

    @property
    def borrowed_count(self) -> int:
        """Get number of borrowed sessions."""
        with self._cond:
            return len(self._borrowed)

    @property
    def size(self) -> int:
        """Get number of live sessions, including ones being opened."""
        with self._cond:
            return self._total()

    @property
    def closed(self) -> bool:
        """Check if the pool has been closed."""
        return self._closed

    def _total(self) -> int:
        return len(self._idle) + len(self._borrowed) + self._pending

    def borrow(self, timeout: Optional[float] = None) -> FTPSession:
        """Borrow a session from the pool.

        Reuses an idle session when one exists, opens a new one while the
        pool is below capacity, and otherwise waits for a release.

        Args:
            timeout: Seconds to wait when the pool is at capacity. Defaults
                to ``borrow_timeout_seconds``.

        Returns:
            A session exclusively owned by the caller.

        Raises:
            PoolExhaustedError: If no session frees up within the timeout.
            PoolClosedError: If the pool is closed.
            SessionConnectionError: If a new session cannot be opened.
        """
        if timeout is None:
            timeout = self._settings.borrow_timeout_seconds
        deadline = time.monotonic() + timeout

        with self._cond:
            session = self._checkout(deadline, timeout)

        if session is None:
            return self._create_borrowed()

        if not self._settings.test_on_borrow or self._factory.validate(session):
            self._log.debug(
                "session_reused",
                session_id=session.session_id,
                borrow_count=session.borrow_count,
            )
            return session

        # Stale: keep the slot and open a replacement for this caller.
        self._log.info("session_stale_replaced", session_id=session.session_id)
        with self._cond:
            self._borrowed.discard(session)
            self._pending += 1
            self._substitutions += 1
        self._destroy(session)
        return self._create_borrowed()

    def _checkout(self, deadline: float, timeout: float) -> Optional[FTPSession]:
        """Take an idle session or reserve a creation slot.

        Must be called with the condition held. Returns None when a slot
        was reserved and the caller has to create the session.
        """
        waited = False
        while True:
            if self._closed:
                raise PoolClosedError("Session pool is closed")

            if self._idle:
                session = self._idle.pop()
                session.mark_borrowed()
                self._borrowed.add(session)
                self._borrows += 1
                self._update_gauges()
                return session

            if self._total() < self._settings.max_size:
                self._pending += 1
                return None

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._timeouts += 1
                if self._metrics:
                    self._metrics.record_pool_exhausted()
                self._log.warning(
                    "pool_exhausted",
                    max_size=self._settings.max_size,
                    timeout=timeout,
                )
                raise PoolExhaustedError(self._settings.max_size, timeout)

            if not waited:
                waited = True
                self._waits += 1
                self._log.debug("pool_wait", max_size=self._settings.max_size)
            self._cond.wait(remaining)

    def _create_borrowed(self) -> FTPSession:
        """Open a session for a slot already reserved in ``_pending``."""
        try:
            session = self._factory.create()
        except BaseException:
            with self._cond:
                self._pending -= 1
                self._cond.notify()
            raise

        if self._metrics:
            self._metrics.record_session_created()

        with self._cond:
            self._pending -= 1
            self._created += 1
            closed = self._closed
            if not closed:
                session.mark_borrowed()
                self._borrowed.add(session)
                self._borrows += 1
                self._update_gauges()
            else:
                self._cond.notify()

        if closed:
            self._destroy(session)
            raise PoolClosedError("Session pool is closed")

        self._log.debug(
            "session_borrowed_new",
            session_id=session.session_id,
            size=self.size,
            max_size=self._settings.max_size,
        )
        return session

    def release(self, session: FTPSession) -> None:
        """Return a borrowed session to the pool.

        The session goes back to the idle set while there is idle capacity
        and the pool is open; otherwise it is closed and its slot freed.

        Args:
            session: Session obtained from ``borrow``.

        Raises:
            InvalidSessionError: If the session is not currently borrowed
                from this pool.
        """
        with self._cond:
            if session not in self._borrowed:
                raise InvalidSessionError(
                    f"Session {session.session_id} is not borrowed from this pool"
                )
            self._borrowed.remove(session)

            keep = (
                not self._closed
                and session.is_valid
                and len(self._idle) < self._settings.effective_max_idle
            )
            if keep:
                session.mark_idle()
                self._idle.append(session)
            self._update_gauges()
            self._cond.notify()

        if not keep:
            self._destroy(session)

    def invalidate(self, session: FTPSession) -> None:
        """Remove a broken session from the pool and close it.

        Args:
            session: A borrowed or idle session of this pool.

        Raises:
            InvalidSessionError: If the pool does not hold the session.
        """
        with self._cond:
            if session in self._borrowed:
                self._borrowed.remove(session)
            elif session in self._idle:
                self._idle.remove(session)
            else:
                raise InvalidSessionError(
                    f"Session {session.session_id} does not belong to this pool"
                )
            self._update_gauges()
            self._cond.notify()

        self._log.info("session_invalidated", session_id=session.session_id)
        self._destroy(session)

    def _destroy(self, session: FTPSession) -> None:
        self._factory.destroy(session)
        with self._cond:
            self._destroyed += 1
        if self._metrics:
            self._metrics.record_session_destroyed()

    def _update_gauges(self) -> None:
        if self._metrics:
            self._metrics.update_pool_metrics(
                idle=len(self._idle),
                borrowed=len(self._borrowed),
            )

    @contextmanager
    def session(self, timeout: Optional[float] = None) -> Iterator[FTPSession]:
        """Borrow a session for the duration of a block.

        The session is released if the block completes or fails with a
        command rejection. Any other failure may have interrupted a
        transfer with its reply still unread, so the session is invalidated.

        Args:
            timeout: Seconds to wait for a free session.

        Yields:
            A borrowed FTP session.
        """
        session = self.borrow(timeout)
        try:
            yield session
        except BaseException as e:
            if is_rejection(e):
                self.release(session)
            else:
                self.invalidate(session)
            raise
        else:
            self.release(session)

    def close(self) -> None:
        """Close all idle sessions and stop lending.

        Borrowed sessions are closed when they are released.
        """
        with self._cond:
            if self._closed:
                return
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            borrowed = len(self._borrowed)
            self._update_gauges()
            self._cond.notify_all()

        for session in idle:
            self._destroy(session)

        self._log.info(
            "pool_closed",
            closed_idle=len(idle),
            outstanding=borrowed,
        )

    def get_stats(self) -> dict:
        """Get pool statistics.

        Returns:
            Pool statistics dictionary.
        """
        with self._cond:
            return {
                "address": self._factory.config.address,
                "max_size": self._settings.max_size,
                "idle": len(self._idle),
                "borrowed": len(self._borrowed),
                "pending": self._pending,
                "closed": self._closed,
                "created": self._created,
                "destroyed": self._destroyed,
                "borrows": self._borrows,
                "waits": self._waits,
                "timeouts": self._timeouts,
                "substitutions": self._substitutions,
            }

    def __enter__(self) -> "SessionPool":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def open_pool(
    config: SessionConfig,
    settings: Optional[PoolSettings] = None,
    metrics: Optional[MetricsCollector] = None,
    client_factory: Optional[ClientFactory] = None,
) -> SessionPool:
    """Create a session pool for a server.

    No connection is opened until the first borrow.

    Args:
        config: Connection parameters.
        settings: Pool settings.
        metrics: Optional metrics collector.
        client_factory: Callable building an unconnected client.

    Returns:
        A new, empty session pool.
    """
    factory = SessionFactory(config, client_factory=client_factory)
    pool = SessionPool(factory, settings=settings, metrics=metrics)
    logger.info(
        "pool_created",
        address=config.address,
        max_size=pool.max_size,
    )
    return pool


def close_pool(pool: SessionPool) -> None:
    """Close a pool created by ``open_pool``."""
    pool.close()
