"""Transfer service running upload, download and delete on pooled sessions."""

import ftplib
import posixpath
import re
import time
from pathlib import Path
from typing import BinaryIO, Optional

import structlog

from ftp_template.config.settings import TransferMode, TransferSettings
from ftp_template.errors import (
    InvalidArgumentError,
    LocalIOError,
    PoolClosedError,
    PoolExhaustedError,
    SessionConnectionError,
)
from ftp_template.metrics.prometheus import MetricsCollector
from ftp_template.pool.manager import SessionPool, is_rejection, is_transport_error
from ftp_template.pool.session import FTPSession
from ftp_template.transfer.models import (
    TransferOperation,
    TransferRequest,
    TransferResult,
    TransferStatus,
)


logger = structlog.get_logger(__name__)


# Errors raised by borrow() when no usable session can be had.
UNAVAILABLE_ERRORS = (PoolExhaustedError, PoolClosedError, SessionConnectionError)

_BARE_LF = re.compile(rb"(?<!\r)\n")


class _LocalReader:
    """Upload stream over a local file.

    ftplib reads the stream inside the protocol call, where a plain OSError
    would look like a broken connection, so read failures are raised as
    LocalIOError. In ASCII mode bare LF line endings are sent as CRLF; lines
    of any length pass through unchanged otherwise.
    """

    def __init__(self, stream: BinaryIO, path: Path, ascii_mode: bool = False) -> None:
        self._stream = stream
        self._path = path
        self._ascii = ascii_mode
        self._last_cr = False
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        try:
            data = self._stream.read(size)
        except OSError as e:
            raise LocalIOError(f"Failed to read {self._path}: {e}") from e
        self.bytes_read += len(data)
        if self._ascii and data:
            data = self._to_network(data)
        return data

    def _to_network(self, data: bytes) -> bytes:
        converted = _BARE_LF.sub(b"\r\n", data)
        if self._last_cr and data.startswith(b"\n"):
            # CR went out with the previous block
            converted = converted[1:]
        self._last_cr = data.endswith(b"\r")
        return converted

    def rewind(self) -> None:
        try:
            self._stream.seek(0)
        except OSError as e:
            raise LocalIOError(f"Failed to rewind {self._path}: {e}") from e
        self._last_cr = False
        self.bytes_read = 0


class _LocalWriter:
    """Write callback for RETR that reports local failures as LocalIOError.

    In ASCII mode CRLF from the wire is written as LF. Everything else is
    kept as received, so a file without a final newline stays that way.
    """

    def __init__(self, stream: BinaryIO, path: Path, ascii_mode: bool = False) -> None:
        self._stream = stream
        self._path = path
        self._ascii = ascii_mode
        self._held_cr = False
        self.bytes_written = 0

    def write(self, data: bytes) -> None:
        if self._ascii:
            data = self._from_network(data)
        self._write(data)

    def _from_network(self, data: bytes) -> bytes:
        if self._held_cr:
            data = b"\r" + data
            self._held_cr = False
        # A trailing CR may be the first half of a CRLF split across blocks.
        if data.endswith(b"\r"):
            self._held_cr = True
            data = data[:-1]
        return data.replace(b"\r\n", b"\n")

    def finish(self) -> None:
        """Flush a CR held back at the end of the last block."""
        if self._held_cr:
            self._held_cr = False
            self._write(b"\r")

    def _write(self, data: bytes) -> None:
        try:
            self._stream.write(data)
        except OSError as e:
            raise LocalIOError(f"Failed to write {self._path}: {e}") from e
        self.bytes_written += len(data)

    def reset(self) -> None:
        try:
            self._stream.seek(0)
            self._stream.truncate()
        except OSError as e:
            raise LocalIOError(f"Failed to reset {self._path}: {e}") from e
        self._held_cr = False
        self.bytes_written = 0


def _is_blank(value: object) -> bool:
    return value is None or not str(value).strip()


def _require(value: object, name: str) -> None:
    if _is_blank(value):
        raise InvalidArgumentError(f"{name} must not be blank")


def match_remote_name(names: list[str], file_name: str) -> Optional[str]:
    """Find ``file_name`` in a directory listing, ignoring case.

    An exact match wins over a case-insensitive one.

    Args:
        names: Entry names as listed by the server.
        file_name: Requested file name.

    Returns:
        The listed name, or None if nothing matches.
    """
    basenames = [posixpath.basename(name.rstrip("/")) for name in names]
    if file_name in basenames:
        return file_name

    wanted = file_name.casefold()
    for name in basenames:
        if name.casefold() == wanted:
            return name
    return None


class TransferService:
    """Upload, download and delete files through a session pool.

    Every call borrows a session, performs one protocol action with a
    bounded retry budget and hands the session back, invalidating it when
    the connection broke. Remote failures are reported as ``False``;
    argument and local filesystem errors are raised.
    """

    def __init__(
        self,
        pool: SessionPool,
        settings: Optional[TransferSettings] = None,
        metrics: Optional[MetricsCollector] = None,
        log: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> None:
        """Initialize the transfer service.

        Args:
            pool: Pool to borrow sessions from.
            settings: Retry settings.
            metrics: Optional metrics collector.
            log: Logger to use instead of the module logger.
        """
        self._pool = pool
        self._settings = settings or TransferSettings()
        self._metrics = metrics
        self._log = log or logger

    @property
    def pool(self) -> SessionPool:
        """Get the session pool."""
        return self._pool

    @property
    def retry_count(self) -> int:
        """Get the default number of retries after the first attempt."""
        return self._settings.retry_count

    def upload(self, local_file: Optional[str | Path], remote_dir: Optional[str]) -> bool:
        """Upload a local file into a remote directory.

        Args:
            local_file: File to upload; stored under its own name.
            remote_dir: Remote directory to store it in.

        Returns:
            True if the server accepted the file.

        Raises:
            InvalidArgumentError: If the file does not exist or remote_dir
                is blank.
            LocalIOError: If the local file cannot be read.
        """
        return self.transfer(TransferRequest.upload(local_file, remote_dir)).succeeded

    def download(
        self,
        remote_dir: Optional[str],
        file_name: Optional[str],
        local_dir: Optional[str | Path],
    ) -> bool:
        """Download a remote file into a local directory.

        The name is matched case-insensitively against the remote listing;
        a missing file returns False.

        Raises:
            InvalidArgumentError: If any argument is blank.
            LocalIOError: If the local file cannot be written.
        """
        request = TransferRequest.download(remote_dir, file_name, local_dir)
        return self.transfer(request).succeeded

    def delete(self, remote_dir: Optional[str], file_name: Optional[str]) -> bool:
        """Delete a remote file.

        Raises:
            InvalidArgumentError: If any argument is blank.
        """
        return self.transfer(TransferRequest.delete(remote_dir, file_name)).succeeded

    def transfer(self, request: TransferRequest) -> TransferResult:
        """Execute a transfer request.

        Args:
            request: The request to execute.

        Returns:
            Structured result of the operation.

        Raises:
            InvalidArgumentError: If the request is incomplete.
            LocalIOError: If local filesystem access fails.
        """
        self._validate(request)

        log = self._log.bind(
            request_id=request.request_id,
            operation=request.operation.value,
            remote_dir=request.remote_dir,
            file_name=request.file_name,
        )
        log.info("transfer_started")
        start_time = time.monotonic()

        if request.operation == TransferOperation.UPLOAD:
            result = self._upload(request, log)
        elif request.operation == TransferOperation.DOWNLOAD:
            result = self._download(request, log)
        else:
            result = self._delete(request, log)

        result.duration_ms = int((time.monotonic() - start_time) * 1000)

        if result.succeeded:
            log.info(
                "transfer_completed",
                attempts=result.attempts,
                bytes_transferred=result.bytes_transferred,
                duration_ms=result.duration_ms,
            )
        else:
            log.warning(
                "transfer_failed",
                status=result.status.value,
                error_code=result.error_code,
                error=result.error_message,
                attempts=result.attempts,
                duration_ms=result.duration_ms,
            )

        if self._metrics:
            self._metrics.record_transfer(
                operation=request.operation.value,
                status=result.status.value,
                attempts=result.attempts,
                duration_seconds=result.duration_ms / 1000,
                bytes_transferred=result.bytes_transferred,
            )

        return result

    def _validate(self, request: TransferRequest) -> None:
        _require(request.remote_dir, "remote_dir")

        if request.retry_count is not None and request.retry_count < 0:
            raise InvalidArgumentError("retry_count must not be negative")

        if request.operation == TransferOperation.UPLOAD:
            if request.local_path is None:
                raise InvalidArgumentError("local_file must be given")
            if not request.local_path.is_file():
                raise InvalidArgumentError(
                    f"Local file not found: {request.local_path}"
                )
        elif request.operation == TransferOperation.DOWNLOAD:
            _require(request.file_name, "file_name")
            _require(request.local_path, "local_dir")
        else:
            _require(request.file_name, "file_name")

    def _budget(self, request: TransferRequest) -> int:
        retries = request.retry_count
        if retries is None:
            retries = self.retry_count
        return retries + 1

    def _pause(self) -> None:
        if self._settings.retry_delay_seconds > 0:
            time.sleep(self._settings.retry_delay_seconds)

    def _change_dir(
        self,
        session: FTPSession,
        remote_dir: str,
        log: structlog.stdlib.BoundLogger,
    ) -> bool:
        """Enter the remote directory; a permanent rejection is final."""
        try:
            session.client.cwd(remote_dir)
            return True
        except ftplib.error_perm as e:
            log.warning("remote_dir_rejected", error=str(e))
            return False

    def _unavailable(
        self,
        request: TransferRequest,
        error: Exception,
        attempts: int,
        log: structlog.stdlib.BoundLogger,
    ) -> TransferResult:
        error_code = (
            "CONNECTION_ERROR"
            if isinstance(error, SessionConnectionError)
            else "POOL_UNAVAILABLE"
        )
        log.error("session_unavailable", error_code=error_code, error=str(error))
        return TransferResult.failure(
            request=request,
            error_code=error_code,
            error_message=str(error),
            attempts=attempts,
        )

    def _round_failed(
        self,
        error: Exception,
        attempts: int,
        round_start: int,
        budget: int,
        log: structlog.stdlib.BoundLogger,
    ) -> int:
        """Account for a failure that ended a round on one session.

        A round that failed before any protocol attempt still consumes one,
        so a server that keeps dropping connections cannot loop forever.

        Returns:
            The updated attempt count.
        """
        if attempts == round_start:
            attempts += 1
        event = "session_broken" if is_transport_error(error) else "command_rejected"
        log.warning(event, attempt=attempts, max_attempts=budget, error=str(error))
        if attempts < budget:
            self._pause()
        return attempts

    def _upload(
        self,
        request: TransferRequest,
        log: structlog.stdlib.BoundLogger,
    ) -> TransferResult:
        local_path = request.local_path
        remote_name = request.file_name
        budget = self._budget(request)
        attempts = 0
        last_error = "no attempt made"
        ascii_mode = self._pool.factory.config.transfer_mode == TransferMode.ASCII

        try:
            stream = open(local_path, "rb")
        except OSError as e:
            raise LocalIOError(f"Failed to open {local_path}: {e}") from e

        with stream:
            reader = _LocalReader(stream, local_path, ascii_mode)

            while attempts < budget:
                round_start = attempts
                try:
                    with self._pool.session() as session:
                        if not self._change_dir(session, request.remote_dir, log):
                            return TransferResult.failure(
                                request=request,
                                error_code="REMOTE_DIR_REJECTED",
                                error_message=f"Cannot enter {request.remote_dir}",
                                attempts=attempts,
                            )

                        while attempts < budget:
                            attempts += 1
                            reader.rewind()
                            try:
                                self._store(session, remote_name, reader)
                                return TransferResult.success(
                                    request=request,
                                    attempts=attempts,
                                    bytes_transferred=reader.bytes_read,
                                )
                            except ftplib.Error as e:
                                if not is_rejection(e):
                                    raise
                                last_error = str(e)
                                log.warning(
                                    "upload_attempt_failed",
                                    attempt=attempts,
                                    max_attempts=budget,
                                    error=last_error,
                                )
                            if attempts < budget:
                                self._pause()

                except UNAVAILABLE_ERRORS as e:
                    return self._unavailable(request, e, attempts, log)

                except Exception as e:
                    if not (is_transport_error(e) or is_rejection(e)):
                        raise
                    last_error = str(e)
                    attempts = self._round_failed(e, attempts, round_start, budget, log)

        return TransferResult.failure(
            request=request,
            error_code="TRANSFER_FAILED",
            error_message=last_error,
            attempts=attempts,
        )

    def _store(
        self,
        session: FTPSession,
        remote_name: str,
        reader: _LocalReader,
    ) -> None:
        # Block transfer in both modes: the reader does the ASCII line ending
        # conversion, so there is no line length limit as with storlines.
        session.client.storbinary(
            f"STOR {remote_name}", reader, blocksize=session.buffer_size
        )

    def _list_names(self, session: FTPSession) -> list[str]:
        try:
            return session.client.nlst()
        except ftplib.error_perm as e:
            # Some servers answer NLST on an empty directory with 550.
            if str(e).startswith("550"):
                return []
            raise

    def _download(
        self,
        request: TransferRequest,
        log: structlog.stdlib.BoundLogger,
    ) -> TransferResult:
        local_dir = request.local_path
        budget = self._budget(request)
        attempts = 0
        last_error = "no attempt made"
        remote_name: Optional[str] = None
        target: Optional[Path] = None
        stream: Optional[BinaryIO] = None
        writer: Optional[_LocalWriter] = None
        succeeded = False

        try:
            while attempts < budget:
                round_start = attempts
                try:
                    with self._pool.session() as session:
                        if not self._change_dir(session, request.remote_dir, log):
                            return TransferResult.failure(
                                request=request,
                                error_code="REMOTE_DIR_REJECTED",
                                error_message=f"Cannot enter {request.remote_dir}",
                                attempts=attempts,
                            )

                        if remote_name is None:
                            names = self._list_names(session)
                            remote_name = match_remote_name(names, request.file_name)
                            if remote_name is None:
                                log.info("remote_file_not_found", entries=len(names))
                                return TransferResult.failure(
                                    request=request,
                                    error_code="NOT_FOUND",
                                    error_message=(
                                        f"{request.file_name} not found in "
                                        f"{request.remote_dir}"
                                    ),
                                    attempts=attempts,
                                    status=TransferStatus.NOT_FOUND,
                                )
                            target = local_dir / remote_name
                            stream = self._open_output(target)
                            writer = _LocalWriter(
                                stream,
                                target,
                                session.transfer_mode == TransferMode.ASCII,
                            )

                        while attempts < budget:
                            attempts += 1
                            writer.reset()
                            try:
                                self._retrieve(session, remote_name, writer)
                                succeeded = True
                                return TransferResult.success(
                                    request=request,
                                    attempts=attempts,
                                    bytes_transferred=writer.bytes_written,
                                    local_path=target,
                                )
                            except ftplib.Error as e:
                                if not is_rejection(e):
                                    raise
                                last_error = str(e)
                                log.warning(
                                    "download_attempt_failed",
                                    attempt=attempts,
                                    max_attempts=budget,
                                    error=last_error,
                                )
                            if attempts < budget:
                                self._pause()

                except UNAVAILABLE_ERRORS as e:
                    return self._unavailable(request, e, attempts, log)

                except Exception as e:
                    if not (is_transport_error(e) or is_rejection(e)):
                        raise
                    last_error = str(e)
                    attempts = self._round_failed(e, attempts, round_start, budget, log)

            return TransferResult.failure(
                request=request,
                error_code="TRANSFER_FAILED",
                error_message=last_error,
                attempts=attempts,
            )
        finally:
            if stream is not None:
                stream.close()
                if not succeeded:
                    self._remove_partial(target, log)

    def _open_output(self, target: Path) -> BinaryIO:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            return open(target, "wb")
        except OSError as e:
            raise LocalIOError(f"Failed to open {target} for writing: {e}") from e

    def _remove_partial(
        self,
        target: Optional[Path],
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        if target is None:
            return
        try:
            target.unlink(missing_ok=True)
        except OSError as e:
            log.warning("partial_file_cleanup_failed", path=str(target), error=str(e))

    def _retrieve(
        self,
        session: FTPSession,
        remote_name: str,
        writer: _LocalWriter,
    ) -> None:
        session.client.retrbinary(
            f"RETR {remote_name}", writer.write, blocksize=session.buffer_size
        )
        writer.finish()

    def _delete(
        self,
        request: TransferRequest,
        log: structlog.stdlib.BoundLogger,
    ) -> TransferResult:
        budget = self._budget(request)
        attempts = 0
        last_error = "no attempt made"

        while attempts < budget:
            round_start = attempts
            try:
                with self._pool.session() as session:
                    if not self._change_dir(session, request.remote_dir, log):
                        return TransferResult.failure(
                            request=request,
                            error_code="REMOTE_DIR_REJECTED",
                            error_message=f"Cannot enter {request.remote_dir}",
                            attempts=attempts,
                        )

                    while attempts < budget:
                        attempts += 1
                        try:
                            reply = session.client.delete(request.file_name)
                        except ftplib.error_perm as e:
                            not_found = str(e).startswith("550")
                            log.info("delete_rejected", reply=str(e))
                            return TransferResult.failure(
                                request=request,
                                error_code="NOT_FOUND" if not_found else "DELETE_REJECTED",
                                error_message=str(e),
                                attempts=attempts,
                                status=(
                                    TransferStatus.NOT_FOUND
                                    if not_found
                                    else TransferStatus.FAILED
                                ),
                            )
                        except ftplib.error_temp as e:
                            if not is_rejection(e):
                                raise
                            last_error = str(e)
                            log.warning(
                                "delete_attempt_failed",
                                attempt=attempts,
                                max_attempts=budget,
                                error=last_error,
                            )
                            if attempts < budget:
                                self._pause()
                            continue

                        if str(reply).startswith("2"):
                            return TransferResult.success(request=request, attempts=attempts)

                        last_error = str(reply)
                        log.warning("delete_unexpected_reply", reply=last_error)
                        return TransferResult.failure(
                            request=request,
                            error_code="DELETE_REJECTED",
                            error_message=last_error,
                            attempts=attempts,
                        )

            except UNAVAILABLE_ERRORS as e:
                return self._unavailable(request, e, attempts, log)

            except Exception as e:
                if not (is_transport_error(e) or is_rejection(e)):
                    raise
                last_error = str(e)
                attempts = self._round_failed(e, attempts, round_start, budget, log)

        return TransferResult.failure(
            request=request,
            error_code="TRANSFER_FAILED",
            error_message=last_error,
            attempts=attempts,
        )
