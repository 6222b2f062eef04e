"""Exception hierarchy for pooled FTP access."""


class FTPTemplateError(Exception):
    """Base class for all errors raised by this package."""


class SessionConnectionError(FTPTemplateError, ConnectionError):
    """Raised when connecting, logging in or negotiating a session fails."""

    def __init__(self, address: str, reason: str) -> None:
        self.address = address
        self.reason = reason
        super().__init__(f"Failed to open FTP session to {address}: {reason}")


class PoolExhaustedError(FTPTemplateError, TimeoutError):
    """Raised when no session becomes available within the wait timeout."""

    def __init__(self, max_size: int, timeout: float) -> None:
        self.max_size = max_size
        self.timeout = timeout
        super().__init__(
            f"No FTP session available within {timeout:.1f}s "
            f"(pool max_size={max_size})"
        )


class PoolClosedError(FTPTemplateError):
    """Raised when borrowing from a closed pool."""


class InvalidSessionError(FTPTemplateError):
    """Raised when releasing a session the pool does not hold as borrowed."""


class InvalidArgumentError(FTPTemplateError, ValueError):
    """Raised for blank or missing parameters, before any I/O happens."""


class LocalIOError(FTPTemplateError, OSError):
    """Raised when the local filesystem cannot be read or written."""
