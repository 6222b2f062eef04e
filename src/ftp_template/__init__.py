"""Pooled, retrying FTP file transfers."""

from ftp_template.config.settings import SessionConfig, TransferMode
from ftp_template.errors import (
    FTPTemplateError,
    InvalidArgumentError,
    InvalidSessionError,
    LocalIOError,
    PoolClosedError,
    PoolExhaustedError,
    SessionConnectionError,
)
from ftp_template.pool.manager import SessionPool, close_pool, open_pool
from ftp_template.transfer.service import TransferService

__version__ = "0.1.0"

__all__ = [
    "FTPTemplateError",
    "InvalidArgumentError",
    "InvalidSessionError",
    "LocalIOError",
    "PoolClosedError",
    "PoolExhaustedError",
    "SessionConfig",
    "SessionConnectionError",
    "SessionPool",
    "TransferMode",
    "TransferService",
    "close_pool",
    "open_pool",
]
