"""FTP Session Pool module."""

from ftp_template.pool.factory import SessionFactory
from ftp_template.pool.manager import SessionPool, close_pool, open_pool
from ftp_template.pool.session import FTPSession, SessionState

__all__ = [
    "FTPSession",
    "SessionFactory",
    "SessionPool",
    "SessionState",
    "close_pool",
    "open_pool",
]
