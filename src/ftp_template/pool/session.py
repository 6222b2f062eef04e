"""Pooled FTP session handle."""

import ftplib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from ftp_template.config.settings import TransferMode


class SessionState(str, Enum):
    """Lifecycle state of a pooled session."""

    IDLE = "idle"
    BORROWED = "borrowed"
    INVALID = "invalid"


def _new_session_id() -> str:
    return uuid.uuid4().hex[:8]


@dataclass(eq=False)
class FTPSession:
    """An authenticated FTP connection owned by a pool.

    Identity semantics (``eq=False``) keep two sessions distinct even when
    they talk to the same server, so pools can track them in sets.
    """

    client: ftplib.FTP = field(repr=False)
    address: str
    buffer_size: int = 1024
    transfer_mode: TransferMode = TransferMode.ASCII
    session_id: str = field(default_factory=_new_session_id)
    _state: SessionState = field(default=SessionState.IDLE)
    _created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _last_used_at: Optional[datetime] = field(default=None)
    _borrow_count: int = field(default=0)

    @property
    def state(self) -> SessionState:
        """Get current session state."""
        return self._state

    @property
    def is_valid(self) -> bool:
        """Check if the session has not been invalidated."""
        return self._state != SessionState.INVALID

    @property
    def is_connected(self) -> bool:
        """Check if the control connection socket is still open."""
        return self.is_valid and getattr(self.client, "sock", None) is not None

    @property
    def created_at(self) -> datetime:
        """Get session creation time."""
        return self._created_at

    @property
    def last_used_at(self) -> Optional[datetime]:
        """Get last borrow or release time."""
        return self._last_used_at

    @property
    def borrow_count(self) -> int:
        """Get how many times the session has been borrowed."""
        return self._borrow_count

    def mark_borrowed(self) -> None:
        self._state = SessionState.BORROWED
        self._borrow_count += 1
        self._last_used_at = datetime.now(timezone.utc)

    def mark_idle(self) -> None:
        self._state = SessionState.IDLE
        self._last_used_at = datetime.now(timezone.utc)

    def mark_invalid(self) -> None:
        self._state = SessionState.INVALID

    def to_dict(self) -> dict:
        """Convert session info to dictionary.

        Returns:
            Dictionary with session information.
        """
        return {
            "session_id": self.session_id,
            "address": self.address,
            "transfer_mode": self.transfer_mode.value,
            "state": self._state.value,
            "created_at": self._created_at.isoformat(),
            "last_used_at": self._last_used_at.isoformat() if self._last_used_at else None,
            "borrow_count": self._borrow_count,
        }
