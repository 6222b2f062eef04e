"""Transfer request and result models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional
import uuid


class TransferOperation(str, Enum):
    """Kind of transfer operation."""

    UPLOAD = "upload"  # local -> remote
    DOWNLOAD = "download"  # remote -> local
    DELETE = "delete"


class TransferStatus(str, Enum):
    """Outcome of a transfer operation."""

    SUCCESS = "success"
    FAILED = "failed"
    NOT_FOUND = "not_found"


def _new_request_id() -> str:
    return str(uuid.uuid4())


@dataclass
class TransferRequest:
    """A single upload, download or delete call."""

    operation: TransferOperation
    remote_dir: Optional[str]
    file_name: Optional[str] = None
    local_path: Optional[Path] = None
    retry_count: Optional[int] = None
    request_id: str = field(default_factory=_new_request_id)

    @classmethod
    def upload(
        cls,
        local_file: Optional[str | Path],
        remote_dir: Optional[str],
        retry_count: Optional[int] = None,
    ) -> "TransferRequest":
        """Build an upload request; the remote name is the local basename."""
        local_path = Path(local_file) if local_file is not None else None
        return cls(
            operation=TransferOperation.UPLOAD,
            remote_dir=remote_dir,
            file_name=local_path.name if local_path is not None else None,
            local_path=local_path,
            retry_count=retry_count,
        )

    @classmethod
    def download(
        cls,
        remote_dir: Optional[str],
        file_name: Optional[str],
        local_dir: Optional[str | Path],
        retry_count: Optional[int] = None,
    ) -> "TransferRequest":
        """Build a download request into ``local_dir``."""
        return cls(
            operation=TransferOperation.DOWNLOAD,
            remote_dir=remote_dir,
            file_name=file_name,
            local_path=Path(local_dir) if local_dir else None,
            retry_count=retry_count,
        )

    @classmethod
    def delete(
        cls,
        remote_dir: Optional[str],
        file_name: Optional[str],
        retry_count: Optional[int] = None,
    ) -> "TransferRequest":
        """Build a delete request."""
        return cls(
            operation=TransferOperation.DELETE,
            remote_dir=remote_dir,
            file_name=file_name,
            retry_count=retry_count,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary.

        Returns:
            Dictionary representation of the request.
        """
        return {
            "request_id": self.request_id,
            "operation": self.operation.value,
            "remote_dir": self.remote_dir,
            "file_name": self.file_name,
            "local_path": str(self.local_path) if self.local_path else None,
            "retry_count": self.retry_count,
        }


@dataclass
class TransferResult:
    """Result of a transfer request."""

    request_id: str
    operation: TransferOperation
    status: TransferStatus
    remote_dir: Optional[str]
    file_name: Optional[str]
    local_path: Optional[Path] = None
    attempts: int = 0
    bytes_transferred: int = 0
    duration_ms: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def succeeded(self) -> bool:
        """Check if the operation succeeded."""
        return self.status == TransferStatus.SUCCESS

    def __bool__(self) -> bool:
        return self.succeeded

    @classmethod
    def success(
        cls,
        request: TransferRequest,
        attempts: int,
        bytes_transferred: int = 0,
        local_path: Optional[Path] = None,
        duration_ms: int = 0,
    ) -> "TransferResult":
        """Create a success result.

        Args:
            request: The completed request.
            attempts: Number of protocol attempts made.
            bytes_transferred: Number of bytes transferred.
            local_path: Local file written or read, if any.
            duration_ms: Duration in milliseconds.

        Returns:
            TransferResult indicating success.
        """
        return cls(
            request_id=request.request_id,
            operation=request.operation,
            status=TransferStatus.SUCCESS,
            remote_dir=request.remote_dir,
            file_name=request.file_name,
            local_path=local_path or request.local_path,
            attempts=attempts,
            bytes_transferred=bytes_transferred,
            duration_ms=duration_ms,
        )

    @classmethod
    def failure(
        cls,
        request: TransferRequest,
        error_code: str,
        error_message: str,
        attempts: int = 0,
        duration_ms: int = 0,
        status: TransferStatus = TransferStatus.FAILED,
    ) -> "TransferResult":
        """Create a failure result.

        Args:
            request: The failed request.
            error_code: Error code.
            error_message: Error message.
            attempts: Number of protocol attempts made.
            duration_ms: Duration in milliseconds.
            status: FAILED, or NOT_FOUND for a missing remote file.

        Returns:
            TransferResult indicating failure.
        """
        return cls(
            request_id=request.request_id,
            operation=request.operation,
            status=status,
            remote_dir=request.remote_dir,
            file_name=request.file_name,
            local_path=request.local_path,
            attempts=attempts,
            duration_ms=duration_ms,
            error_code=error_code,
            error_message=error_message,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary.

        Returns:
            Dictionary representation of the result.
        """
        result = {
            "request_id": self.request_id,
            "operation": self.operation.value,
            "status": self.status.value,
            "remote_dir": self.remote_dir,
            "file_name": self.file_name,
            "local_path": str(self.local_path) if self.local_path else None,
            "attempts": self.attempts,
            "bytes_transferred": self.bytes_transferred,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }

        if self.error_code:
            result["error_code"] = self.error_code
        if self.error_message:
            result["error_message"] = self.error_message

        return result
