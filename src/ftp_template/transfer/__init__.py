"""Transfer service module."""

from ftp_template.transfer.models import (
    TransferOperation,
    TransferRequest,
    TransferResult,
    TransferStatus,
)
from ftp_template.transfer.service import TransferService

__all__ = [
    "TransferOperation",
    "TransferRequest",
    "TransferResult",
    "TransferService",
    "TransferStatus",
]
