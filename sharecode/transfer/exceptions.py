"""Exception types raised while moving a file over a data channel."""
from __future__ import annotations


class TransferError(Exception):
    """Base exception type for file transfer errors."""

    pass


class MetadataDecodeError(TransferError):
    """A text message could not be decoded into file metadata."""

    pass


class TransferSizeError(TransferError):
    """More bytes arrived than the file metadata declared."""

    pass


class TransportClosedError(TransferError):
    """The data channel closed before the transfer finished."""

    pass
