"""Exception types raised by record stores and signaling."""
from __future__ import annotations


class RecordStoreError(Exception):
    """Base exception type for record store errors."""

    pass


class StoreAuthenticationError(RecordStoreError):
    """The record store rejected the provided credentials.

    This error is fatal for the session and is not retried.
    """

    pass


class StoreUnavailableError(RecordStoreError):
    """The record store could not be reached."""

    pass


class RecordExistsError(RecordStoreError):
    """A record already exists for the share code."""

    pass


class RecordNotFoundError(RecordStoreError):
    """No record exists for the share code."""

    pass


class RecordConflictError(RecordStoreError):
    """A write-once field of a record was written with a different value."""

    pass


class RecordDecodeError(RecordStoreError):
    """Stored data could not be decoded into a record."""

    pass


class InvalidShareCodeError(ValueError):
    """A share code is not of the expected form."""

    pass


class ShareCodeExhaustedError(RecordStoreError):
    """No unused share code was found in the allowed number of attempts."""

    pass


class SignalingError(Exception):
    """Error negotiating a connection through the record store."""

    pass
