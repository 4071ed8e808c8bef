"""Exception types raised by transfer sessions."""
from __future__ import annotations


class SessionError(Exception):
    """Base exception type for session errors."""

    pass


class SessionBusyError(SessionError):
    """A session was started while another one is in flight."""

    pass


class SessionCancelledError(SessionError):
    """The session was cancelled before the transfer finished."""

    pass


class ConfigError(Exception):
    """A configuration file could not be read or is invalid."""

    pass
