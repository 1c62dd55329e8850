"""Error taxonomy for napsync.

Transient sensor and link problems are absorbed internally; only the
exceptions below ever cross a component boundary.
"""

from __future__ import annotations

import logging

logger = logging.getLogger("napsync")


class NapSyncError(Exception):
    """Base class for all napsync errors."""


class LoggedError(NapSyncError):
    """Error that records its message on the package logger when raised."""

    log_level = logging.ERROR

    def __init__(self, message: str) -> None:
        logger.log(self.log_level, message)
        super().__init__(message)


class OutOfOrderSample(LoggedError):
    """A sample's timestamp is not later than the previously ingested one."""

    log_level = logging.WARNING

    def __init__(self, timestamp: float, last_timestamp: float) -> None:
        self.timestamp = timestamp
        self.last_timestamp = last_timestamp
        super().__init__(
            f"rejected sample at t={timestamp:.3f}: not after last sample t={last_timestamp:.3f}"
        )


class InvalidTransition(LoggedError):
    """The state machine was asked for a transition its current state forbids."""

    def __init__(
        self, current: object, requested: object, detail: str = "", aborted: object = None
    ) -> None:
        self.current = current
        self.requested = requested
        # transition that aborted the session as a consequence, if any
        self.aborted = aborted
        msg = f"invalid transition {current} -> {requested}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class SessionActiveError(NapSyncError):
    """A nap was scheduled while another session is still live."""


class LinkDeliveryFailed(NapSyncError):
    """A message went unacknowledged through every retry."""

    def __init__(self, seq: int, attempts: int, kind: object = None) -> None:
        self.seq = seq
        self.attempts = attempts
        self.kind = kind
        label = f" {kind}" if kind is not None else ""
        super().__init__(f"message{label} seq={seq} not acknowledged after {attempts} attempt(s)")


class WireFormatError(NapSyncError):
    """A frame could not be decoded."""
