"""Custom exception hierarchy for pygeotrack."""

from __future__ import annotations


class GeoTrackError(Exception):
    """Base exception for all pygeotrack errors."""


class GeoTrackConfigError(GeoTrackError):
    """Invalid or missing configuration."""


class PositionError(GeoTrackError):
    """A position read could not produce a coordinate."""


class PermissionDeniedError(PositionError):
    """Access to the positioning capability was refused.

    Fatal to session start: raised synchronously from
    :meth:`LocationTracker.start_tracking`.
    """


class PositionUnavailableError(PositionError):
    """The positioning capability could not produce a fix."""


class PositionTimeoutError(PositionError):
    """A position read did not complete within its deadline."""


class ChannelError(GeoTrackError):
    """Delivery channel failure."""


class ChannelConnectionError(ChannelError):
    """The delivery channel could not connect.

    Raised only after the bounded reconnect attempts are exhausted or the
    connect deadline expires.
    """

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


class TrackingCancelledError(GeoTrackError):
    """Session setup was cancelled by a concurrent ``stop_tracking()``."""
