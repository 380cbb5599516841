"""Coordinate model."""

from __future__ import annotations

from pydantic import AliasChoices, Field

from pygeotrack.models._base import GeoBaseModel, Timestamp, utcnow


class Coordinate(GeoBaseModel):
    """A single position reading, raw or filtered.

    Parameters
    ----------
    latitude : float
        Latitude in degrees.
    longitude : float
        Longitude in degrees.
    accuracy : float or None
        Horizontal accuracy radius in meters.  ``None`` when the source
        did not report one.
    timestamp : datetime
        UTC time of the reading.  Epoch seconds or milliseconds are
        accepted on input.
    altitude : float or None
        Altitude in meters.
    heading : float or None
        Heading in degrees.
    speed : float or None
        Ground speed in m/s.
    """

    latitude: float = Field(
        ge=-90.0,
        le=90.0,
        validation_alias=AliasChoices("latitude", "lat", "gpsLatitude"),
    )
    longitude: float = Field(
        ge=-180.0,
        le=180.0,
        validation_alias=AliasChoices("longitude", "lng", "lon", "gpsLongitude"),
    )
    accuracy: float | None = Field(
        default=None,
        allow_inf_nan=False,
        validation_alias=AliasChoices("accuracy", "acc", "horizontalAccuracy"),
    )
    timestamp: Timestamp = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("timestamp", "time", "gpsTimestamp"),
    )
    altitude: float | None = Field(default=None, validation_alias=AliasChoices("altitude", "alt"))
    heading: float | None = Field(default=None, validation_alias=AliasChoices("heading", "bearing", "course", "direction"))
    speed: float | None = Field(default=None, validation_alias=AliasChoices("speed",))
