"""Estimator state snapshot model."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from pygeotrack.models._base import GeoBaseModel

Matrix4 = tuple[
    tuple[float, float, float, float],
    tuple[float, float, float, float],
    tuple[float, float, float, float],
    tuple[float, float, float, float],
]


class EstimatorState(GeoBaseModel):
    """Read-only snapshot of a Kalman filter.

    Velocities are in degrees per second.  ``accuracy`` is the
    covariance-derived radius in meters before the presentation clamp.
    """

    initialized: bool = False
    latitude: float = 0.0
    longitude: float = 0.0
    latitude_velocity: float = 0.0
    longitude_velocity: float = 0.0
    covariance: Matrix4
    accuracy: float = 0.0
    last_timestamp: datetime | None = Field(default=None)
