"""Constant-velocity Kalman filter for GPS coordinate smoothing.

State vector: ``[lat, lon, lat_velocity, lon_velocity]`` in degrees and
degrees per second.  Only position is measured, so ``H`` selects the first
two state components.  Measurement noise adapts to the accuracy each
reading reports: a less trustworthy reading pulls the estimate less.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime

from pygeotrack._algebra import (
    SINGULAR_EPSILON,
    Matrix,
    Vector,
    determinant_2x2,
    diagonal,
    identity,
    invert_2x2,
    mat_add,
    mat_mul,
    mat_sub,
    mat_vec,
    transpose,
    vec_add,
    vec_sub,
)
from pygeotrack.config import EstimatorConfig
from pygeotrack.models.coordinate import Coordinate
from pygeotrack.models.state import EstimatorState

_logger = logging.getLogger(__name__)

#: Meters per degree of latitude (and of longitude at the equator).
METERS_PER_DEGREE = 111_000.0

#: Bounds for the prediction step, in seconds.
MIN_TIME_STEP = 0.1
MAX_TIME_STEP = 10.0
#: Step used when consecutive readings carry no usable timestamps.
DEFAULT_TIME_STEP = 1.0

_H: Matrix = ((1.0, 0.0, 0.0, 0.0), (0.0, 1.0, 0.0, 0.0))
_H_T: Matrix = transpose(_H)
_I4: Matrix = identity(4)


def _transition(dt: float) -> Matrix:
    return (
        (1.0, 0.0, dt, 0.0),
        (0.0, 1.0, 0.0, dt),
        (0.0, 0.0, 1.0, 0.0),
        (0.0, 0.0, 0.0, 1.0),
    )


def _normalize_longitude(lon: float) -> float:
    if -180.0 <= lon <= 180.0:
        return lon
    return (lon + 180.0) % 360.0 - 180.0


class KalmanFilter:
    """Recursive position estimator for one tracked entity.

    Usage::

        kf = KalmanFilter()
        for raw in readings:
            filtered = kf.filter(raw)

    Not safe for concurrent use: callers must feed readings one at a time
    in arrival order.
    """

    def __init__(self, config: EstimatorConfig | None = None) -> None:
        self._config = config or EstimatorConfig()
        self._q: Matrix = diagonal(self._config.process_noise, 4)
        self._x: Vector = (0.0, 0.0, 0.0, 0.0)
        self._p: Matrix = diagonal(self._config.estimation_error, 4)
        self._accuracy = 0.0
        self._last_timestamp: datetime | None = None
        self._initialized = False

    @property
    def config(self) -> EstimatorConfig:
        return self._config

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self, raw: Coordinate) -> None:
        """Seed the state directly from a raw reading with zero velocity."""
        self._x = (raw.latitude, raw.longitude, 0.0, 0.0)
        self._p = diagonal(self._config.estimation_error, 4)
        self._accuracy = self._reading_accuracy(raw)
        self._last_timestamp = raw.timestamp
        self._initialized = True

    def reset(self) -> None:
        """Return to the uninitialized state with default covariance.

        Call whenever tracking restarts so a previous trajectory does not
        bias the new one.
        """
        self._x = (0.0, 0.0, 0.0, 0.0)
        self._p = diagonal(self._config.estimation_error, 4)
        self._accuracy = 0.0
        self._last_timestamp = None
        self._initialized = False

    def filter(self, raw: Coordinate) -> Coordinate:
        """Fold a raw reading into the estimate and return the filtered coordinate.

        The first reading after construction or :meth:`reset` only
        initializes the state and is returned as-is (accuracy clamped).
        """
        if not self._initialized:
            self.initialize(raw)
            return raw.model_copy(update={"accuracy": self._clamp_accuracy(self._accuracy)})

        dt = self._time_step(raw.timestamp)
        self._predict(dt)
        self._update((raw.latitude, raw.longitude), self._reading_accuracy(raw))
        self._last_timestamp = raw.timestamp

        lat, lon = self._x[0], self._x[1]
        return Coordinate(
            latitude=max(-90.0, min(90.0, lat)),
            longitude=_normalize_longitude(lon),
            accuracy=self._clamp_accuracy(self._accuracy),
            timestamp=raw.timestamp,
            altitude=raw.altitude,
            heading=raw.heading,
            speed=self.speed,
        )

    @property
    def speed(self) -> float:
        """Ground speed in m/s derived from the estimated velocity."""
        lat_velocity_ms = self._x[2] * METERS_PER_DEGREE
        lon_velocity_ms = self._x[3] * METERS_PER_DEGREE * math.cos(math.radians(self._x[0]))
        return math.hypot(lat_velocity_ms, lon_velocity_ms)

    def get_state(self) -> EstimatorState:
        return EstimatorState(
            initialized=self._initialized,
            latitude=self._x[0],
            longitude=self._x[1],
            latitude_velocity=self._x[2],
            longitude_velocity=self._x[3],
            covariance=self._p,
            accuracy=self._accuracy,
            last_timestamp=self._last_timestamp,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _reading_accuracy(self, raw: Coordinate) -> float:
        return raw.accuracy if raw.accuracy is not None else self._config.default_accuracy

    def _clamp_accuracy(self, accuracy: float) -> float:
        return min(accuracy, self._config.accuracy_ceiling)

    def _time_step(self, timestamp: datetime | None) -> float:
        if timestamp is None or self._last_timestamp is None:
            return DEFAULT_TIME_STEP
        elapsed = (timestamp - self._last_timestamp).total_seconds()
        return max(MIN_TIME_STEP, min(MAX_TIME_STEP, elapsed))

    def _predict(self, dt: float) -> None:
        f = _transition(dt)
        self._x = mat_vec(f, self._x)
        self._p = mat_add(mat_mul(mat_mul(f, self._p), transpose(f)), self._q)

    def _update(self, measurement: Vector, accuracy: float) -> None:
        r = self._config.measurement_noise * accuracy * accuracy / 10.0
        r_matrix: Matrix = ((r, 0.0), (0.0, r))

        det_r = determinant_2x2(r_matrix)
        if accuracy <= 0 or not math.isfinite(det_r) or det_r < SINGULAR_EPSILON:
            _logger.warning("Degenerate measurement noise (accuracy=%s); skipping correction", accuracy)
            self._refresh_accuracy()
            return

        d_lat, d_lon = vec_sub(measurement, mat_vec(_H, self._x))
        # Crossing the antimeridian must not look like a 360 degree jump.
        innovation: Vector = (d_lat, _normalize_longitude(d_lon))
        p_h_t = mat_mul(self._p, _H_T)
        s = mat_add(mat_mul(_H, p_h_t), r_matrix)
        s_inv, singular = invert_2x2(s)
        if singular:
            _logger.warning("Singular innovation covariance; skipping correction")
            self._refresh_accuracy()
            return

        gain = mat_mul(p_h_t, s_inv)
        lat, lon, v_lat, v_lon = vec_add(self._x, mat_vec(gain, innovation))
        self._x = (lat, _normalize_longitude(lon), v_lat, v_lon)
        self._p = mat_mul(mat_sub(_I4, mat_mul(gain, _H)), self._p)
        self._refresh_accuracy()

    def _refresh_accuracy(self) -> None:
        self._accuracy = math.sqrt(max(0.0, self._p[0][0] + self._p[1][1])) * METERS_PER_DEGREE
