"""Configuration for pygeotrack."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from typing import Any

from pygeotrack.exceptions import GeoTrackConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(env: Mapping[str, str], key: str, cast: type) -> Any:
    raw = env.get(key)
    if raw is None:
        return None
    try:
        return cast(raw)
    except ValueError as exc:
        raise GeoTrackConfigError(f"{key} must be a {cast.__name__}, got {raw!r}") from exc


@dataclasses.dataclass(frozen=True)
class EstimatorConfig:
    """Kalman filter tuning.

    Parameters
    ----------
    process_noise : float
        Diagonal of the process-noise matrix ``Q``.
    measurement_noise : float
        Scale of the adaptive measurement-noise matrix ``R``.  The
        variance used for a reading is
        ``measurement_noise * accuracy**2 / 10``.
    estimation_error : float
        Diagonal of the initial covariance ``P``.
    accuracy_ceiling : float
        Upper bound (meters) applied to every emitted accuracy.  This is a
        presentation clamp, not a claim about the true uncertainty.
    default_accuracy : float
        Accuracy (meters) assumed for readings that report none.
    """

    process_noise: float = 0.01
    measurement_noise: float = 0.1
    estimation_error: float = 1.0
    accuracy_ceiling: float = 5.0
    default_accuracy: float = 10.0

    def __post_init__(self) -> None:
        if self.process_noise < 0:
            raise GeoTrackConfigError("process_noise must be >= 0")
        if self.measurement_noise <= 0:
            raise GeoTrackConfigError("measurement_noise must be > 0")
        if self.estimation_error <= 0:
            raise GeoTrackConfigError("estimation_error must be > 0")
        if self.accuracy_ceiling <= 0:
            raise GeoTrackConfigError("accuracy_ceiling must be > 0")


@dataclasses.dataclass(frozen=True)
class TrackingOptions:
    """Options for continuous and one-shot position reads.

    ``timeout`` and ``maximum_age`` are in seconds.  A ``maximum_age`` of
    ``0`` demands a fresh reading.
    """

    enable_high_accuracy: bool = True
    timeout: float = 10.0
    maximum_age: float = 0.0


@dataclasses.dataclass(frozen=True)
class ChannelConfig:
    """Delivery channel (MQTT) settings.

    Parameters
    ----------
    host : str
        Broker hostname.
    port : int
        Broker port.
    topic_prefix : str
        Root of every topic used by the channel.
    client_id : str
        MQTT client id.  Empty means the broker assigns one.
    username, password : str or None
        Broker credentials.
    tls : bool
        Enable TLS with the system trust store.
    keepalive : int
        MQTT keepalive in seconds.
    connect_timeout : float
        Seconds to wait for the first successful connection.
    reconnect_attempts : int
        Consecutive failed attempts tolerated before giving up.
    reconnect_delay : float
        Fixed delay between attempts, in seconds.
    """

    host: str = "localhost"
    port: int = 1883
    topic_prefix: str = "pygeotrack"
    client_id: str = ""
    username: str | None = None
    password: str | None = None
    tls: bool = False
    keepalive: int = 60
    connect_timeout: float = 10.0
    reconnect_attempts: int = 5
    reconnect_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.reconnect_attempts < 1:
            raise GeoTrackConfigError("reconnect_attempts must be >= 1")
        if self.connect_timeout <= 0:
            raise GeoTrackConfigError("connect_timeout must be > 0")
        if self.reconnect_delay < 0:
            raise GeoTrackConfigError("reconnect_delay must be >= 0")


@dataclasses.dataclass(frozen=True)
class QueueConfig:
    """Offline queue bounds.

    When more than ``capacity`` updates are pending, only the most recent
    ``retain`` are kept.
    """

    capacity: int = 100
    retain: int = 50

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise GeoTrackConfigError("capacity must be >= 1")
        if not 0 < self.retain <= self.capacity:
            raise GeoTrackConfigError("retain must be in 1..capacity")


@dataclasses.dataclass(frozen=True)
class GeoTrackConfig:
    """Aggregate configuration for a :class:`LocationTracker`."""

    estimator: EstimatorConfig = dataclasses.field(default_factory=EstimatorConfig)
    channel: ChannelConfig = dataclasses.field(default_factory=ChannelConfig)
    queue: QueueConfig = dataclasses.field(default_factory=QueueConfig)
    tracking: TrackingOptions = dataclasses.field(default_factory=TrackingOptions)

    @classmethod
    def from_env(cls, **overrides: Any) -> GeoTrackConfig:
        """Create configuration from ``GEOTRACK_*`` environment variables.

        Explicit keyword arguments (``estimator``, ``channel``, ``queue``,
        ``tracking``) take precedence over environment values.  Each may be
        a config instance or a dict of field overrides.

        Raises
        ------
        GeoTrackConfigError
            If a numeric variable cannot be parsed or a value is out of range.
        """
        env = os.environ

        estimator_kwargs: dict[str, Any] = {}
        for env_key, field_name in {
            "GEOTRACK_PROCESS_NOISE": "process_noise",
            "GEOTRACK_MEASUREMENT_NOISE": "measurement_noise",
            "GEOTRACK_ESTIMATION_ERROR": "estimation_error",
            "GEOTRACK_ACCURACY_CEILING": "accuracy_ceiling",
        }.items():
            val = _env_number(env, env_key, float)
            if val is not None:
                estimator_kwargs[field_name] = val

        channel_kwargs: dict[str, Any] = {}
        for env_key, field_name in {
            "GEOTRACK_MQTT_HOST": "host",
            "GEOTRACK_MQTT_TOPIC_PREFIX": "topic_prefix",
            "GEOTRACK_MQTT_CLIENT_ID": "client_id",
            "GEOTRACK_MQTT_USERNAME": "username",
            "GEOTRACK_MQTT_PASSWORD": "password",
        }.items():
            val = env.get(env_key)
            if val is not None:
                channel_kwargs[field_name] = val
        for env_key, field_name, cast in (
            ("GEOTRACK_MQTT_PORT", "port", int),
            ("GEOTRACK_MQTT_KEEPALIVE", "keepalive", int),
            ("GEOTRACK_CONNECT_TIMEOUT", "connect_timeout", float),
            ("GEOTRACK_RECONNECT_ATTEMPTS", "reconnect_attempts", int),
            ("GEOTRACK_RECONNECT_DELAY", "reconnect_delay", float),
        ):
            val = _env_number(env, env_key, cast)
            if val is not None:
                channel_kwargs[field_name] = val
        if "GEOTRACK_MQTT_TLS" in env:
            channel_kwargs["tls"] = _env_bool(env.get("GEOTRACK_MQTT_TLS"), False)

        queue_kwargs: dict[str, Any] = {}
        for env_key, field_name in {
            "GEOTRACK_QUEUE_CAPACITY": "capacity",
            "GEOTRACK_QUEUE_RETAIN": "retain",
        }.items():
            val = _env_number(env, env_key, int)
            if val is not None:
                queue_kwargs[field_name] = val

        tracking_kwargs: dict[str, Any] = {}
        if "GEOTRACK_HIGH_ACCURACY" in env:
            tracking_kwargs["enable_high_accuracy"] = _env_bool(env.get("GEOTRACK_HIGH_ACCURACY"), True)
        for env_key, field_name in {
            "GEOTRACK_POSITION_TIMEOUT": "timeout",
            "GEOTRACK_MAXIMUM_AGE": "maximum_age",
        }.items():
            val = _env_number(env, env_key, float)
            if val is not None:
                tracking_kwargs[field_name] = val

        sections: dict[str, tuple[type, dict[str, Any]]] = {
            "estimator": (EstimatorConfig, estimator_kwargs),
            "channel": (ChannelConfig, channel_kwargs),
            "queue": (QueueConfig, queue_kwargs),
            "tracking": (TrackingOptions, tracking_kwargs),
        }
        config_kwargs: dict[str, Any] = {}
        for name, (section_cls, kwargs) in sections.items():
            override = overrides.pop(name, None)
            if isinstance(override, section_cls):
                config_kwargs[name] = override
                continue
            if isinstance(override, dict):
                kwargs.update(override)
            config_kwargs[name] = section_cls(**kwargs)

        if overrides:
            raise GeoTrackConfigError(f"Unknown configuration sections: {sorted(overrides)}")
        return cls(**config_kwargs)
