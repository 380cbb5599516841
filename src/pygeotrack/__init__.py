"""pygeotrack - Async location tracking with Kalman smoothing and MQTT delivery."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pygeotrack")
except PackageNotFoundError:
    __version__ = "0+local"
from pygeotrack.channel import ChannelEvent, DeliveryChannel
from pygeotrack.config import ChannelConfig, EstimatorConfig, GeoTrackConfig, QueueConfig, TrackingOptions
from pygeotrack.device import DeviceProbe, NullDeviceProbe, StaticDeviceProbe
from pygeotrack.estimator import KalmanFilter
from pygeotrack.exceptions import (
    ChannelConnectionError,
    ChannelError,
    GeoTrackConfigError,
    GeoTrackError,
    PermissionDeniedError,
    PositionError,
    PositionTimeoutError,
    PositionUnavailableError,
    TrackingCancelledError,
)
from pygeotrack.models import (
    ChannelMessage,
    Coordinate,
    EstimatorState,
    LocationUpdate,
    MessageType,
    NetworkType,
    QueueEntry,
)
from pygeotrack.offline_queue import OfflineQueue
from pygeotrack.sources import (
    HttpPositionSource,
    ManualPositionSource,
    PermissionState,
    PositionErrorKind,
    PositionFailure,
    PositionFix,
    PositionResult,
    PositionSource,
    ReplayPositionSource,
)
from pygeotrack.tracker import LocationTracker, TrackingState

__all__ = [
    "__version__",
    "ChannelConfig",
    "ChannelConnectionError",
    "ChannelError",
    "ChannelEvent",
    "ChannelMessage",
    "Coordinate",
    "DeliveryChannel",
    "DeviceProbe",
    "EstimatorConfig",
    "EstimatorState",
    "GeoTrackConfig",
    "GeoTrackConfigError",
    "GeoTrackError",
    "HttpPositionSource",
    "KalmanFilter",
    "LocationTracker",
    "LocationUpdate",
    "ManualPositionSource",
    "MessageType",
    "NetworkType",
    "NullDeviceProbe",
    "OfflineQueue",
    "PermissionDeniedError",
    "PermissionState",
    "PositionError",
    "PositionErrorKind",
    "PositionFailure",
    "PositionFix",
    "PositionResult",
    "PositionSource",
    "PositionTimeoutError",
    "PositionUnavailableError",
    "QueueConfig",
    "QueueEntry",
    "ReplayPositionSource",
    "StaticDeviceProbe",
    "TrackingCancelledError",
    "TrackingOptions",
    "TrackingState",
]
