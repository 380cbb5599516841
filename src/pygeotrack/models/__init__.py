"""Data models for position estimation and delivery."""

from pygeotrack.models._base import GeoBaseModel, Timestamp, parse_timestamp
from pygeotrack.models.coordinate import Coordinate
from pygeotrack.models.state import EstimatorState, Matrix4
from pygeotrack.models.update import ChannelMessage, LocationUpdate, MessageType, NetworkType, QueueEntry

__all__ = [
    "ChannelMessage",
    "Coordinate",
    "EstimatorState",
    "GeoBaseModel",
    "LocationUpdate",
    "Matrix4",
    "MessageType",
    "NetworkType",
    "QueueEntry",
    "Timestamp",
    "parse_timestamp",
]
