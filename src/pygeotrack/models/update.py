"""Delivery-side models: location updates, queue entries and wire envelopes."""

from __future__ import annotations

import uuid
from enum import StrEnum
from typing import Any

from pydantic import Field, field_validator

from pygeotrack.models._base import GeoBaseModel, Timestamp, utcnow
from pygeotrack.models.coordinate import Coordinate


class NetworkType(StrEnum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    GPS = "gps"


class MessageType(StrEnum):
    LOCATION_UPDATE = "location_update"
    JOIN_ASSET_TRACKING = "join_asset_tracking"
    GEOFENCE_ALERT = "geofence_alert"


class LocationUpdate(GeoBaseModel):
    """A filtered coordinate ready for delivery.

    Created once per accepted reading and consumed by exactly one of the
    delivery channel or the offline queue.
    """

    entity_id: str
    coordinate: Coordinate
    battery_level: float | None = Field(default=None, ge=0.0, le=100.0)
    network_type: NetworkType | None = None

    @field_validator("entity_id")
    @classmethod
    def _normalize_entity_id(cls, value: str) -> str:
        entity_id = value.strip()
        if not entity_id:
            raise ValueError("entity_id must be non-empty")
        return entity_id


class QueueEntry(GeoBaseModel):
    """A location update waiting in the offline queue."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    update: LocationUpdate
    enqueued_at: Timestamp = Field(default_factory=utcnow)


class ChannelMessage(GeoBaseModel):
    """Envelope published on the delivery channel."""

    type: MessageType
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: Timestamp = Field(default_factory=utcnow)

    @classmethod
    def for_update(cls, update: LocationUpdate) -> ChannelMessage:
        return cls(
            type=MessageType.LOCATION_UPDATE,
            payload=update.model_dump(mode="json", by_alias=True, exclude_none=True),
        )

    @classmethod
    def join(cls, entity_id: str) -> ChannelMessage:
        return cls(type=MessageType.JOIN_ASSET_TRACKING, payload={"entityId": entity_id})

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
