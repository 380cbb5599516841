from __future__ import annotations

from datetime import UTC, datetime, timedelta

from pygeotrack.models import Coordinate

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


def make_coordinate(
    latitude: float = 10.0,
    longitude: float = 20.0,
    *,
    accuracy: float | None = 5.0,
    seconds: float = 0.0,
) -> Coordinate:
    return Coordinate(
        latitude=latitude,
        longitude=longitude,
        accuracy=accuracy,
        timestamp=BASE_TIME + timedelta(seconds=seconds),
    )
