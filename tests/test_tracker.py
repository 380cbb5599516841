from __future__ import annotations

import asyncio

import pytest

from pygeotrack.config import GeoTrackConfig, TrackingOptions
from pygeotrack.device import StaticDeviceProbe
from pygeotrack.exceptions import (
    ChannelConnectionError,
    PermissionDeniedError,
    PositionTimeoutError,
    TrackingCancelledError,
)
from pygeotrack.models import LocationUpdate, NetworkType
from pygeotrack.sources import ManualPositionSource, PermissionState, PositionErrorKind, PositionFailure
from pygeotrack.tracker import LocationTracker, TrackingState
from tests._factories import make_coordinate
from tests._fakes import FakeChannelFactory


async def _drain(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _tracker(
    source: ManualPositionSource,
    channels: FakeChannelFactory,
    **kwargs: object,
) -> LocationTracker:
    return LocationTracker(source, GeoTrackConfig(), channel_factory=channels, **kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_start_tracking_delivers_filtered_updates() -> None:
    source = ManualPositionSource()
    channels = FakeChannelFactory()
    updates: list[LocationUpdate] = []
    tracker = _tracker(source, channels, on_update=updates.append)

    await tracker.start_tracking("asset-1")
    assert tracker.state == TrackingState.TRACKING
    assert tracker.is_tracking
    assert tracker.entity_id == "asset-1"
    assert channels.last.entity_id == "asset-1"

    source.push_reading(make_coordinate(10.0, 20.0, accuracy=40.0, seconds=0))
    source.push_reading(make_coordinate(10.0001, 20.0, accuracy=5.0, seconds=1))
    await _drain()

    sent = channels.last.sent
    assert [u.entity_id for u in sent] == ["asset-1", "asset-1"]
    assert sent[0].coordinate.accuracy == 5.0
    assert 10.0 < sent[1].coordinate.latitude < 10.0001
    assert updates == sent
    assert tracker.last_update_time is not None
    assert tracker.filter_state.initialized

    await tracker.stop_tracking()
    assert tracker.state == TrackingState.IDLE
    assert tracker.entity_id is None
    assert source.active_watches == 0
    assert not channels.last.connected


@pytest.mark.asyncio
async def test_double_start_leaves_one_watch_and_one_channel() -> None:
    source = ManualPositionSource()
    channels = FakeChannelFactory()
    tracker = _tracker(source, channels)

    await tracker.start_tracking("asset-1")
    await tracker.start_tracking("asset-2")

    assert source.active_watches == 1
    assert len(channels.connected) == 1
    assert channels.connected[0].entity_id == "asset-2"
    assert tracker.entity_id == "asset-2"

    await tracker.stop_tracking()
    assert channels.connected == []


@pytest.mark.asyncio
async def test_permission_denied_fails_start() -> None:
    source = ManualPositionSource(permission=PermissionState.DENIED)
    channels = FakeChannelFactory()
    tracker = _tracker(source, channels)

    with pytest.raises(PermissionDeniedError):
        await tracker.start_tracking("asset-1")

    assert tracker.state == TrackingState.IDLE
    assert channels.created == []
    assert source.active_watches == 0


@pytest.mark.asyncio
async def test_channel_failure_fails_start_and_releases() -> None:
    source = ManualPositionSource()
    channels = FakeChannelFactory(connect_error=ChannelConnectionError("down", attempts=5))
    tracker = _tracker(source, channels)

    with pytest.raises(ChannelConnectionError):
        await tracker.start_tracking("asset-1")

    assert tracker.state == TrackingState.IDLE
    assert source.active_watches == 0
    assert channels.last.disconnects == 1


@pytest.mark.asyncio
async def test_start_rejects_blank_entity() -> None:
    tracker = _tracker(ManualPositionSource(), FakeChannelFactory())
    with pytest.raises(ValueError):
        await tracker.start_tracking("  ")


@pytest.mark.asyncio
async def test_stop_from_idle_is_noop() -> None:
    tracker = _tracker(ManualPositionSource(), FakeChannelFactory())
    await tracker.stop_tracking()
    await tracker.stop_tracking()
    assert tracker.state == TrackingState.IDLE


@pytest.mark.asyncio
async def test_stop_during_start_cancels_setup() -> None:
    source = ManualPositionSource()
    channels = FakeChannelFactory(connect_delay=5.0)
    tracker = _tracker(source, channels)

    start = asyncio.create_task(tracker.start_tracking("asset-1"))
    await asyncio.sleep(0.01)
    assert tracker.state == TrackingState.STARTING

    await tracker.stop_tracking()

    with pytest.raises(TrackingCancelledError):
        await start
    assert tracker.state == TrackingState.IDLE
    assert source.active_watches == 0
    assert channels.connected == []


@pytest.mark.asyncio
async def test_updates_queue_while_disconnected_and_flush_on_reconnect() -> None:
    source = ManualPositionSource()
    channels = FakeChannelFactory()
    tracker = _tracker(source, channels)
    await tracker.start_tracking("asset-1")
    channel = channels.last

    channel.connected = False
    for i in range(3):
        source.push_reading(make_coordinate(10.0 + i * 1e-5, 20.0, seconds=i))
    await _drain()

    assert tracker.queued_updates == 3
    assert channel.sent == []

    await channel.reconnect()

    assert tracker.queued_updates == 0
    assert [u.coordinate.timestamp for u in channel.sent] == sorted(u.coordinate.timestamp for u in channel.sent)
    assert len(channel.sent) == 3
    await tracker.stop_tracking()


@pytest.mark.asyncio
async def test_channel_giving_up_mid_session_is_reported_and_updates_queue() -> None:
    source = ManualPositionSource()
    channels = FakeChannelFactory()
    failures: list[tuple[str, ChannelConnectionError]] = []
    tracker = _tracker(source, channels, on_channel_failure=lambda entity, err: failures.append((entity, err)))
    await tracker.start_tracking("asset-1")
    channel = channels.last

    error = ChannelConnectionError("gone", attempts=5)
    channel.connected = False
    assert channel.on_failure is not None
    channel.on_failure(error)

    assert failures == [("asset-1", error)]
    assert tracker.state == TrackingState.TRACKING

    source.push_reading(make_coordinate(10.0, 20.0, seconds=0))
    source.push_reading(make_coordinate(10.00001, 20.0, seconds=1))
    await _drain()
    assert tracker.queued_updates == 2
    assert channel.sent == []
    await tracker.stop_tracking()


@pytest.mark.asyncio
async def test_queued_updates_go_out_before_new_ones() -> None:
    source = ManualPositionSource()
    channels = FakeChannelFactory()
    tracker = _tracker(source, channels)
    await tracker.start_tracking("asset-1")
    channel = channels.last

    channel.connected = False
    source.push_reading(make_coordinate(10.0, 20.0, seconds=0))
    await _drain()
    channel.connected = True
    source.push_reading(make_coordinate(10.0, 20.0, seconds=1))
    await _drain()

    assert tracker.queued_updates == 0
    assert [u.coordinate.timestamp for u in channel.sent] == [
        make_coordinate(seconds=0).timestamp,
        make_coordinate(seconds=1).timestamp,
    ]
    await tracker.stop_tracking()


@pytest.mark.asyncio
async def test_stop_flushes_queue_before_disconnect() -> None:
    source = ManualPositionSource()
    channels = FakeChannelFactory()
    tracker = _tracker(source, channels)
    await tracker.start_tracking("asset-1")
    channel = channels.last

    channel.accept = False
    source.push_reading(make_coordinate(seconds=0))
    source.push_reading(make_coordinate(seconds=1))
    await _drain()
    assert tracker.queued_updates == 2

    channel.accept = True
    await tracker.stop_tracking()

    assert len(channel.sent) == 2
    assert tracker.queued_updates == 0
    assert not channel.connected


@pytest.mark.asyncio
async def test_position_errors_are_reported_without_update() -> None:
    source = ManualPositionSource()
    channels = FakeChannelFactory()
    errors: list[tuple[str, PositionFailure]] = []
    tracker = _tracker(source, channels, on_position_error=lambda e, f: errors.append((e, f)))
    await tracker.start_tracking("asset-1")

    source.push_error(PositionErrorKind.POSITION_UNAVAILABLE, "indoors")
    await _drain()

    assert errors == [("asset-1", PositionFailure(PositionErrorKind.POSITION_UNAVAILABLE, "indoors"))]
    assert channels.last.sent == []
    assert tracker.is_tracking
    await tracker.stop_tracking()


@pytest.mark.asyncio
async def test_device_metadata_is_attached() -> None:
    source = ManualPositionSource()
    channels = FakeChannelFactory()
    tracker = _tracker(source, channels, device_probe=StaticDeviceProbe(battery=55.0, network=NetworkType.WIFI))
    await tracker.start_tracking("asset-1")

    source.push_reading(make_coordinate())
    await _drain()

    update = channels.last.sent[0]
    assert update.battery_level == 55.0
    assert update.network_type == NetworkType.WIFI
    await tracker.stop_tracking()


@pytest.mark.asyncio
async def test_restart_resets_filter() -> None:
    source = ManualPositionSource()
    tracker = _tracker(source, FakeChannelFactory())
    await tracker.start_tracking("asset-1")
    source.push_reading(make_coordinate(10.0, 20.0))
    await _drain()
    assert tracker.filter_state.initialized

    await tracker.start_tracking("asset-1")
    assert not tracker.filter_state.initialized
    await tracker.stop_tracking()


@pytest.mark.asyncio
async def test_get_current_location_filters_one_shot_read() -> None:
    source = ManualPositionSource()
    tracker = _tracker(source, FakeChannelFactory())

    task = asyncio.create_task(tracker.get_current_location(TrackingOptions(timeout=1.0)))
    await _drain()
    source.push_reading(make_coordinate(1.0, 2.0, accuracy=30.0))
    coordinate = await task

    assert coordinate.latitude == 1.0
    assert coordinate.accuracy == 5.0


@pytest.mark.asyncio
async def test_get_current_location_raises_on_failure() -> None:
    tracker = _tracker(ManualPositionSource(), FakeChannelFactory())
    with pytest.raises(PositionTimeoutError):
        await tracker.get_current_location(TrackingOptions(timeout=0.05))


@pytest.mark.asyncio
async def test_context_manager_stops_tracking() -> None:
    source = ManualPositionSource()
    channels = FakeChannelFactory()
    async with _tracker(source, channels) as tracker:
        await tracker.start_tracking("asset-1")
        assert tracker.is_tracking
    assert tracker.state == TrackingState.IDLE
    assert source.active_watches == 0
