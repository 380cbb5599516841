"""Tracking orchestrator: position source -> Kalman filter -> channel or offline queue."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol

from pygeotrack.channel import ChannelEvent, DeliveryChannel
from pygeotrack.config import GeoTrackConfig, TrackingOptions
from pygeotrack.device import DeviceProbe, NullDeviceProbe, read_device_metadata
from pygeotrack.estimator import KalmanFilter
from pygeotrack.exceptions import ChannelConnectionError, TrackingCancelledError
from pygeotrack.models._base import utcnow
from pygeotrack.models.coordinate import Coordinate
from pygeotrack.models.state import EstimatorState
from pygeotrack.models.update import LocationUpdate
from pygeotrack.offline_queue import OfflineQueue
from pygeotrack.sources import PositionFailure, PositionResult, PositionSource

_logger = logging.getLogger(__name__)


class TrackingState(StrEnum):
    IDLE = "idle"
    STARTING = "starting"
    TRACKING = "tracking"
    STOPPING = "stopping"


class Channel(Protocol):
    """Structural interface of the delivery channel used by the tracker."""

    @property
    def is_connected(self) -> bool: ...

    async def connect(self, entity_id: str) -> None: ...

    async def disconnect(self) -> None: ...

    def send_location(self, update: LocationUpdate) -> bool: ...


ChannelFactory = Callable[..., Channel]


class LocationTracker:
    """Owns one tracking session at a time.

    Usage::

        async with LocationTracker(source, config) as tracker:
            await tracker.start_tracking("asset-1")
            ...

    Each instance holds a single :class:`KalmanFilter`, reset whenever a
    session starts, and an :class:`OfflineQueue` that buffers updates while
    the channel is down.  Readings are processed by one consumer task in
    arrival order.

    A channel that exhausts its reconnect attempts mid-session stays down;
    *on_channel_failure* is called with the entity id and the error, and
    updates keep accumulating in the queue until the session is restarted.
    """

    def __init__(
        self,
        source: PositionSource,
        config: GeoTrackConfig | None = None,
        *,
        device_probe: DeviceProbe | None = None,
        channel_factory: ChannelFactory = DeliveryChannel,
        on_update: Callable[[LocationUpdate], None] | None = None,
        on_position_error: Callable[[str, PositionFailure], None] | None = None,
        on_channel_event: Callable[[ChannelEvent], None] | None = None,
        on_channel_failure: Callable[[str, ChannelConnectionError], None] | None = None,
    ) -> None:
        self._config = config or GeoTrackConfig()
        self._source = source
        self._estimator = KalmanFilter(self._config.estimator)
        self._queue = OfflineQueue(self._config.queue)
        self._probe: DeviceProbe = device_probe or NullDeviceProbe()
        self._channel_factory = channel_factory
        self._on_update = on_update
        self._on_position_error = on_position_error
        self._on_channel_event = on_channel_event
        self._on_channel_failure = on_channel_failure

        self._state = TrackingState.IDLE
        self._entity_id: str | None = None
        self._channel: Channel | None = None
        self._watch_id: str | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._start_task: asyncio.Task[None] | None = None
        self._lifecycle_lock = asyncio.Lock()
        self._last_update_time: datetime | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> LocationTracker:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop_tracking()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> TrackingState:
        return self._state

    @property
    def is_tracking(self) -> bool:
        return self._state == TrackingState.TRACKING

    @property
    def entity_id(self) -> str | None:
        """Entity of the current session, or ``None`` when idle."""
        return self._entity_id

    @property
    def last_update_time(self) -> datetime | None:
        return self._last_update_time

    @property
    def filter_state(self) -> EstimatorState:
        return self._estimator.get_state()

    @property
    def queued_updates(self) -> int:
        return len(self._queue)

    @property
    def estimator(self) -> KalmanFilter:
        return self._estimator

    @property
    def offline_queue(self) -> OfflineQueue:
        return self._queue

    @property
    def channel(self) -> Channel | None:
        return self._channel

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_tracking(self, entity_id: str, options: TrackingOptions | None = None) -> None:
        """Start tracking *entity_id*, stopping any active session first.

        Raises
        ------
        PermissionDeniedError
            If the position source refuses access.
        ChannelConnectionError
            If the delivery channel cannot connect.
        TrackingCancelledError
            If :meth:`stop_tracking` (or another start) interrupts setup.
        """
        entity = entity_id.strip()
        if not entity:
            raise ValueError("entity_id must be non-empty")

        await self.stop_tracking()
        task = asyncio.create_task(self._start_session(entity, options or self._config.tracking))
        self._start_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.wait({task})
            raise
        finally:
            if self._start_task is task:
                self._start_task = None

        if task.cancelled():
            raise TrackingCancelledError(f"Tracking start for {entity} was cancelled")
        task.result()

    async def stop_tracking(self) -> None:
        """Stop the current session.  Safe to call from any state.

        Cancels an in-flight start, releases the position watch, flushes
        queued updates while the channel is still up, then disconnects.
        """
        async with self._lifecycle_lock:
            start_task = self._start_task
            if start_task is not None and not start_task.done():
                _logger.debug("Cancelling in-flight tracking start for %s", self._entity_id)
                start_task.cancel()
                await asyncio.wait({start_task})

            if self._state == TrackingState.IDLE and self._channel is None and self._watch_id is None:
                return
            self._state = TrackingState.STOPPING
            entity = self._entity_id
            await self._release_session()
            _logger.debug("Stopped tracking %s", entity)

    async def get_current_location(self, options: TrackingOptions | None = None) -> Coordinate:
        """One-shot read passed through the estimator.

        Raises
        ------
        PermissionDeniedError, PositionUnavailableError, PositionTimeoutError
            When the source cannot produce a fix.
        """
        await self._source.ensure_permission()
        result = await self._source.get_current_position(options or self._config.tracking)
        if isinstance(result, PositionFailure):
            _logger.warning("One-shot position read failed: %s", result.message or result.kind.value)
            raise result.to_exception()
        return self._estimator.filter(result.coordinate)

    async def flush_queue(self) -> int:
        """Send queued updates if the channel is connected; return how many were sent."""
        channel = self._channel
        if channel is None or not channel.is_connected:
            return 0
        return await self._queue.flush(channel.send_location)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _start_session(self, entity_id: str, options: TrackingOptions) -> None:
        self._state = TrackingState.STARTING
        self._entity_id = entity_id
        self._estimator.reset()
        _logger.debug("Starting tracking for %s options=%s", entity_id, options)
        try:
            await self._source.ensure_permission()

            channel = self._channel_factory(
                self._config.channel,
                on_connected=self.flush_queue,
                on_event=self._forward_channel_event,
                on_failure=self._handle_channel_failure,
            )
            self._channel = channel
            await channel.connect(entity_id)

            readings: asyncio.Queue[PositionResult] = asyncio.Queue()
            self._consumer = asyncio.create_task(self._consume(entity_id, readings))
            self._watch_id = await self._source.watch_position(options, readings.put_nowait)
        except BaseException:
            await self._release_session()
            raise
        self._state = TrackingState.TRACKING
        _logger.debug("Tracking %s (watch=%s)", entity_id, self._watch_id)

    async def _release_session(self) -> None:
        watch_id, self._watch_id = self._watch_id, None
        consumer, self._consumer = self._consumer, None
        channel, self._channel = self._channel, None
        try:
            if watch_id is not None:
                await self._source.clear_watch(watch_id)
        finally:
            try:
                if consumer is not None and not consumer.done():
                    consumer.cancel()
                    await asyncio.wait({consumer})
                if channel is not None and channel.is_connected and len(self._queue):
                    try:
                        await self._queue.flush(channel.send_location)
                    except Exception:
                        _logger.warning("Best-effort flush on stop failed", exc_info=True)
            finally:
                try:
                    if channel is not None:
                        await channel.disconnect()
                finally:
                    self._entity_id = None
                    self._state = TrackingState.IDLE

    async def _consume(self, entity_id: str, readings: asyncio.Queue[PositionResult]) -> None:
        while True:
            result = await readings.get()
            try:
                await self._process(entity_id, result)
            except Exception:
                _logger.warning("Processing a reading for %s failed", entity_id, exc_info=True)

    async def _process(self, entity_id: str, result: PositionResult) -> None:
        if isinstance(result, PositionFailure):
            _logger.warning("Position error for %s: %s", entity_id, result.message or result.kind.value)
            self._notify("on_position_error", self._on_position_error, entity_id, result)
            return

        raw = result.coordinate
        filtered = self._estimator.filter(raw)
        _logger.debug("Accuracy for %s: %s m -> %s m", entity_id, raw.accuracy, filtered.accuracy)

        metadata = read_device_metadata(self._probe)
        update = LocationUpdate(
            entity_id=entity_id,
            coordinate=filtered,
            battery_level=metadata.battery_level,
            network_type=metadata.network_type,
        )
        await self._deliver(update)
        self._last_update_time = utcnow()
        self._notify("on_update", self._on_update, update)

    async def _deliver(self, update: LocationUpdate) -> None:
        channel = self._channel
        if channel is None or not channel.is_connected:
            await self._queue.enqueue(update)
            return
        if not len(self._queue) and channel.send_location(update):
            return
        # Keep FIFO order: older queued updates go out first.
        await self._queue.enqueue(update)
        await self.flush_queue()

    def _forward_channel_event(self, event: ChannelEvent) -> None:
        self._notify("on_channel_event", self._on_channel_event, event)

    def _handle_channel_failure(self, error: ChannelConnectionError) -> None:
        entity_id = self._entity_id
        _logger.warning(
            "Delivery channel gave up for %s after %d attempts; updates will be queued until restart",
            entity_id,
            error.attempts,
        )
        if entity_id is not None:
            self._notify("on_channel_failure", self._on_channel_failure, entity_id, error)

    @staticmethod
    def _notify(name: str, callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            _logger.debug("%s callback failed", name, exc_info=True)

