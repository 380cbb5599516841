"""MQTT delivery channel for location updates.

The channel runs a threaded paho-mqtt network loop and marshals every
callback onto the asyncio loop that called :meth:`DeliveryChannel.connect`.

Topics, for entity ``E`` and prefix ``P``:

* ``P/E/up/<event>``: outbound (``join_asset_tracking``, ``location_update``)
* ``P/E/down/<event>``: inbound (``geofence_alert``, broadcast ``location_update``)

Outbound sends are fire-and-forget (QoS 0, no acknowledgment wait).
Delivery across disconnects is the offline queue's job.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from pygeotrack._redact import redact_for_log
from pygeotrack.config import ChannelConfig
from pygeotrack.exceptions import ChannelConnectionError, ChannelError
from pygeotrack.models.update import ChannelMessage, LocationUpdate, MessageType

_logger = logging.getLogger(__name__)

ClientFactory = Callable[[ChannelConfig], mqtt.Client]
ConnectedCallback = Callable[[], Awaitable[None] | None]
EventCallback = Callable[["ChannelEvent"], None]
FailureCallback = Callable[[ChannelConnectionError], None]


@dataclass(frozen=True)
class ChannelEvent:
    """Inbound event forwarded unmodified to consumers."""

    event: str
    entity_id: str
    topic: str
    payload: dict[str, Any]


def default_client_factory(config: ChannelConfig) -> mqtt.Client:
    """Build a paho client from channel settings."""
    client = mqtt.Client(
        callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
        client_id=config.client_id,
        protocol=mqtt.MQTTv311,
    )
    if config.username:
        client.username_pw_set(config.username, config.password)
    if config.tls:
        client.tls_set()
    return client


class DeliveryChannel:
    """Persistent connection with bounded reconnects and a join handshake.

    On every connect and reconnect the channel subscribes to inbound
    topics, publishes ``join_asset_tracking`` and then invokes
    *on_connected* (the tracker flushes its offline queue there).

    After ``reconnect_attempts`` consecutive failed attempts the channel
    gives up: during :meth:`connect` that raises
    :class:`ChannelConnectionError`; later it is reported through
    *on_failure*.
    """

    def __init__(
        self,
        config: ChannelConfig | None = None,
        *,
        on_connected: ConnectedCallback | None = None,
        on_event: EventCallback | None = None,
        on_failure: FailureCallback | None = None,
        client_factory: ClientFactory = default_client_factory,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config or ChannelConfig()
        self._on_connected = on_connected
        self._on_event = on_event
        self._on_failure = on_failure
        self._client_factory = client_factory
        self._logger = logger or _logger
        self._loop: asyncio.AbstractEventLoop | None = None
        self._client: mqtt.Client | None = None
        self._entity_id: str | None = None
        self._connected = False
        self._failures = 0
        self._first_connect: asyncio.Future[None] | None = None
        self._tasks: set[asyncio.Future[Any]] = set()
        self._release_task: asyncio.Future[None] | None = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def entity_id(self) -> str | None:
        return self._entity_id

    @property
    def failed_attempts(self) -> int:
        """Consecutive failed attempts since the last successful connect."""
        return self._failures

    def topic(self, direction: str, event: str, entity_id: str | None = None) -> str:
        entity = entity_id or self._entity_id
        if entity is None:
            raise ChannelError("Channel is not bound to an entity")
        return f"{self._config.topic_prefix}/{entity}/{direction}/{event}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, entity_id: str) -> None:
        """Connect and join the room for *entity_id*.

        Raises
        ------
        ChannelConnectionError
            If no connection succeeds within ``connect_timeout`` or the
            bounded attempts are exhausted first.
        """
        await self.disconnect()
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._entity_id = entity_id
        self._failures = 0
        first_connect: asyncio.Future[None] = loop.create_future()
        self._first_connect = first_connect

        client = self._client_factory(self._config)
        delay = self._config.reconnect_delay
        client.reconnect_delay_set(min_delay=delay, max_delay=delay)
        self._bind_callbacks(client)
        self._client = client

        self._logger.debug(
            "Channel connect requested host=%s port=%s entity=%s",
            self._config.host,
            self._config.port,
            entity_id,
        )
        try:
            client.connect_async(self._config.host, self._config.port, keepalive=self._config.keepalive)
            client.loop_start()
            await asyncio.wait_for(asyncio.shield(first_connect), self._config.connect_timeout)
        except TimeoutError:
            attempts = self._failures
            await self.disconnect()
            raise ChannelConnectionError(
                f"Connection to {self._config.host}:{self._config.port} timed out "
                f"after {self._config.connect_timeout:g}s",
                attempts=attempts,
            ) from None
        except BaseException:
            await self.disconnect()
            raise
        finally:
            self._first_connect = None

    async def disconnect(self) -> None:
        """Stop the network loop and drop the connection.  Idempotent."""
        client = self._client
        self._client = None
        was_connected = self._connected
        self._connected = False

        pending = self._first_connect
        if pending is not None and not pending.done():
            pending.cancel()

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        if client is None:
            return
        try:
            if was_connected:
                self._logger.debug("Channel disconnect requested entity=%s", self._entity_id)
            client.disconnect()
        finally:
            loop = self._loop or asyncio.get_running_loop()
            await loop.run_in_executor(None, client.loop_stop)
            self._logger.debug("Channel network loop stopped")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_location(self, update: LocationUpdate) -> bool:
        """Publish a ``location_update`` without waiting for delivery.

        Returns ``False`` when the channel is not connected or the client
        refused the publish; the caller should queue the update.
        """
        return self._publish(ChannelMessage.for_update(update), entity_id=update.entity_id)

    def _publish(self, message: ChannelMessage, *, entity_id: str | None = None) -> bool:
        client = self._client
        if client is None or not self._connected:
            return False
        info = client.publish(self.topic("up", message.type.value, entity_id), message.to_json(), qos=0)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._logger.debug("Publish of %s refused rc=%s", message.type.value, info.rc)
            return False
        return True

    # ------------------------------------------------------------------
    # paho callbacks (network thread) -> loop handlers
    # ------------------------------------------------------------------

    def _bind_callbacks(self, client: mqtt.Client) -> None:
        def on_connect(
            _c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._post(self._handle_attempt_failed, client, f"broker refused: {reason_code}")
                return
            self._post(self._handle_connected, client)

        def on_connect_fail(_c: mqtt.Client, _userdata: Any) -> None:
            self._post(self._handle_attempt_failed, client, "network error")

        def on_disconnect(
            _c: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            self._post(self._handle_disconnected, client, reason_code)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                payload = json.loads(msg.payload)
            except (UnicodeDecodeError, json.JSONDecodeError):
                self._logger.debug("Dropping non-JSON message on %s", msg.topic)
                return
            if not isinstance(payload, dict):
                self._logger.debug("Dropping non-object message on %s", msg.topic)
                return
            self._post(self._handle_message, client, msg.topic, payload)

        client.on_connect = on_connect
        client.on_connect_fail = on_connect_fail
        client.on_disconnect = on_disconnect
        client.on_message = on_message

    def _post(self, handler: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(handler, *args)

    def _handle_connected(self, client: mqtt.Client) -> None:
        if client is not self._client:
            return
        reconnect = self._first_connect is None or self._first_connect.done()
        self._connected = True
        self._failures = 0
        self._logger.debug("Channel %s entity=%s", "reconnected" if reconnect else "connected", self._entity_id)

        client.subscribe(self.topic("down", "+"), qos=0)
        self._publish(ChannelMessage.join(cast(str, self._entity_id)))

        first = self._first_connect
        if first is not None and not first.done():
            first.set_result(None)

        if self._on_connected is not None:
            try:
                result = self._on_connected()
                if inspect.isawaitable(result):
                    self._track(result)
            except Exception:
                self._logger.debug("on_connected callback failed", exc_info=True)

    def _handle_attempt_failed(self, client: mqtt.Client, reason: str) -> None:
        if client is not self._client:
            return
        self._connected = False
        self._failures += 1
        limit = self._config.reconnect_attempts
        self._logger.debug("Channel connect attempt %d/%d failed: %s", self._failures, limit, reason)
        if self._failures < limit:
            return

        error = ChannelConnectionError(
            f"Could not connect to {self._config.host}:{self._config.port} after {self._failures} attempts ({reason})",
            attempts=self._failures,
        )
        first = self._first_connect
        if first is not None and not first.done():
            first.set_exception(error)
            return

        self._logger.warning("Channel reconnect attempts exhausted: %s", error)
        release = asyncio.ensure_future(self.disconnect())
        release.add_done_callback(self._log_release_outcome)
        self._release_task = release
        if self._on_failure is not None:
            try:
                self._on_failure(error)
            except Exception:
                self._logger.debug("on_failure callback failed", exc_info=True)

    def _handle_disconnected(self, client: mqtt.Client, reason_code: Any) -> None:
        if client is not self._client:
            return
        if self._connected:
            self._logger.warning("Channel disconnected entity=%s reason=%s", self._entity_id, reason_code)
        self._connected = False

    def _handle_message(self, client: mqtt.Client, topic: str, payload: dict[str, Any]) -> None:
        if client is not self._client or self._entity_id is None:
            return
        event_name = topic.rsplit("/", 1)[-1]
        if event_name not in (MessageType.GEOFENCE_ALERT, MessageType.LOCATION_UPDATE):
            self._logger.debug("Ignoring inbound event %s", event_name)
            return
        self._logger.debug("Inbound %s: %s", event_name, redact_for_log(payload))
        if self._on_event is None:
            return
        try:
            self._on_event(ChannelEvent(event=event_name, entity_id=self._entity_id, topic=topic, payload=payload))
        except Exception:
            self._logger.debug("on_event callback failed", exc_info=True)

    def _log_release_outcome(self, task: asyncio.Future[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("Releasing the channel after exhausted reconnects failed: %r", exc)

    def _track(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

