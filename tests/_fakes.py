"""In-process stand-ins for the MQTT client and the delivery channel."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

from pygeotrack.config import ChannelConfig
from pygeotrack.models import LocationUpdate


class FakeMqttClient:
    """Mimics the subset of ``paho.mqtt.client.Client`` the channel uses.

    ``outcomes`` scripts the connection attempts run by ``loop_start``:
    ``"ok"`` fires ``on_connect`` with success, ``"refused"`` fires it with
    a failing reason code and ``"fail"`` fires ``on_connect_fail``.
    """

    def __init__(self, outcomes: list[str] | None = None) -> None:
        self.outcomes = list(outcomes if outcomes is not None else ["ok"])
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.subscriptions: list[str] = []
        self.reconnect_delay: tuple[float, float] | None = None
        self.loop_running = False
        self.disconnect_calls = 0
        self.publish_rc = 0
        self.disconnect_error: BaseException | None = None
        self.on_connect: Callable[..., None] | None = None
        self.on_connect_fail: Callable[..., None] | None = None
        self.on_disconnect: Callable[..., None] | None = None
        self.on_message: Callable[..., None] | None = None

    def reconnect_delay_set(self, min_delay: float = 1, max_delay: float = 120) -> None:
        self.reconnect_delay = (min_delay, max_delay)

    def connect_async(self, host: str, port: int, keepalive: int = 60) -> None:
        self.target = (host, port, keepalive)

    def loop_start(self) -> None:
        self.loop_running = True
        for outcome in self.outcomes:
            self.attempt(outcome)

    def loop_stop(self) -> None:
        self.loop_running = False

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.disconnect_error is not None:
            raise self.disconnect_error

    def attempt(self, outcome: str) -> None:
        if outcome == "ok":
            assert self.on_connect is not None
            self.on_connect(self, None, {}, SimpleNamespace(value=0), None)
        elif outcome == "refused":
            assert self.on_connect is not None
            self.on_connect(self, None, {}, SimpleNamespace(value=135), None)
        else:
            assert self.on_connect_fail is not None
            self.on_connect_fail(self, None)

    def drop(self) -> None:
        assert self.on_disconnect is not None
        self.on_disconnect(self, None, {}, SimpleNamespace(value=7), None)

    def deliver(self, topic: str, payload: Any) -> None:
        assert self.on_message is not None
        raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=raw))

    def subscribe(self, topic: str, qos: int = 0) -> tuple[int, int]:
        self.subscriptions.append(topic)
        return (0, 1)

    def publish(self, topic: str, payload: str, qos: int = 0) -> SimpleNamespace:
        if self.publish_rc == 0:
            self.published.append((topic, json.loads(payload)))
        return SimpleNamespace(rc=self.publish_rc)

    def events(self, event: str) -> list[dict[str, Any]]:
        return [message for topic, message in self.published if topic.endswith(f"/up/{event}")]


class FakeChannel:
    """Delivery channel double recording every update it accepts."""

    def __init__(
        self,
        config: ChannelConfig | None = None,
        *,
        on_connected: Callable[[], Any] | None = None,
        on_event: Callable[..., None] | None = None,
        on_failure: Callable[..., None] | None = None,
        connect_error: BaseException | None = None,
        connect_delay: float = 0.0,
    ) -> None:
        self.config = config
        self.on_connected = on_connected
        self.on_event = on_event
        self.on_failure = on_failure
        self.connect_error = connect_error
        self.connect_delay = connect_delay
        self.connected = False
        self.accept = True
        self.sent: list[LocationUpdate] = []
        self.entity_id: str | None = None
        self.disconnects = 0

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self, entity_id: str) -> None:
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self.entity_id = entity_id
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnects += 1
        self.connected = False

    def send_location(self, update: LocationUpdate) -> bool:
        if not self.connected or not self.accept:
            return False
        self.sent.append(update)
        return True

    async def reconnect(self) -> None:
        self.connected = True
        if self.on_connected is not None:
            result = self.on_connected()
            if result is not None:
                await result


class FakeChannelFactory:
    """Channel factory that remembers every channel it built."""

    def __init__(self, **channel_kwargs: Any) -> None:
        self.channel_kwargs = channel_kwargs
        self.created: list[FakeChannel] = []

    def __call__(self, config: ChannelConfig, **callbacks: Any) -> FakeChannel:
        channel = FakeChannel(config, **callbacks, **self.channel_kwargs)
        self.created.append(channel)
        return channel

    @property
    def last(self) -> FakeChannel:
        return self.created[-1]

    @property
    def connected(self) -> list[FakeChannel]:
        return [channel for channel in self.created if channel.connected]
