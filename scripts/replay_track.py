#!/usr/bin/env python3
"""Replay a recorded track through the tracker.

Each line of the input file is one JSON reading (``latitude``,
``longitude``, ``accuracy``, ``timestamp``) or an error line
(``{"error": "timeout"}``).  Filtered updates are published to the MQTT
broker configured through ``GEOTRACK_*`` variables and the flags below,
or printed to stdout with ``--dry-run``.

Useful to check filter tuning against real recordings and to exercise a
broker deployment without a live device.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from repo root without installing the package.
_src = Path(__file__).resolve().parent.parent / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pygeotrack import (  # noqa: E402
    ChannelConfig,
    GeoTrackConfig,
    LocationTracker,
    LocationUpdate,
    PositionFailure,
    ReplayPositionSource,
)

_LOG = logging.getLogger("replay_track")


class _StdoutChannel:
    """Channel stand-in that prints every update as one JSON line."""

    def __init__(self, config: ChannelConfig, **_callbacks: Any) -> None:
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self, entity_id: str) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    def send_location(self, update: LocationUpdate) -> bool:
        print(update.model_dump_json(by_alias=True, exclude_none=True))
        return True


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay a JSONL track through pygeotrack.")
    parser.add_argument("path", type=Path, help="JSONL file with one reading per line")
    parser.add_argument("--entity", default="replay", help="Entity id to track (default: replay)")
    parser.add_argument("--speed", type=float, default=1.0, help="Playback speed factor, 0 = no pacing")
    parser.add_argument("--host", help="MQTT broker host (overrides GEOTRACK_MQTT_HOST)")
    parser.add_argument("--port", type=int, help="MQTT broker port (overrides GEOTRACK_MQTT_PORT)")
    parser.add_argument("--prefix", help="Topic prefix (overrides GEOTRACK_MQTT_TOPIC_PREFIX)")
    parser.add_argument("--dry-run", action="store_true", help="Print updates instead of publishing")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser.parse_args()


async def main() -> int:
    args = _parse_args()
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    config = GeoTrackConfig.from_env()
    channel_overrides = {
        key: value
        for key, value in {"host": args.host, "port": args.port, "topic_prefix": args.prefix}.items()
        if value is not None
    }
    if channel_overrides:
        config = dataclasses.replace(config, channel=dataclasses.replace(config.channel, **channel_overrides))

    source = ReplayPositionSource.from_jsonl(args.path, speed=args.speed)
    total = len(source.remaining)
    errors: list[PositionFailure] = []

    def on_error(entity_id: str, failure: PositionFailure) -> None:
        errors.append(failure)

    kwargs: dict[str, Any] = {"on_position_error": on_error}
    if args.dry_run:
        kwargs["channel_factory"] = _StdoutChannel

    async with LocationTracker(source, config, **kwargs) as tracker:
        await tracker.start_tracking(args.entity)
        await source.wait_finished()
        # Let the consumer drain readings delivered by the last replay step.
        await asyncio.sleep(0.1)
    pending = tracker.queued_updates

    _LOG.info(
        "Replayed %d readings for %s: %d errors, %d updates left undelivered",
        total,
        args.entity,
        len(errors),
        pending,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
