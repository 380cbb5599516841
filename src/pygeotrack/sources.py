"""Position source adapters.

A :class:`PositionSource` wraps whatever produces raw positions (a device
integration, an HTTP telemetry endpoint, a recording) behind one contract:

* permission checks (:meth:`PositionSource.ensure_permission`),
* continuous watches delivering :data:`PositionResult` values to a callback,
* one-shot reads honoring ``timeout`` and ``maximum_age``.

Readings and errors travel as an explicit variant
(:class:`PositionFix` | :class:`PositionFailure`) so callers handle each
case without exception-based control flow.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum
from pathlib import Path
from typing import Any

import aiohttp
from pydantic import ValidationError

from pygeotrack._redact import redact_for_log, redact_url
from pygeotrack.config import TrackingOptions
from pygeotrack.exceptions import (
    PermissionDeniedError,
    PositionError,
    PositionTimeoutError,
    PositionUnavailableError,
)
from pygeotrack.models._base import utcnow
from pygeotrack.models.coordinate import Coordinate

_logger = logging.getLogger(__name__)


class PermissionState(StrEnum):
    GRANTED = "granted"
    DENIED = "denied"
    PROMPT = "prompt"


class PositionErrorKind(StrEnum):
    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"


_ERROR_TYPES: dict[PositionErrorKind, type[PositionError]] = {
    PositionErrorKind.PERMISSION_DENIED: PermissionDeniedError,
    PositionErrorKind.POSITION_UNAVAILABLE: PositionUnavailableError,
    PositionErrorKind.TIMEOUT: PositionTimeoutError,
}


@dataclass(frozen=True)
class PositionFix:
    """A successful raw reading."""

    coordinate: Coordinate


@dataclass(frozen=True)
class PositionFailure:
    """A typed per-reading error."""

    kind: PositionErrorKind
    message: str = ""

    def to_exception(self) -> PositionError:
        return _ERROR_TYPES[self.kind](self.message or self.kind.value.replace("_", " "))


PositionResult = PositionFix | PositionFailure
PositionCallback = Callable[[PositionResult], None]


@dataclass(frozen=True)
class _Watch:
    options: TrackingOptions
    callback: PositionCallback


class PositionSource(abc.ABC):
    """Base class for position source adapters."""

    def __init__(self) -> None:
        self._watches: dict[str, _Watch] = {}
        self._last_fix: Coordinate | None = None

    @property
    def active_watches(self) -> int:
        """Number of watches currently registered."""
        return len(self._watches)

    @abc.abstractmethod
    async def check_permission(self) -> PermissionState:
        """Report the current permission state without prompting."""

    async def request_permission(self) -> PermissionState:
        """Ask for permission.  Sources that cannot prompt re-check instead."""
        return await self.check_permission()

    async def ensure_permission(self) -> None:
        """Check, then request, access to the positioning capability.

        Raises
        ------
        PermissionDeniedError
            If access is refused.
        """
        state = await self.check_permission()
        if state != PermissionState.GRANTED:
            state = await self.request_permission()
        if state != PermissionState.GRANTED:
            raise PermissionDeniedError("Location permission denied")

    async def watch_position(self, options: TrackingOptions, callback: PositionCallback) -> str:
        """Start a continuous watch and return its id."""
        watch_id = uuid.uuid4().hex
        self._watches[watch_id] = _Watch(options=options, callback=callback)
        try:
            await self._start_watch(watch_id, options)
        except BaseException:
            self._watches.pop(watch_id, None)
            raise
        _logger.debug("Position watch %s started (%d active)", watch_id, len(self._watches))
        return watch_id

    async def clear_watch(self, watch_id: str) -> None:
        """Stop a watch.  Unknown ids are ignored."""
        if self._watches.pop(watch_id, None) is None:
            return
        await self._stop_watch(watch_id)
        _logger.debug("Position watch %s cleared (%d active)", watch_id, len(self._watches))

    async def get_current_position(self, options: TrackingOptions | None = None) -> PositionResult:
        """One-shot read.

        A cached fix no older than ``options.maximum_age`` is returned
        without touching the source.  A read exceeding ``options.timeout``
        yields a ``TIMEOUT`` failure.
        """
        opts = options or TrackingOptions()
        cached = self._last_fix
        if cached is not None and opts.maximum_age > 0:
            if utcnow() - cached.timestamp <= timedelta(seconds=opts.maximum_age):
                return PositionFix(cached)
        try:
            result = await asyncio.wait_for(self._read_once(opts), opts.timeout)
        except TimeoutError:
            return PositionFailure(PositionErrorKind.TIMEOUT, f"No position within {opts.timeout:g}s")
        if isinstance(result, PositionFix):
            self._last_fix = result.coordinate
        return result

    async def close(self) -> None:
        """Clear every watch and release source resources."""
        for watch_id in list(self._watches):
            await self.clear_watch(watch_id)

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    async def _start_watch(self, watch_id: str, options: TrackingOptions) -> None:  # noqa: B027
        """Begin producing readings for *watch_id*."""

    async def _stop_watch(self, watch_id: str) -> None:  # noqa: B027
        """Stop producing readings for *watch_id*."""

    @abc.abstractmethod
    async def _read_once(self, options: TrackingOptions) -> PositionResult:
        """Produce a single reading."""

    def _dispatch(self, result: PositionResult) -> None:
        """Deliver *result* to every active watch."""
        if isinstance(result, PositionFix):
            self._last_fix = result.coordinate
        for watch_id, watch in list(self._watches.items()):
            try:
                watch.callback(result)
            except Exception:
                _logger.debug("Position callback for watch %s failed", watch_id, exc_info=True)


class ManualPositionSource(PositionSource):
    """Push-based adapter for host integrations.

    Platform code calls :meth:`push_reading` or :meth:`push_error` from
    any thread; results are marshalled onto the event loop that started
    the first watch or read.
    """

    def __init__(
        self,
        *,
        permission: PermissionState = PermissionState.GRANTED,
        grant_on_request: bool = False,
    ) -> None:
        super().__init__()
        self.permission = permission
        self._grant_on_request = grant_on_request
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending_reads: list[asyncio.Future[PositionResult]] = []

    async def check_permission(self) -> PermissionState:
        return self.permission

    async def request_permission(self) -> PermissionState:
        if self._grant_on_request:
            self.permission = PermissionState.GRANTED
        return self.permission

    def push_reading(self, reading: Coordinate | Mapping[str, Any]) -> None:
        """Feed a raw reading.  Mappings are validated into a :class:`Coordinate`."""
        coordinate = reading if isinstance(reading, Coordinate) else Coordinate.model_validate(dict(reading))
        self._post(PositionFix(coordinate))

    def push_error(self, kind: PositionErrorKind, message: str = "") -> None:
        self._post(PositionFailure(kind, message))

    async def _start_watch(self, watch_id: str, options: TrackingOptions) -> None:
        self._loop = asyncio.get_running_loop()

    async def _read_once(self, options: TrackingOptions) -> PositionResult:
        self._loop = asyncio.get_running_loop()
        future: asyncio.Future[PositionResult] = self._loop.create_future()
        self._pending_reads.append(future)
        try:
            return await future
        finally:
            if future in self._pending_reads:
                self._pending_reads.remove(future)

    def _post(self, result: PositionResult) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            self._deliver(result)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._deliver(result)
        else:
            loop.call_soon_threadsafe(self._deliver, result)

    def _deliver(self, result: PositionResult) -> None:
        pending, self._pending_reads = self._pending_reads, []
        for future in pending:
            if not future.done():
                future.set_result(result)
        self._dispatch(result)


def _unwrap_position_payload(payload: Any) -> Any:
    """Accept ``{...}``, ``{"data": {...}}`` and ``{"coords": {...}, "timestamp": ...}`` shapes."""
    if not isinstance(payload, dict):
        return payload
    merged = dict(payload)
    for key in ("data", "coords", "position"):
        nested = merged.pop(key, None)
        if isinstance(nested, dict):
            merged.update(_unwrap_position_payload(nested))
    return merged


class HttpPositionSource(PositionSource):
    """Polls a JSON positioning endpoint (device gateway, telemetry API).

    HTTP 401/403 maps to ``PERMISSION_DENIED``; other HTTP or network
    failures and unparseable payloads map to ``POSITION_UNAVAILABLE``;
    requests exceeding the read timeout map to ``TIMEOUT``.
    """

    def __init__(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        poll_interval: float = 1.0,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__()
        self._url = url
        self._safe_url = redact_url(url)
        self._external_session = session is not None
        self._http_session = session
        self._poll_interval = poll_interval
        self._headers = dict(headers or {})
        self._poll_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> HttpPositionSource:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _require_session(self) -> aiohttp.ClientSession:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        return self._http_session

    async def check_permission(self) -> PermissionState:
        result = await self._fetch(TrackingOptions())
        if isinstance(result, PositionFailure) and result.kind == PositionErrorKind.PERMISSION_DENIED:
            return PermissionState.DENIED
        return PermissionState.GRANTED

    async def _read_once(self, options: TrackingOptions) -> PositionResult:
        return await self._fetch(options)

    async def _start_watch(self, watch_id: str, options: TrackingOptions) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll(options))

    async def _stop_watch(self, watch_id: str) -> None:
        if self._watches:
            return
        task = self._poll_task
        self._poll_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def close(self) -> None:
        await super().close()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
        self._http_session = None

    async def _poll(self, options: TrackingOptions) -> None:
        while self._watches:
            try:
                result = await asyncio.wait_for(self._fetch(options), options.timeout)
            except TimeoutError:
                result = PositionFailure(PositionErrorKind.TIMEOUT, f"No position within {options.timeout:g}s")
            self._dispatch(result)
            await asyncio.sleep(self._poll_interval)

    async def _fetch(self, options: TrackingOptions) -> PositionResult:
        session = self._require_session()
        timeout = aiohttp.ClientTimeout(total=options.timeout)
        params = {"highAccuracy": "1"} if options.enable_high_accuracy else None
        try:
            async with session.get(self._url, headers=self._headers, params=params, timeout=timeout) as resp:
                if resp.status in (401, 403):
                    return PositionFailure(
                        PositionErrorKind.PERMISSION_DENIED,
                        f"HTTP {resp.status} from {self._safe_url}",
                    )
                if resp.status != 200:
                    text = await resp.text()
                    return PositionFailure(
                        PositionErrorKind.POSITION_UNAVAILABLE,
                        f"HTTP {resp.status} from {self._safe_url}: {text[:200]}",
                    )
                payload = await resp.json(content_type=None)
        except TimeoutError:
            return PositionFailure(PositionErrorKind.TIMEOUT, f"Request to {self._safe_url} timed out")
        except (aiohttp.ClientError, json.JSONDecodeError) as exc:
            return PositionFailure(PositionErrorKind.POSITION_UNAVAILABLE, f"Request to {self._safe_url} failed: {exc}")

        _logger.debug("Position payload from %s: %s", self._safe_url, redact_for_log(payload))
        try:
            coordinate = Coordinate.model_validate(_unwrap_position_payload(payload))
        except ValidationError as exc:
            return PositionFailure(PositionErrorKind.POSITION_UNAVAILABLE, f"Unusable position payload: {exc}")
        return PositionFix(coordinate)


class ReplayPositionSource(PositionSource):
    """Replays recorded readings with their original pacing.

    Pacing follows the gaps between consecutive fix timestamps, divided by
    ``speed``.  ``speed=0`` replays without sleeping.
    """

    def __init__(self, items: Iterable[PositionResult], *, speed: float = 1.0) -> None:
        super().__init__()
        self._items: list[PositionResult] = list(items)
        self._speed = speed
        self._cursor = 0
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @classmethod
    def from_jsonl(cls, path: str | Path, *, speed: float = 1.0) -> ReplayPositionSource:
        """Load one JSON object per line.

        A line carrying an ``"error"`` key (one of the
        :class:`PositionErrorKind` values) becomes a :class:`PositionFailure`.
        """
        items: list[PositionResult] = []
        for line_no, line in enumerate(Path(path).read_text(encoding="utf-8").splitlines(), start=1):
            text = line.strip()
            if not text:
                continue
            record = json.loads(text)
            if not isinstance(record, dict):
                raise ValueError(f"{path}:{line_no}: expected a JSON object")
            if "error" in record:
                items.append(PositionFailure(PositionErrorKind(record["error"]), str(record.get("message", ""))))
            else:
                items.append(PositionFix(Coordinate.model_validate(_unwrap_position_payload(record))))
        return cls(items, speed=speed)

    @property
    def remaining(self) -> Sequence[PositionResult]:
        return self._items[self._cursor :]

    async def check_permission(self) -> PermissionState:
        return PermissionState.GRANTED

    async def _read_once(self, options: TrackingOptions) -> PositionResult:
        if self._cursor >= len(self._items):
            return PositionFailure(PositionErrorKind.POSITION_UNAVAILABLE, "Recording exhausted")
        item = self._items[self._cursor]
        self._cursor += 1
        return item

    async def _start_watch(self, watch_id: str, options: TrackingOptions) -> None:
        self._tasks[watch_id] = asyncio.create_task(self._replay(watch_id))

    async def _stop_watch(self, watch_id: str) -> None:
        task = self._tasks.pop(watch_id, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def wait_finished(self) -> None:
        """Wait until every running replay has delivered its last item."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _replay(self, watch_id: str) -> None:
        previous: Coordinate | None = None
        while self._cursor < len(self._items):
            index = self._cursor
            item = self._items[index]
            if isinstance(item, PositionFix):
                if previous is not None and self._speed > 0:
                    gap = (item.coordinate.timestamp - previous.timestamp).total_seconds() / self._speed
                    if gap > 0:
                        await asyncio.sleep(gap)
                previous = item.coordinate
            watch = self._watches.get(watch_id)
            if watch is None:
                return
            if self._cursor != index:
                # Another watch or a one-shot read consumed it while we slept.
                continue
            self._cursor += 1
            if isinstance(item, PositionFix):
                self._last_fix = item.coordinate
            try:
                watch.callback(item)
            except Exception:
                _logger.debug("Position callback for watch %s failed", watch_id, exc_info=True)
            await asyncio.sleep(0)
