"""Bounded in-memory buffer for updates pending delivery.

The queue survives channel reconnects but not process restarts.  Once
more than ``capacity`` updates are pending, it keeps only the ``retain``
most recent ones and stays a sliding window of that size until the next
flush, favoring fresh positions over a complete trail.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable

from pygeotrack.config import QueueConfig
from pygeotrack.models.update import LocationUpdate, QueueEntry

_logger = logging.getLogger(__name__)

SendFn = Callable[[LocationUpdate], bool | Awaitable[bool]]


class OfflineQueue:
    """FIFO of :class:`QueueEntry` shared by the reading path and the reconnect path.

    :meth:`enqueue` and :meth:`flush` are serialized by one lock, so an
    entry is removed only after it was sent (never sent twice) and an entry
    enqueued during a flush is kept for the next one.
    """

    def __init__(self, config: QueueConfig | None = None) -> None:
        self._config = config or QueueConfig()
        self._entries: deque[QueueEntry] = deque()
        self._lock = asyncio.Lock()
        self._dropped = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def capacity(self) -> int:
        return self._config.capacity

    @property
    def dropped(self) -> int:
        """Total entries evicted by overflow since construction."""
        return self._dropped

    def snapshot(self) -> list[QueueEntry]:
        return list(self._entries)

    async def enqueue(self, update: LocationUpdate) -> QueueEntry:
        entry = QueueEntry(update=update)
        async with self._lock:
            if self._entries.maxlen is not None and len(self._entries) == self._entries.maxlen:
                # Sliding window active: the append below evicts the oldest entry.
                self._dropped += 1
            self._entries.append(entry)
            if len(self._entries) > self._config.capacity:
                self._shrink()
        return entry

    async def flush(self, send: SendFn) -> int:
        """Send pending entries in FIFO order and return how many were sent.

        *send* may be sync or async and returns ``False`` to reject an
        entry (e.g. the channel dropped); the rejected entry and everything
        after it stay queued.
        """
        sent = 0
        async with self._lock:
            while self._entries:
                entry = self._entries[0]
                try:
                    outcome = send(entry.update)
                    if inspect.isawaitable(outcome):
                        outcome = await outcome
                except Exception:
                    _logger.warning("Flushing queued update %s failed", entry.id, exc_info=True)
                    break
                if not outcome:
                    break
                self._entries.popleft()
                sent += 1
            if not self._entries:
                self._entries = deque()
        if sent:
            _logger.debug("Flushed %d queued location updates (%d remaining)", sent, len(self._entries))
        return sent

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._entries)
            self._entries = deque()
        return count

    def _shrink(self) -> None:
        retain = self._config.retain
        before = len(self._entries)
        self._entries = deque(list(self._entries)[-retain:], maxlen=retain)
        evicted = before - len(self._entries)
        self._dropped += evicted
        _logger.warning("Offline queue overflow: dropped %d oldest updates, kept %d", evicted, retain)
