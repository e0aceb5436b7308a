"""Bounded event channel between engine workers and the session dispatcher."""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass

from .engines.base import BOUNDARY_EVENTS, GenerationEvent

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 64


@dataclass(frozen=True)
class Envelope:
    epoch: int
    event: GenerationEvent


class ChannelClosed(Exception):
    pass


class EventChannel:
    """Never-blocking producer side, blocking consumer side.

    When the buffer is full the oldest buffered ``Ongoing`` event is evicted
    to make room. Boundary events are never evicted: if only boundary events
    are buffered, an incoming progress event is dropped and an incoming
    boundary event is appended past capacity.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._buffer: deque[Envelope] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._dropped = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def dropped(self) -> int:
        with self._cond:
            return self._dropped

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._buffer)

    def put(self, epoch: int, event: GenerationEvent) -> bool:
        """Enqueue an event; returns False when the channel is closed."""
        with self._cond:
            if self._closed:
                return False
            if len(self._buffer) >= self._capacity and not self._evict_oldest_progress():
                if not isinstance(event, BOUNDARY_EVENTS):
                    self._dropped += 1
                    return True
            self._buffer.append(Envelope(epoch, event))
            self._cond.notify()
            return True

    def get(self, timeout: float | None = None) -> Envelope | None:
        """Pop the oldest envelope, waiting up to ``timeout`` seconds.

        Returns None on timeout. Raises ChannelClosed once the channel is
        closed and drained.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._buffer or self._closed, timeout=timeout)
            if self._buffer:
                return self._buffer.popleft()
            if self._closed:
                raise ChannelClosed()
            return None

    def drain(self) -> list[Envelope]:
        with self._cond:
            items = list(self._buffer)
            self._buffer.clear()
            return items

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def _evict_oldest_progress(self) -> bool:
        for index, envelope in enumerate(self._buffer):
            if not isinstance(envelope.event, BOUNDARY_EVENTS):
                del self._buffer[index]
                self._dropped += 1
                logger.debug("Channel full, dropped progress event (epoch %d)", envelope.epoch)
                return True
        return False
