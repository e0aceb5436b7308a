"""Lifecycle state variants and the observable value that publishes them."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Generic, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class LoadingModel:
    reference: str = ""


@dataclass(frozen=True)
class ModelLoaded:
    reference: str


@dataclass(frozen=True)
class Generating:
    prompt: str
    start_time: float = field(default_factory=time.monotonic)
    tokens_generated: int = 0

    def elapsed_ms(self, now: float | None = None) -> int:
        now = time.monotonic() if now is None else now
        return max(0, int((now - self.start_time) * 1000))


@dataclass(frozen=True)
class Completed:
    prompt: str
    token_count: int
    duration_ms: int


@dataclass(frozen=True)
class Error:
    message: str
    cause: BaseException | None = field(default=None, compare=False)


LifecycleState = Union[Idle, LoadingModel, ModelLoaded, Generating, Completed, Error]


def can_generate(state: LifecycleState) -> bool:
    return isinstance(state, (ModelLoaded, Completed))


def is_active(state: LifecycleState) -> bool:
    return isinstance(state, (LoadingModel, Generating))


class Observable(Generic[T]):
    """Thread-safe current value with change subscriptions.

    Subscribers are called synchronously on the thread that publishes, after
    the new value is visible through ``value``. ``wait_for`` lets callers block
    until a predicate over the value holds.
    """

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._cond = threading.Condition()
        self._subscribers: list[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        with self._cond:
            return self._value

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        with self._cond:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._cond:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def wait_for(self, predicate: Callable[[T], bool], timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: predicate(self._value), timeout=timeout)

    def _publish(self, value: T) -> None:
        with self._cond:
            self._value = value
            subscribers = list(self._subscribers)
            self._cond.notify_all()
        for callback in subscribers:
            try:
                callback(value)
            except Exception:  # noqa: BLE001
                logger.exception("Subscriber %r failed", callback)
