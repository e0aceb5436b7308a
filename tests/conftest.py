"""Shared fixtures: a scriptable in-memory engine and controllers built on it."""
from __future__ import annotations

import itertools
import threading
import time
from typing import Callable, Hashable

import pytest

from airsession.config import SessionConfig
from airsession.controller import SessionController
from airsession.engines.base import Done, EventSink, LoadConfig, Ongoing, Started
from airsession.resolver import ModelResolver
from airsession.state import ModelLoaded

WAIT_S = 2.0


def wait_until(predicate: Callable[[], bool], timeout: float = WAIT_S) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class FakeEngine:
    """Records every call; generation events are emitted by the test itself.

    Set ``auto_reply`` to a list of fragments to have ``generate`` stream them
    from a worker thread and finish with ``Done``.
    """

    def __init__(self) -> None:
        self.loads: list[LoadConfig] = []
        self.generations: list[tuple[Hashable, str, bool, EventSink]] = []
        self.aborted: list[Hashable] = []
        self.stopped: list[Hashable] = []
        self.released: list[Hashable] = []
        self.load_error: Exception | None = None
        self.generate_error: Exception | None = None
        self.load_gate: threading.Event | None = None
        self.auto_reply: list[str] | None = None
        self.active_loads = 0
        self.max_active_loads = 0
        self._load_lock = threading.Lock()
        self._handles = itertools.count(1)

    def load(self, config: LoadConfig) -> Hashable:
        with self._load_lock:
            self.loads.append(config)
            self.active_loads += 1
            self.max_active_loads = max(self.max_active_loads, self.active_loads)
        try:
            if self.load_gate is not None:
                self.load_gate.wait(WAIT_S)
            if self.load_error is not None:
                raise self.load_error
            return next(self._handles)
        finally:
            with self._load_lock:
                self.active_loads -= 1

    def generate(self, handle: Hashable, prompt: str, partial: bool, emit: EventSink) -> None:
        if self.generate_error is not None:
            raise self.generate_error
        self.generations.append((handle, prompt, partial, emit))
        if self.auto_reply is not None:
            threading.Thread(target=self._reply, args=(prompt, list(self.auto_reply), emit), daemon=True).start()

    def abort(self, handle: Hashable) -> None:
        self.aborted.append(handle)

    def stop(self, handle: Hashable) -> None:
        self.stopped.append(handle)

    def release(self, handle: Hashable) -> None:
        self.released.append(handle)

    @property
    def emit(self) -> EventSink:
        return self.generations[-1][3]

    @staticmethod
    def _reply(prompt: str, fragments: list[str], emit: EventSink) -> None:
        emit(Started(prompt))
        for index, fragment in enumerate(fragments, start=1):
            emit(Ongoing(fragment, index))
        emit(Done("".join(fragments), len(fragments), 5))


@pytest.fixture
def model_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "m.bin"
    path.write_bytes(b"GGUF")
    return "m.bin"


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def controller(engine):
    ctrl = SessionController(engine, ModelResolver(), SessionConfig())
    yield ctrl
    ctrl.close()


@pytest.fixture
def loaded(controller, model_file):
    assert controller.load(model_file)
    assert controller.state.wait_for(lambda s: isinstance(s, ModelLoaded), timeout=WAIT_S)
    return controller
