from __future__ import annotations

import threading
import time

import pytest

from airsession.config import SessionConfig
from airsession.controller import SessionController
from airsession.engines.base import Done, Failed, Ongoing, Started
from airsession.errors import GenerationFailure, LoadFailure, ResolutionError
from airsession.resolver import ModelResolver
from airsession.state import (
    Completed,
    Error,
    Generating,
    Idle,
    LoadingModel,
    ModelLoaded,
)

from conftest import WAIT_S, wait_until


def _settled(controller, kind):
    return controller.state.wait_for(lambda s: isinstance(s, kind), timeout=WAIT_S)


def _tokens(controller, count):
    return controller.state.wait_for(
        lambda s: isinstance(s, Generating) and s.tokens_generated == count, timeout=WAIT_S
    )


def test_load_success_goes_through_loading(controller, engine, model_file) -> None:
    seen = []
    controller.state.subscribe(seen.append)

    assert controller.load(model_file)
    assert _settled(controller, ModelLoaded)

    assert wait_until(lambda: len(seen) == 2)
    assert seen == [LoadingModel("m.bin"), ModelLoaded("m.bin")]
    assert engine.loads[0].model_path == "m.bin"
    assert engine.loads[0].context_length == 2048
    assert engine.loads[0].use_mmap is True


def test_load_engine_failure_goes_to_error(controller, engine, model_file) -> None:
    engine.load_error = RuntimeError("bad magic")
    seen = []
    controller.state.subscribe(seen.append)

    assert controller.load(model_file)
    assert _settled(controller, Error)

    assert wait_until(lambda: len(seen) == 2)
    state = controller.state.value
    assert seen == [LoadingModel("m.bin"), state]
    assert [type(s) for s in seen] == [LoadingModel, Error]
    assert "bad magic" in state.message
    assert isinstance(state.cause, LoadFailure)
    assert isinstance(state.cause.__cause__, RuntimeError)
    assert not controller.can_generate()


def test_load_missing_file_never_reaches_engine(controller, engine, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    assert controller.load("missing.bin")
    assert _settled(controller, Error)

    assert isinstance(controller.state.value.cause, ResolutionError)
    assert engine.loads == []


def test_load_again_after_error_recovers(controller, engine, model_file) -> None:
    engine.load_error = RuntimeError("oom")
    controller.load(model_file)
    assert _settled(controller, Error)

    engine.load_error = None
    assert controller.load(model_file)
    assert _settled(controller, ModelLoaded)


def test_hello_scenario(loaded, engine) -> None:
    assert loaded.generate("hi")
    state = loaded.state.value
    assert isinstance(state, Generating)
    assert state.prompt == "hi"
    assert state.tokens_generated == 0

    emit = engine.emit
    emit(Started("hi"))
    emit(Ongoing("He", 1))
    emit(Ongoing("llo", 2))
    emit(Done("Hello", 2, 120))

    assert _settled(loaded, Completed)
    assert loaded.state.value == Completed("hi", 2, 120)
    assert loaded.text.value == "Hello"
    assert engine.stopped == [1]


def test_generate_again_resets_text_first(loaded, engine) -> None:
    loaded.generate("hi")
    engine.emit(Ongoing("Hello", 1))
    engine.emit(Done("Hello", 1, 10))
    assert _settled(loaded, Completed)

    texts = []
    loaded.text.subscribe(texts.append)
    assert loaded.generate("again")

    assert texts == [""]
    assert loaded.text.value == ""
    assert loaded.token_count == 0

    engine.emit(Ongoing("new", 1))
    assert _tokens(loaded, 1)
    assert loaded.text.value == "new"


def test_text_is_concatenation_of_delivered_fragments(loaded, engine) -> None:
    fragments = ["The", " quick", " brown", " fox", "", " jumps"]
    loaded.generate("story")
    for index, fragment in enumerate(fragments, start=1):
        engine.emit(Ongoing(fragment, index))
    engine.emit(Done("".join(fragments), len(fragments), 30))

    assert _settled(loaded, Completed)
    assert loaded.text.value == "".join(fragments)
    assert loaded.state.value.token_count == len(fragments)


def test_generate_rejected_while_loading(controller, engine, model_file) -> None:
    engine.load_gate = threading.Event()
    controller.load(model_file)
    assert controller.state.value == LoadingModel("m.bin")

    assert controller.generate("hi") is False
    assert controller.state.value == LoadingModel("m.bin")
    assert engine.generations == []

    engine.load_gate.set()
    assert _settled(controller, ModelLoaded)


def test_generate_rejected_while_generating(loaded, engine) -> None:
    loaded.generate("first")
    before = loaded.state.value

    assert loaded.generate("second") is False
    assert loaded.state.value == before
    assert len(engine.generations) == 1


def test_generate_rejected_when_idle(controller, engine) -> None:
    assert controller.generate("hi") is False
    assert controller.state.value == Idle()


def test_load_rejected_while_generating(loaded, engine) -> None:
    loaded.generate("hi")
    before = loaded.state.value

    assert loaded.load("m.bin") is False
    assert loaded.state.value == before
    assert len(engine.loads) == 1
    assert engine.released == []


def test_load_rejected_while_loading(controller, engine, model_file) -> None:
    engine.load_gate = threading.Event()
    controller.load(model_file)

    assert controller.load(model_file) is False
    engine.load_gate.set()
    assert _settled(controller, ModelLoaded)
    assert len(engine.loads) == 1


def test_abort_is_noop_when_idle(controller, engine) -> None:
    assert controller.abort() is False
    assert controller.state.value == Idle()
    assert engine.aborted == []


def test_abort_is_noop_when_model_loaded(loaded, engine) -> None:
    assert loaded.abort() is False
    assert loaded.state.value == ModelLoaded("m.bin")
    assert engine.aborted == []


def test_abort_while_generating_completes_with_partial_count(loaded, engine) -> None:
    loaded.generate("P")
    engine.emit(Started("P"))
    engine.emit(Ongoing("a", 1))
    engine.emit(Ongoing("b", 2))
    engine.emit(Ongoing("c", 3))
    assert _tokens(loaded, 3)

    assert loaded.abort() is True
    state = loaded.state.value
    assert isinstance(state, Completed)
    assert state.prompt == "P"
    assert state.token_count == 3
    assert state.duration_ms >= 0
    assert loaded.text.value == "abc"
    assert engine.aborted == [1]

    assert loaded.abort() is False
    assert loaded.state.value == state
    assert engine.aborted == [1]


def test_late_events_after_abort_are_discarded(loaded, engine) -> None:
    loaded.generate("P")
    emit = engine.emit
    emit(Ongoing("a", 1))
    assert _tokens(loaded, 1)
    loaded.abort()
    aborted = loaded.state.value

    emit(Ongoing("b", 2))
    emit(Done("ab", 2, 50))

    assert loaded.token_count == 1
    assert loaded.text.value == "a"
    assert loaded.state.value == aborted
    assert engine.stopped == []


def test_aborted_generation_cannot_leak_into_next(loaded, engine) -> None:
    loaded.generate("old")
    old_emit = engine.emit
    loaded.abort()

    loaded.generate("new")
    new_emit = engine.emit
    old_emit(Ongoing("stale", 1))
    new_emit(Ongoing("fresh", 1))
    assert _tokens(loaded, 1)

    old_emit(Done("stale", 1, 10))
    new_emit(Done("fresh", 1, 20))
    assert _settled(loaded, Completed)
    assert loaded.text.value == "fresh"
    assert loaded.state.value == Completed("new", 1, 20)


def test_events_after_done_are_ignored(loaded, engine) -> None:
    loaded.generate("hi")
    emit = engine.emit
    emit(Ongoing("x", 1))
    emit(Done("x", 1, 5))
    assert _settled(loaded, Completed)

    emit(Ongoing("y", 2))
    assert loaded.text.value == "x"
    assert loaded.token_count == 1
    assert loaded.state.value == Completed("hi", 1, 5)


def test_engine_failure_mid_generation_goes_to_error(loaded, engine) -> None:
    loaded.generate("hi")
    cause = RuntimeError("kv cache exhausted")
    engine.emit(Ongoing("par", 1))
    engine.emit(Failed("kv cache exhausted", cause))

    assert _settled(loaded, Error)
    state = loaded.state.value
    assert "kv cache exhausted" in state.message
    assert isinstance(state.cause, GenerationFailure)
    assert state.cause.__cause__ is cause
    assert engine.stopped == [1]
    assert not loaded.can_generate()


def test_generate_raising_synchronously_goes_to_error(loaded, engine) -> None:
    engine.generate_error = RuntimeError("context busy")

    assert loaded.generate("hi") is False
    state = loaded.state.value
    assert isinstance(state, Error)
    assert isinstance(state.cause, GenerationFailure)


def test_abort_during_load_goes_idle_and_releases_late_handle(controller, engine, model_file) -> None:
    engine.load_gate = threading.Event()
    controller.load(model_file)

    assert controller.abort() is True
    assert controller.state.value == Idle()

    engine.load_gate.set()
    assert wait_until(lambda: engine.released == [1])
    assert controller.state.value == Idle()
    assert controller.generate("hi") is False


def test_reload_after_aborted_load_waits_for_engine(controller, engine, model_file) -> None:
    engine.load_gate = threading.Event()
    controller.load(model_file)
    assert wait_until(lambda: len(engine.loads) == 1)
    assert controller.abort() is True

    assert controller.load(model_file)
    assert controller.state.value == LoadingModel("m.bin")
    assert len(engine.loads) == 1

    engine.load_gate.set()
    assert _settled(controller, ModelLoaded)
    assert len(engine.loads) == 2
    assert engine.max_active_loads == 1
    assert wait_until(lambda: engine.released == [1])

    assert controller.generate("hi")
    assert engine.generations[-1][0] == 2


def test_slow_subscriber_does_not_block_engine(loaded, engine) -> None:
    def slow(state) -> None:
        if isinstance(state, Generating) and state.tokens_generated > 0:
            time.sleep(0.3)

    loaded.state.subscribe(slow)
    loaded.generate("hi")
    emit = engine.emit

    durations = []
    for index in range(1, 6):
        started = time.monotonic()
        emit(Ongoing("x", index))
        durations.append(time.monotonic() - started)
        time.sleep(0.05)

    assert max(durations) < 0.05
    assert loaded.token_count == 5
    emit(Done("xxxxx", 5, 10))
    assert loaded.state.wait_for(lambda s: isinstance(s, Completed), timeout=WAIT_S * 2)
    assert loaded.text.value == "xxxxx"


def test_release_is_idempotent(loaded, engine) -> None:
    loaded.release()
    loaded.release()

    assert loaded.state.value == Idle()
    assert engine.released == [1]
    assert loaded.generate("hi") is False


def test_release_while_generating_aborts_engine(loaded, engine) -> None:
    loaded.generate("hi")
    emit = engine.emit
    loaded.release()

    assert engine.aborted == [1]
    assert engine.released == [1]
    emit(Ongoing("late", 1))
    assert loaded.state.value == Idle()
    assert loaded.token_count == 0


def test_reload_releases_previous_handle(loaded, engine) -> None:
    assert loaded.load("m.bin")
    assert engine.released == [1]
    assert _settled(loaded, ModelLoaded)

    loaded.generate("hi")
    assert engine.generations[-1][0] == 2


def test_close_rejects_further_operations(loaded, engine) -> None:
    loaded.close()
    loaded.close()

    assert engine.released == [1]
    assert loaded.load("m.bin") is False
    assert loaded.generate("hi") is False


def test_streaming_engine_end_to_end(loaded, engine) -> None:
    engine.auto_reply = ["Hel", "lo", ", ", "world"]
    texts = []
    loaded.text.subscribe(texts.append)

    assert loaded.generate("greet")
    assert _settled(loaded, Completed)

    assert loaded.text.value == "Hello, world"
    assert loaded.state.value.token_count == 4
    assert texts[0] == ""
    assert all(a == b[: len(a)] for a, b in zip(texts, texts[1:]))


def test_channel_overflow_keeps_accumulator_authoritative(engine, model_file) -> None:
    controller = SessionController(engine, ModelResolver(), SessionConfig(channel_capacity=4), start=False)
    try:
        controller.load(model_file)
        assert wait_until(lambda: len(controller.channel) == 1)
        controller.process_pending()
        assert controller.state.value == ModelLoaded("m.bin")

        observed = []
        controller.state.subscribe(observed.append)
        controller.generate("count")
        emit = engine.emit
        fragments = [str(i) for i in range(10)]
        emit(Started("count"))
        for index, fragment in enumerate(fragments, start=1):
            emit(Ongoing(fragment, index))
        emit(Done("".join(fragments), 10, 40))

        assert controller.channel.dropped > 0
        controller.process_pending()

        progress = [s for s in observed if isinstance(s, Generating) and s.tokens_generated > 0]
        assert len(progress) < 10
        assert controller.state.value == Completed("count", 10, 40)
        assert controller.text.value == "0123456789"
        assert controller.token_count == 10
    finally:
        controller.close()


def test_process_pending_refuses_to_race_dispatcher(controller) -> None:
    with pytest.raises(RuntimeError):
        controller.process_pending()
