"""Session controller: the single owner of an inference session.

Caller operations (``load``, ``generate``, ``abort``, ``release``) and engine
callbacks arrive on different threads. Every mutation of the lifecycle
state, the accumulator, the session handle and the epoch happens under one
re-entrant lock.

Engine events take two paths. On the emitting thread the event is checked
against the current epoch and, for ``Ongoing``, appended to the accumulator;
it is then queued on the bounded channel. The dispatcher thread drains the
channel and publishes state and text. Dropping progress events on the
channel therefore never loses text, only intermediate notifications.

Observers are never called with the lock held. Transitions are recorded on a
pending queue under the lock and delivered in order once it is released, so
a slow subscriber delays other publishers but never the engine.
"""
from __future__ import annotations

import functools
import logging
import threading
from collections import deque
from dataclasses import replace
from typing import Any, Hashable, assert_never

from .accumulator import ResultAccumulator
from .channel import ChannelClosed, Envelope, EventChannel
from .config import SessionConfig
from .engines.base import (
    DeviceSpec,
    Done,
    Failed,
    GenerationEvent,
    InferenceEngine,
    LoadConfig,
    Loaded,
    Ongoing,
    Started,
    describe,
)
from .errors import GenerationFailure, LoadFailure
from .resolver import ModelResolver
from .state import (
    Completed,
    Error,
    Generating,
    Idle,
    LifecycleState,
    LoadingModel,
    ModelLoaded,
    Observable,
    can_generate,
    is_active,
)

logger = logging.getLogger(__name__)


class SessionController:
    def __init__(
        self,
        engine: InferenceEngine,
        resolver: ModelResolver | None = None,
        session: SessionConfig | None = None,
        device: DeviceSpec | None = None,
        start: bool = True,
    ) -> None:
        self._engine = engine
        self._resolver = resolver or ModelResolver()
        self._session = session or SessionConfig()
        self._device = device

        self._lock = threading.RLock()
        self._channel = EventChannel(self._session.channel_capacity)
        self._accumulator = ResultAccumulator()
        self._current: LifecycleState = Idle()
        self._state: Observable[LifecycleState] = Observable(self._current)
        self._text: Observable[str] = Observable("")
        self._pending: deque[tuple[Observable[Any], Any]] = deque()
        self._publish_lock = threading.RLock()

        self._epoch = 0
        self._accepting = False
        self._handle: Hashable | None = None
        self._loader: threading.Thread | None = None
        self._dispatcher: threading.Thread | None = None
        self._closed = False

        if start:
            self.start()

    # -- observable surface ---------------------------------------------

    @property
    def state(self) -> Observable[LifecycleState]:
        return self._state

    @property
    def text(self) -> Observable[str]:
        return self._text

    @property
    def channel(self) -> EventChannel:
        return self._channel

    @property
    def epoch(self) -> int:
        with self._lock:
            return self._epoch

    @property
    def token_count(self) -> int:
        with self._lock:
            return self._accumulator.token_count

    def can_generate(self) -> bool:
        with self._lock:
            return can_generate(self._current)

    def is_active(self) -> bool:
        with self._lock:
            return is_active(self._current)

    # -- dispatcher -----------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._dispatcher is not None and self._dispatcher.is_alive():
                return
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop, name="airsession-dispatch", daemon=True
            )
            self._dispatcher.start()

    def process_pending(self) -> int:
        """Apply every buffered event on the calling thread.

        Only valid when no dispatcher thread is running.
        """
        if self._dispatcher is not None and self._dispatcher.is_alive():
            raise RuntimeError("process_pending() cannot run alongside the dispatcher thread")
        envelopes = self._channel.drain()
        for envelope in envelopes:
            self._apply(envelope)
        return len(envelopes)

    def _dispatch_loop(self) -> None:
        while True:
            try:
                self._apply(self._channel.get())
            except ChannelClosed:
                break
        logger.debug("Dispatcher stopped")

    # -- caller operations ----------------------------------------------

    def load(self, reference: str) -> bool:
        with self._lock:
            if self._closed:
                logger.warning("Cannot load %s: controller is closed", reference)
                return False
            current = self._current
            if is_active(current):
                logger.warning("Cannot load %s while %s", reference, type(current).__name__)
                return False
            self._release_handle()
            epoch = self._next_epoch(accepting=True)
            self._set_state(LoadingModel(reference))
            # an aborted load may still be inside Engine.load; the new one waits for it
            previous = self._loader if self._loader is not None and self._loader.is_alive() else None
            self._loader = threading.Thread(
                target=self._load_worker,
                args=(epoch, reference, previous),
                name="airsession-load",
                daemon=True,
            )
            self._loader.start()
        self._flush()
        return True

    def generate(self, prompt: str) -> bool:
        try:
            with self._lock:
                if self._closed:
                    logger.warning("Cannot generate: controller is closed")
                    return False
                current = self._current
                if not can_generate(current) or self._handle is None:
                    logger.warning("Cannot generate in current state: %s", current)
                    return False

                epoch = self._next_epoch(accepting=True)
                self._accumulator.reset()
                self._set_text("")
                self._set_state(Generating(prompt=prompt))
                try:
                    self._engine.generate(self._handle, prompt, True, functools.partial(self._ingest, epoch))
                except Exception as exc:  # noqa: BLE001
                    self._next_epoch(accepting=False)
                    self._fail(GenerationFailure(f"Generation failed: {exc}"), exc)
                    return False
                return True
        finally:
            self._flush()

    def abort(self) -> bool:
        try:
            with self._lock:
                current = self._current
                match current:
                    case Generating():
                        self._next_epoch(accepting=False)
                        logger.info("Aborting generation")
                        self._engine_call("abort")
                        self._set_text(self._accumulator.text)
                        self._set_state(
                            Completed(
                                prompt=current.prompt,
                                token_count=self._accumulator.token_count,
                                duration_ms=current.elapsed_ms(),
                            )
                        )
                        return True
                    case LoadingModel():
                        # the load worker cannot be interrupted; its late result is released on arrival
                        self._next_epoch(accepting=False)
                        logger.info("Aborting model load of %s", current.reference)
                        self._set_state(Idle())
                        return True
                    case _:
                        logger.debug("Nothing to abort in %s", type(current).__name__)
                        return False
        finally:
            self._flush()

    def release(self) -> None:
        with self._lock:
            self._release_session()
        self._flush()

    def close(self) -> None:
        """Release the session and stop the dispatcher. Safe to call twice."""
        with self._lock:
            if self._closed:
                return
            self._release_session()
            self._closed = True
            self._channel.close()
            dispatcher = self._dispatcher
        self._flush()

        if dispatcher is not None and dispatcher is not threading.current_thread():
            dispatcher.join(timeout=5.0)
        for envelope in self._channel.drain():
            self._discard(envelope.epoch, envelope.event)

    def __enter__(self) -> "SessionController":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _release_session(self) -> None:
        current = self._current
        self._next_epoch(accepting=False)
        if isinstance(current, Generating):
            self._engine_call("abort")
        self._release_handle()
        if not isinstance(current, Idle):
            self._set_state(Idle())

    # -- engine side ----------------------------------------------------

    def _load_worker(self, epoch: int, reference: str, previous: threading.Thread | None) -> None:
        if previous is not None:
            previous.join()
        with self._lock:
            if epoch != self._epoch:
                logger.debug("Skipping superseded load of %s", reference)
                return
        try:
            with self._resolver.open(reference) as resolved:
                config = LoadConfig(
                    reference=resolved.reference,
                    model_path=resolved.path,
                    model_stream=resolved.stream,
                    context_length=self._session.context_length,
                    use_mmap=self._session.use_mmap and resolved.use_mmap,
                    use_mlock=self._session.use_mlock,
                    compression=self._session.compression,
                    layer_cache_dir=self._session.layer_cache_dir,
                    device=self._device,
                )
                handle = self._engine.load(config)
        except LoadFailure as exc:
            self._ingest(epoch, Failed(f"Failed to load model: {exc}", exc))
            return
        except Exception as exc:  # noqa: BLE001
            failure = LoadFailure(str(exc))
            failure.__cause__ = exc
            self._ingest(epoch, Failed(f"Failed to load model: {exc}", failure))
            return
        self._ingest(epoch, Loaded(reference, handle))

    def _ingest(self, epoch: int, event: GenerationEvent) -> None:
        """Entry point for engine-originated events, on whatever thread emits them."""
        with self._lock:
            if epoch != self._epoch or not self._accepting or self._closed:
                self._discard(epoch, event)
                return
            if isinstance(event, Ongoing):
                self._accumulator.append(event.fragment)
            elif isinstance(event, (Loaded, Done, Failed)):
                self._accepting = False
            self._channel.put(epoch, event)

    def _apply(self, envelope: Envelope) -> None:
        with self._lock:
            self._transition(envelope)
        self._flush()

    def _transition(self, envelope: Envelope) -> None:
        event = envelope.event
        if envelope.epoch != self._epoch:
            self._discard(envelope.epoch, event)
            return
        current = self._current

        match event:
            case Loaded(reference=reference, handle=handle):
                if not isinstance(current, LoadingModel):
                    self._unexpected(current, event)
                    self._safe_release(handle)
                    return
                self._handle = handle
                self._set_state(ModelLoaded(reference))
            case Started():
                if not isinstance(current, Generating):
                    self._unexpected(current, event)
                    return
                logger.info("Generation started")
            case Ongoing():
                if not isinstance(current, Generating):
                    self._unexpected(current, event)
                    return
                self._set_text(self._accumulator.text)
                self._set_state(replace(current, tokens_generated=self._accumulator.token_count))
            case Done(token_count=token_count, duration_ms=duration_ms):
                if not isinstance(current, Generating):
                    self._unexpected(current, event)
                    return
                if token_count != self._accumulator.token_count:
                    logger.warning(
                        "Engine reported %d tokens, accumulator holds %d",
                        token_count,
                        self._accumulator.token_count,
                    )
                self._engine_call("stop")
                self._set_text(self._accumulator.text)
                self._set_state(Completed(current.prompt, token_count, duration_ms))
                logger.info("Generation completed: %d tokens in %dms", token_count, duration_ms)
            case Failed(message=message, cause=cause):
                if isinstance(current, LoadingModel):
                    self._set_state(Error(message, cause))
                    logger.error("Model load failed: %s", message, exc_info=cause)
                elif isinstance(current, Generating):
                    self._engine_call("stop")
                    self._fail(GenerationFailure(f"Generation failed: {message}"), cause)
                else:
                    self._unexpected(current, event)
            case _:
                assert_never(event)

    # -- publication ----------------------------------------------------

    def _set_state(self, new: LifecycleState) -> None:
        old = self._current
        if type(old) is not type(new):
            logger.info("%s -> %s", type(old).__name__, new)
        self._current = new
        self._pending.append((self._state, new))

    def _set_text(self, text: str) -> None:
        self._pending.append((self._text, text))

    def _flush(self) -> None:
        """Deliver pending publications in order. Must not be called with ``_lock`` held."""
        with self._publish_lock:
            while True:
                with self._lock:
                    if not self._pending:
                        return
                    target, value = self._pending.popleft()
                target._publish(value)

    # -- helpers --------------------------------------------------------

    def _next_epoch(self, accepting: bool) -> int:
        self._epoch += 1
        self._accepting = accepting
        return self._epoch

    def _fail(self, failure: Exception, cause: BaseException | None) -> None:
        if cause is not None and failure is not cause:
            failure.__cause__ = cause
        self._set_state(Error(str(failure), failure))
        logger.error("%s", failure, exc_info=cause)

    def _unexpected(self, current: LifecycleState, event: GenerationEvent) -> None:
        logger.warning("Ignoring %s in state %s", describe(event), type(current).__name__)

    def _discard(self, epoch: int, event: GenerationEvent) -> None:
        logger.debug("Discarding stale %s (epoch %d, current %d)", describe(event), epoch, self._epoch)
        if isinstance(event, Loaded):
            self._safe_release(event.handle)

    def _engine_call(self, name: str) -> None:
        if self._handle is None:
            return
        try:
            getattr(self._engine, name)(self._handle)
        except Exception:  # noqa: BLE001
            logger.exception("Engine %s failed", name)

    def _release_handle(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        self._safe_release(handle)

    def _safe_release(self, handle: Hashable) -> None:
        try:
            self._engine.release(handle)
        except Exception:  # noqa: BLE001
            logger.exception("Engine release failed")
